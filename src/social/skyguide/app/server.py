import logging
from time import time
from typing import (
    Optional,
)
from aiohttp import web
import aiohttp
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.skyguide.app.config import (
    MetricsClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
)
from social.skyguide.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_stats,
)
from social.skyguide.app.handlers.oauth import (
    handle_api_me,
    handle_callback,
    handle_client_metadata,
    handle_index,
    handle_jwks,
    handle_login,
    handle_logout,
)
from social.skyguide.app.metrics import create_metrics_client
from social.skyguide.service import AuthService, AuthServiceAppKey

logger = logging.getLogger(__name__)


async def background_tasks(app):
    """Own the shared client session, metrics client and auth service."""
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    http_session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=settings.http_timeout),
        trace_configs=[trace_config],
    )
    app[SessionAppKey] = http_session

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    app[AuthServiceAppKey] = AuthService.create(settings, http_session, metrics_client)

    logger.info(
        "Startup complete, client id %s (%s)",
        settings.effective_client_id,
        settings.token_endpoint_auth_method,
    )

    yield

    logger.info("Shutting down")

    await http_session.close()
    await metrics_client.close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    prefix = request.app[SettingsAppKey].statsd_prefix
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            f"{prefix}.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            f"{prefix}.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            f"{prefix}.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[statsd_middleware, sentry_middleware])

    app[SettingsAppKey] = settings

    app.add_routes(
        [
            web.get("/", handle_index),
            web.get("/auth/login", handle_login),
            web.get("/auth/callback", handle_callback),
            web.get("/auth/logout", handle_logout),
            web.get("/client-metadata.json", handle_client_metadata),
            web.get("/jwks.json", handle_jwks),
            web.get("/api/me", handle_api_me),
        ]
    )

    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/stats", handle_internal_stats),
        ]
    )

    app.cleanup_ctx.append(background_tasks)

    return app
