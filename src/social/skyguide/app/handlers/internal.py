import logging
from aiohttp import web

from social.skyguide.service import AuthServiceAppKey

logger = logging.getLogger(__name__)


async def handle_internal_alive(request: web.Request):
    return web.json_response({"status": "alive"})


async def handle_internal_stats(request: web.Request):
    """Session counts and the redacted configuration.

    Expired authorization state is evicted first so the counts are current.
    """
    auth_service = request.app[AuthServiceAppKey]
    removed = await auth_service.cleanup()
    return web.json_response(
        {
            "stats": await auth_service.stats(),
            "expired_state_removed": removed,
            "config": auth_service.describe_config(),
        }
    )
