import os
from aiohttp import web
import logging
from logging.config import dictConfig
import json

from social.skyguide.app.config import Settings


def configure_logging(settings: Settings):
    """Load a dictConfig from LOGGING_CONFIG_FILE, or log to stderr.

    Without a config file the root level follows the debug setting.
    """
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger().setLevel(logging.DEBUG if settings.debug else logging.INFO)
    if not settings.debug:
        logging.getLogger("aio_statsd").setLevel(logging.WARNING)


def invoke():
    settings = Settings()  # type: ignore
    configure_logging(settings)

    from social.skyguide.app.server import start_web_server

    logging.getLogger(__name__).info(
        "Listening on port %d, public URL %s", settings.http_port, settings.public_url
    )
    web.run_app(start_web_server(settings), port=settings.http_port, print=None)


if __name__ == "__main__":
    invoke()
