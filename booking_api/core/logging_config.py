import logging

from booking_api.core import config

LOG_FORMAT = '%(asctime)s %(levelname)s [%(name)s] %(message)s'


def configure_logging(level: str | None = None) -> None:
    resolved = (level or config.LOG_LEVEL).upper()
    logging.basicConfig(level=getattr(logging, resolved, logging.INFO), format=LOG_FORMAT)

    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
