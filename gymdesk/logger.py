import logging

from gymdesk.config import settings


def init_log(log_name: str = "gymdesk") -> logging.Logger:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - [%(name)s] %(message)s",
    )

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger(log_name)
