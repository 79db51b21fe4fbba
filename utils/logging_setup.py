"""Root logger configuration shared by the webhook server and scripts"""

import logging

from config import Config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Libraries that are noisy at INFO
QUIET_LOGGERS = ("sqlalchemy.engine", "urllib3", "httpx")


def setup_logging(level: str = None) -> None:
    """Configure the root logger once; later calls only adjust the level"""
    resolved = getattr(logging, (level or Config.LOG_LEVEL).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=resolved, format=LOG_FORMAT)
    root.setLevel(resolved)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
