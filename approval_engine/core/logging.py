"""
Loguru configuration shared by the API and the engine.

Call setup_logging() once at process start; modules then simply use
`from loguru import logger` and pass structured context as keyword arguments.
"""

import sys

from loguru import logger

from .config import settings


def setup_logging(level: str | None = None, serialize: bool | None = None):
    """
    Configure the global loguru logger.

    Args:
        level: Minimum level (defaults to LOG_LEVEL)
        serialize: Emit JSON lines instead of text (defaults to LOG_JSON)

    Returns:
        The configured loguru logger
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or settings.log_level).upper(),
        serialize=settings.log_json if serialize is None else serialize,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level> | {extra}"
        ),
    )
    return logger.bind(app=settings.app_name, env=settings.app_env)
