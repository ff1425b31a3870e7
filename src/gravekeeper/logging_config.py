import logging
import os
from typing import IO, Optional

ENV_LOG_LEVEL = "GRAVEKEEPER_LOG_LEVEL"
LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"


def resolve_level(default_level: int = logging.INFO) -> int:
    """Level named by GRAVEKEEPER_LOG_LEVEL, or ``default_level`` if unset or unknown."""
    level_name = os.getenv(ENV_LOG_LEVEL)
    if not level_name:
        return default_level
    level = logging.getLevelName(level_name.strip().upper())
    return level if isinstance(level, int) else default_level


def configure_logging(default_level: int = logging.INFO, stream: Optional[IO[str]] = None) -> int:
    """Configure the root logger for a game embedding gravekeeper.

    Library modules only create loggers; the host application calls this once.
    Returns the level that was applied.
    """
    level = resolve_level(default_level)
    kwargs = {"level": level, "format": LOG_FORMAT}
    if stream is not None:
        kwargs["stream"] = stream
    logging.basicConfig(**kwargs)
    return level
