from __future__ import annotations

import logging
import os
from pathlib import Path

from platformdirs import PlatformDirs

logger = logging.getLogger(__name__)

APP_NAME = "gravekeeper"

# Environment override, useful for tests and portable installs
ENV_SAVE_DIR = "GRAVEKEEPER_SAVE_DIR"


def default_save_dir(app_name: str = APP_NAME) -> Path:
    """Return the platform-appropriate directory for save files.

    Linux: ~/.local/share/<app>/saves
    macOS: ~/Library/Application Support/<app>/saves
    Windows: %LOCALAPPDATA%\\<app>\\saves
    """
    override = os.getenv(ENV_SAVE_DIR)
    if override:
        return Path(override).expanduser().resolve()
    dirs = PlatformDirs(appname=app_name, appauthor=False)
    return Path(dirs.user_data_dir) / "saves"
