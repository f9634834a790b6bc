"""Canonical filesystem paths for featurectl configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

FEATURECTL_CONFIG_DIR = Path.home() / ".config" / "featurectl"

PROJECT_CONFIG_DIRNAME = ".featurectl"

_env_db = os.environ.get("FEATURECTL_DB_PATH")
DEFAULT_DB_PATH = (
    Path(_env_db).expanduser() if _env_db else FEATURECTL_CONFIG_DIR / "featurectl.db"
)
