"""Engine settings from ``config.toml``.

Global ``~/.config/featurectl/config.toml`` is read first, then the project's
``.featurectl/config.toml``; project values win key by key::

    [engine]
    agent_command = "claude"
    invocation_timeout = 900
    stale_threshold = 300
"""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from featurectl.paths import FEATURECTL_CONFIG_DIR, PROJECT_CONFIG_DIRNAME

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    agent_command: str = "claude"
    invocation_timeout: float = 900.0
    classifier_timeout: float = 120.0
    decision_validation_timeout: float = 180.0
    classifier_model: str = "haiku"
    stale_threshold: float = 300.0
    recovery_interval: float = 60.0


def _global_config_toml() -> Path:
    return FEATURECTL_CONFIG_DIR / "config.toml"


def _project_config_toml(project_dir: str | None) -> Path | None:
    if not project_dir:
        return None
    return Path(project_dir) / PROJECT_CONFIG_DIRNAME / "config.toml"


def _read_engine_table(path: Path) -> dict[str, Any]:
    """Return the ``[engine]`` table, or {} when the file is missing or malformed."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s", path, exc_info=True)
        return {}
    engine = raw.get("engine", {})
    return engine if isinstance(engine, dict) else {}


def _coerce(settings: Settings, values: dict[str, Any], source: Path) -> Settings:
    known = {f.name for f in fields(Settings)}
    updates: dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            continue
        default = getattr(settings, key)
        if isinstance(default, float) and isinstance(value, int | float) and not isinstance(
            value, bool
        ):
            updates[key] = float(value)
        elif isinstance(default, str) and isinstance(value, str) and value.strip():
            updates[key] = value.strip()
        else:
            log.warning("%s: ignoring engine.%s=%r (wrong type)", source, key, value)
    return replace(settings, **updates)


def load_settings(project_dir: str | None = None) -> Settings:
    settings = Settings()
    for path in (_global_config_toml(), _project_config_toml(project_dir)):
        if path is None:
            continue
        settings = _coerce(settings, _read_engine_table(path), path)
    return settings
