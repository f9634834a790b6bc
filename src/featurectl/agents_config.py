"""Per-stage sub-agent instructions loaded from ``agents.toml``.

Global ``~/.config/featurectl/agents.toml`` text comes first, then the project's
``.featurectl/agents.toml``::

    [implementing]
    instructions = \"\"\"
    Run `make check` before reporting a step complete.
    \"\"\"
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from types import MappingProxyType
from typing import Any

from featurectl.models import (
    STAGE_DELIVERY,
    STAGE_DISCOVERY,
    STAGE_IMPLEMENTING,
    STAGE_PLANNING,
    STAGE_REVIEW,
)
from featurectl.paths import FEATURECTL_CONFIG_DIR, PROJECT_CONFIG_DIRNAME

SUPPORTED_ROLES = ("discovery", "planning", "implementing", "delivery", "review")

_ROLE_STAGES = {
    "discovery": STAGE_DISCOVERY,
    "planning": STAGE_PLANNING,
    "implementing": STAGE_IMPLEMENTING,
    "delivery": STAGE_DELIVERY,
    "review": STAGE_REVIEW,
}


def _normalize_role(role: str | None) -> str | None:
    if role is None:
        return None
    normalized = role.strip().lower()
    if normalized not in SUPPORTED_ROLES:
        return None
    return normalized


def _global_agents_toml() -> Path:
    return FEATURECTL_CONFIG_DIR / "agents.toml"


def _project_agents_toml(project_dir: str | None) -> Path | None:
    if not project_dir:
        return None
    return Path(project_dir) / PROJECT_CONFIG_DIRNAME / "agents.toml"


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except (FileNotFoundError, OSError, tomllib.TOMLDecodeError):
        return {}
    return raw if isinstance(raw, dict) else {}


def _extract_role_text(document: dict[str, Any], role: str) -> str:
    raw = document.get(role)
    if isinstance(raw, str):
        return raw.strip()
    if isinstance(raw, dict):
        instructions = raw.get("instructions", "")
        return instructions.strip() if isinstance(instructions, str) else ""
    return ""


def load_role_instructions(project_dir: str | None, role: str) -> str:
    """Merged instructions for *role*; unknown roles yield an empty string."""
    normalized_role = _normalize_role(role)
    if normalized_role is None:
        return ""
    documents = [_read_toml_file(_global_agents_toml())]
    project_path = _project_agents_toml(project_dir)
    if project_path is not None:
        documents.append(_read_toml_file(project_path))
    chunks = [_extract_role_text(doc, normalized_role) for doc in documents]
    return "\n\n".join(chunk for chunk in chunks if chunk)


def load_stage_templates(project_dir: str | None) -> MappingProxyType[int, str]:
    """Immutable stage-number -> instruction text map for one project."""
    return MappingProxyType(
        {
            stage: text
            for role, stage in _ROLE_STAGES.items()
            if (text := load_role_instructions(project_dir, role))
        }
    )
