"""Confirm delivered pull requests against the hosting service.

The agent's ``[PR_CREATED]`` claim is never trusted on its own; the Delivery
stage only advances once ``gh`` reports an open pull request for the branch.
"""

from __future__ import annotations

import asyncio
import json
import logging
import subprocess
from typing import Protocol

log = logging.getLogger(__name__)

GH_TIMEOUT_SECONDS = 60


class DeliverableVerifier(Protocol):
    async def confirm(self, project_path: str, branch: str) -> str | None:
        """Return the URL of the merge request for *branch*, or None."""
        ...


def find_pull_request(project_path: str, branch: str) -> str | None:
    """Look up an open pull request whose head is *branch* using the ``gh`` CLI."""
    try:
        result = subprocess.run(
            [
                "gh",
                "pr",
                "list",
                "--head",
                branch,
                "--state",
                "open",
                "--json",
                "url",
                "--limit",
                "1",
            ],
            cwd=project_path,
            capture_output=True,
            text=True,
            timeout=GH_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.warning("gh pr list failed for %s: %s", branch, e)
        return None
    if result.returncode != 0:
        log.warning("gh pr list exited %d: %s", result.returncode, result.stderr.strip())
        return None
    try:
        entries = json.loads(result.stdout or "[]")
    except json.JSONDecodeError:
        log.warning("gh pr list returned non-JSON output for %s", branch)
        return None
    if not isinstance(entries, list) or not entries:
        return None
    url = entries[0].get("url") if isinstance(entries[0], dict) else None
    return url or None


class GitHubVerifier:
    async def confirm(self, project_path: str, branch: str) -> str | None:
        return await asyncio.to_thread(find_pull_request, project_path, branch)
