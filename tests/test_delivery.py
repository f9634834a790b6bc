"""Tests for pull request verification through the gh CLI."""

from __future__ import annotations

import subprocess
from unittest.mock import MagicMock, patch

import pytest

from featurectl.delivery import GitHubVerifier, find_pull_request


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> MagicMock:
    return MagicMock(stdout=stdout, returncode=returncode, stderr=stderr)


def test_returns_first_open_pr_url():
    reply = _completed('[{"url": "https://example.test/org/repo/pull/7"}]')
    with patch("featurectl.delivery.subprocess.run", return_value=reply) as run:
        url = find_pull_request("/srv/repo", "feature/add-csv-export")

    assert url == "https://example.test/org/repo/pull/7"
    argv = run.call_args.args[0]
    assert argv[:3] == ["gh", "pr", "list"]
    assert argv[argv.index("--head") + 1] == "feature/add-csv-export"
    assert run.call_args.kwargs["cwd"] == "/srv/repo"


@pytest.mark.parametrize(
    "outcome",
    [
        _completed("[]"),
        _completed("not json"),
        _completed("", returncode=1, stderr="auth required"),
        _completed('[{"number": 3}]'),
    ],
)
def test_missing_pr_returns_none(outcome):
    with patch("featurectl.delivery.subprocess.run", return_value=outcome):
        assert find_pull_request("/srv/repo", "feature/x") is None


@pytest.mark.parametrize(
    "error", [FileNotFoundError("gh"), subprocess.TimeoutExpired(["gh"], 60)]
)
def test_gh_failure_returns_none(error):
    with patch("featurectl.delivery.subprocess.run", side_effect=error):
        assert find_pull_request("/srv/repo", "feature/x") is None


@pytest.mark.asyncio
async def test_verifier_runs_lookup():
    with patch("featurectl.delivery.find_pull_request", return_value="u") as lookup:
        assert await GitHubVerifier().confirm("/srv/repo", "feature/x") == "u"
    lookup.assert_called_once_with("/srv/repo", "feature/x")
