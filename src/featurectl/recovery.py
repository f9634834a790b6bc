"""Find sessions whose last invocation died mid-flight and resume them."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TypedDict

from featurectl.controller import StageController
from featurectl.models import STAGE_DISCOVERY, SessionDoc
from featurectl.registry import SessionRegistry, is_active

log = logging.getLogger(__name__)

DEFAULT_STALE_THRESHOLD = 300.0


class StuckSession(TypedDict):
    project_id: str
    feature_id: str
    stage: int
    record_id: str
    idle_seconds: float
    resumable: bool


class RecoveryReport(TypedDict):
    checked: int
    stuck: list[StuckSession]
    resumed: list[str]
    skipped: list[str]
    dry_run: bool


def _parse_stamp(stamp: str | None) -> datetime | None:
    if not stamp:
        return None
    try:
        return datetime.strptime(stamp, "%Y-%m-%dT%H:%M:%SZ").replace(tzinfo=UTC)
    except ValueError:
        return None


class RecoveryScanner:
    """Detect active sessions left with a ``started`` invocation record.

    A session is stuck when it is active, its execution status has not moved
    for longer than *stale_threshold* seconds, and its newest invocation
    record never completed. Discovery sessions are reported but not resumed.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        controller: StageController,
        *,
        stale_threshold: float = DEFAULT_STALE_THRESHOLD,
    ) -> None:
        self.registry = registry
        self.controller = controller
        self.stale_threshold = stale_threshold

    def _stuck_entry(self, session: SessionDoc, now: datetime) -> StuckSession | None:
        pid, fid = session["project_id"], session["feature_id"]
        if not is_active(session) or self.controller.is_running(pid, fid):
            return None
        record = self.registry.latest_invocation(pid, fid)
        if record is None or record["state"] != "started":
            return None
        last_action = _parse_stamp(self.registry.get_status(pid, fid)["last_action_at"])
        if last_action is None:
            return None
        idle = (now - last_action).total_seconds()
        if idle <= self.stale_threshold:
            return None
        return {
            "project_id": pid,
            "feature_id": fid,
            "stage": session["stage"],
            "record_id": record["id"],
            "idle_seconds": idle,
            "resumable": session["stage"] != STAGE_DISCOVERY,
        }

    def find_stuck_sessions(self, now: datetime | None = None) -> list[StuckSession]:
        now = now or datetime.now(UTC)
        stuck = []
        for session in self.registry.list_all_sessions():
            entry = self._stuck_entry(session, now)
            if entry is not None:
                stuck.append(entry)
        return stuck

    def scan(self, *, dry_run: bool = False, now: datetime | None = None) -> RecoveryReport:
        """Mark dangling records interrupted and re-enter each resumable session."""
        sessions = self.registry.list_all_sessions()
        stuck = self.find_stuck_sessions(now)
        report: RecoveryReport = {
            "checked": len(sessions),
            "stuck": stuck,
            "resumed": [],
            "skipped": [],
            "dry_run": dry_run,
        }
        for entry in stuck:
            pid, fid = entry["project_id"], entry["feature_id"]
            bucket = report["resumed"] if entry["resumable"] else report["skipped"]
            if dry_run:
                log.info("Dry run: session %s stuck at stage %d", fid, entry["stage"])
                bucket.append(fid)
                continue
            self.registry.finish_invocation(
                pid,
                fid,
                entry["record_id"],
                state="interrupted",
                is_error=True,
                failure="interrupted",
            )
            if not entry["resumable"]:
                log.warning(
                    "Session %s was interrupted in discovery (%.0fs idle); restart it manually",
                    fid,
                    entry["idle_seconds"],
                )
                self.registry.update_status(pid, fid, "error", "stage1_interrupted")
                report["skipped"].append(fid)
                continue
            session = self.registry.require_session(pid, fid)
            self.controller.recover(session)
            report["resumed"].append(fid)
        if stuck:
            log.info(
                "Recovery scan: %d stuck, %d resumed, %d skipped",
                len(stuck),
                len(report["resumed"]),
                len(report["skipped"]),
            )
        return report
