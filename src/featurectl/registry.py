"""Session registry and per-project queue.

All admission and queue mutations run under one ``asyncio.Lock`` so concurrent
create/resume/reorder requests cannot interleave. Per-session documents (plan,
questions, status, invocation records) are only written by the single run
that owns the session, so those helpers are plain synchronous methods.

Invariants maintained here:
- at most one session per project has an active status;
- queued sessions of a project hold positions exactly ``1..N``;
- stage changes follow ``VALID_TRANSITIONS``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import uuid
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from featurectl.errors import (
    ConcurrencyConflict,
    DuplicateSession,
    InvalidTransition,
    ProtectedFieldError,
    QueueEntryNotFound,
    SessionNotFound,
)
from featurectl.markers import ParsedDecision, ParsedStep
from featurectl.models import (
    ACTIVE_STATUSES,
    BLOCKER_CATEGORY,
    DEFAULT_QUESTION_CATEGORY,
    DEFAULT_STEP_COMPLEXITY,
    QUESTION_CATEGORIES,
    SESSION_TERMINAL_STATUSES,
    STAGE_COMPLETED,
    STAGE_DISCOVERY,
    STAGE_IMPLEMENTING,
    STAGE_PLANNING,
    STAGE_QUEUED,
    STAGE_STATUS,
    VALID_EXECUTION_STATUSES,
    VALID_STEP_STATUSES,
    VALID_TRANSITIONS,
    InvocationRecord,
    PlanDoc,
    QueueInsert,
    QuestionDoc,
    SessionDoc,
    StatusDoc,
    StepDoc,
    question_stage_label,
)
from featurectl.store import DocumentStore

log = logging.getLogger(__name__)

PROTECTED_FIELDS = frozenset({"id", "project_id", "feature_id", "created_at"})
MAX_FEATURE_ID_LENGTH = 64
SESSION_TTL = timedelta(hours=24)
MAX_INVOCATION_RECORDS = 100
MAX_RECORDED_OUTPUT_CHARS = 20_000

PROJECTS_DOC = "projects.json"

ActivationListener = Callable[[SessionDoc], None]


def _utcnow() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def project_id_for(project_path: str) -> str:
    return hashlib.sha256(project_path.encode()).hexdigest()[:32]


def feature_id_for(title: str) -> str:
    """Slug for a session title: lowercase, dash-separated, at most 64 chars."""
    slug = re.sub(r"[^a-z0-9\s-]", "", title.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug).strip("-")
    slug = slug[:MAX_FEATURE_ID_LENGTH].strip("-")
    if not slug:
        raise ValueError(f"Cannot derive a feature id from title {title!r}")
    return slug


def _normalize_ws(text: str | None) -> str:
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+", " ", text)
    return re.sub(r"\n+", "\n", text).strip()


def step_content_hash(title: str, description: str | None = None) -> str:
    """16-hex-char hash of a step's normalised title and description."""
    content = f"{_normalize_ws(title)}|{_normalize_ws(description)}"
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def session_dir(project_id: str, feature_id: str) -> str:
    return f"{project_id}/{feature_id}"


def _doc_path(project_id: str, feature_id: str, name: str) -> str:
    return f"{session_dir(project_id, feature_id)}/{name}.json"


def _index_path(project_id: str) -> str:
    return f"{project_id}/index.json"


def is_active(session: SessionDoc) -> bool:
    return session["status"] in ACTIVE_STATUSES


class SessionRegistry:
    """Owns Session, Plan, question, status and invocation documents."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self._lock = asyncio.Lock()
        self._activation_listeners: list[ActivationListener] = []

    def add_activation_listener(self, listener: ActivationListener) -> None:
        """Called with each session promoted out of the queue."""
        self._activation_listeners.append(listener)

    # -- lookup --

    def get_session(self, project_id: str, feature_id: str) -> SessionDoc | None:
        doc = self.store.get(_doc_path(project_id, feature_id, "session"))
        return cast(SessionDoc, doc) if doc is not None else None

    def require_session(self, project_id: str, feature_id: str) -> SessionDoc:
        session = self.get_session(project_id, feature_id)
        if session is None:
            raise SessionNotFound(project_id, feature_id)
        return session

    def list_project_ids(self) -> list[str]:
        doc = self.store.get(PROJECTS_DOC) or {}
        return list(doc.get("project_ids", []))

    def list_sessions(self, project_id: str) -> list[SessionDoc]:
        index = self.store.get(_index_path(project_id)) or {}
        sessions = []
        for feature_id in index.get("feature_ids", []):
            session = self.get_session(project_id, feature_id)
            if session is not None:
                sessions.append(session)
        return sessions

    def list_all_sessions(self) -> list[SessionDoc]:
        return [s for pid in self.list_project_ids() for s in self.list_sessions(pid)]

    def active_session(self, project_id: str) -> SessionDoc | None:
        return next((s for s in self.list_sessions(project_id) if is_active(s)), None)

    def list_queue(self, project_id: str) -> list[SessionDoc]:
        queued = [s for s in self.list_sessions(project_id) if s["status"] == "queued"]
        return sorted(queued, key=lambda s: (s["queue_position"] or 0, s["queued_at"] or ""))

    # -- creation and admission --

    async def create_session(
        self,
        *,
        title: str,
        project_path: str,
        description: str = "",
        acceptance_criteria: Sequence[str] = (),
        affected_files: Sequence[str] = (),
        technical_notes: str = "",
        base_branch: str = "main",
        queue_at: QueueInsert = "end",
    ) -> SessionDoc:
        """Create a session; it is queued if the project has an active or queued one."""
        project_id = project_id_for(project_path)
        feature_id = feature_id_for(title)
        now = datetime.now(UTC)
        stamp = now.strftime("%Y-%m-%dT%H:%M:%SZ")

        promoted: SessionDoc | None = None
        async with self._lock:
            if self.store.exists(_doc_path(project_id, feature_id, "session")):
                raise DuplicateSession(
                    f"Session '{feature_id}' already exists for project {project_id}"
                )

            session: SessionDoc = {
                "id": uuid.uuid4().hex[:12],
                "project_id": project_id,
                "feature_id": feature_id,
                "title": title,
                "description": description,
                "project_path": project_path,
                "acceptance_criteria": list(acceptance_criteria),
                "affected_files": list(affected_files),
                "technical_notes": technical_notes,
                "base_branch": base_branch,
                "feature_branch": f"feature/{feature_id}",
                "stage": STAGE_DISCOVERY,
                "status": STAGE_STATUS[STAGE_DISCOVERY],
                "status_reason": None,
                "resume_stage": None,
                "queue_position": None,
                "queued_at": None,
                "continuation": None,
                "implementation_continuation": None,
                "plan_file_path": None,
                "pr_url": None,
                "complexity": None,
                "suggested_agents": [],
                "plan_review_iteration": 0,
                "plan_validation_attempts": 0,
                "session_expires_at": (now + SESSION_TTL).strftime("%Y-%m-%dT%H:%M:%SZ"),
                "created_at": stamp,
                "updated_at": stamp,
            }

            # A stranded queue with nothing active still goes first.
            active = self.active_session(project_id)
            waiting = self.list_queue(project_id)
            if active is not None or waiting:
                self._enqueue(session, queue_at, resume_stage=None)
                log.info(
                    "Session %s queued at position %d",
                    feature_id,
                    session["queue_position"],
                )

            self._put_session(session)
            self._put_plan(project_id, feature_id, self._empty_plan(stamp))
            self.store.put(_doc_path(project_id, feature_id, "questions"), {"questions": []})
            self.store.put(_doc_path(project_id, feature_id, "invocations"), {"records": []})
            self._add_to_indexes(project_id, feature_id)
            if active is None and waiting:
                promoted = self._promote_next(project_id)
                session = self.require_session(project_id, feature_id)
                if promoted is not None and promoted["feature_id"] == feature_id:
                    promoted = None
            self._put_status(
                project_id,
                feature_id,
                {
                    "status": "idle",
                    "last_action": (
                        "session_queued" if session["status"] == "queued" else "session_created"
                    ),
                    "last_action_at": stamp,
                    "spawn_count": 0,
                    "current_step_id": None,
                    "blocked_step_id": None,
                },
            )
        if promoted is not None:
            self._notify_activation(promoted)
        return session

    async def resume_session(
        self,
        project_id: str,
        feature_id: str,
        *,
        queue_at: QueueInsert = "end",
        enqueue_if_busy: bool = True,
    ) -> SessionDoc:
        """Re-admit a paused or failed session.

        If another session is active or waiting the resumed one is queued, or
        ``ConcurrencyConflict`` is raised when *enqueue_if_busy* is false.
        """
        promoted: SessionDoc | None = None
        async with self._lock:
            session = self.require_session(project_id, feature_id)
            if session["status"] not in ("paused", "failed"):
                raise ValueError(
                    f"Session {feature_id} is '{session['status']}'; only paused or failed "
                    "sessions can be resumed"
                )
            stage = session["stage"] if session["stage"] != STAGE_QUEUED else STAGE_DISCOVERY
            active = self.active_session(project_id)
            waiting = self.list_queue(project_id)
            ahead = active or (waiting[0] if waiting else None)
            if ahead is not None:
                if not enqueue_if_busy:
                    raise ConcurrencyConflict(project_id, ahead["feature_id"])
                self._enqueue(session, queue_at, resume_stage=stage)
            else:
                session["stage"] = stage
                session["status"] = STAGE_STATUS[stage]
            session["status_reason"] = None
            self._put_session(session)
            if active is None and waiting:
                promoted = self._promote_next(project_id)
                session = self.require_session(project_id, feature_id)
                if promoted is not None and promoted["feature_id"] == feature_id:
                    promoted = None
        if promoted is not None:
            self._notify_activation(promoted)
        return session

    # -- leaving the active set --

    async def pause_session(
        self, project_id: str, feature_id: str, *, reason: str = ""
    ) -> SessionDoc:
        return await self._leave(project_id, feature_id, "paused", reason)

    async def fail_session(
        self, project_id: str, feature_id: str, *, reason: str = ""
    ) -> SessionDoc:
        return await self._leave(project_id, feature_id, "failed", reason)

    async def back_out(
        self, project_id: str, feature_id: str, *, abandon: bool = False
    ) -> SessionDoc:
        """Pause or abandon an active or queued session."""
        if abandon:
            return await self._leave(project_id, feature_id, "failed", "abandoned")
        return await self._leave(project_id, feature_id, "paused", "backed out")

    async def _leave(
        self, project_id: str, feature_id: str, status: str, reason: str
    ) -> SessionDoc:
        promoted: SessionDoc | None = None
        async with self._lock:
            session = self.require_session(project_id, feature_id)
            if session["status"] in SESSION_TERMINAL_STATUSES:
                raise ValueError(f"Session {feature_id} is already {session['status']}")
            was_active = is_active(session)
            was_queued = session["status"] == "queued"
            if was_queued and session["resume_stage"] is not None:
                session["stage"] = session["resume_stage"]
            elif was_queued:
                session["stage"] = STAGE_DISCOVERY
            session["status"] = status
            session["status_reason"] = reason or None
            session["queue_position"] = None
            session["queued_at"] = None
            session["resume_stage"] = None
            self._put_session(session)
            if was_active:
                promoted = self._promote_next(project_id)
            elif was_queued:
                self._renumber(project_id)
        log.info("Session %s -> %s (%s)", feature_id, status, reason or "no reason")
        if promoted is not None:
            self._notify_activation(promoted)
        return session

    # -- stage transitions --

    async def transition_stage(self, project_id: str, feature_id: str, target: int) -> SessionDoc:
        """Validate and commit a stage change.

        Moving to a lower stage counts as replanning and bumps the plan's
        ``review_count``. Target 0 pauses the session back into the queue.
        """
        if target == STAGE_QUEUED:
            return await self.pause_to_queue(project_id, feature_id)

        promoted: SessionDoc | None = None
        async with self._lock:
            session = self.require_session(project_id, feature_id)
            current = session["stage"]
            valid = VALID_TRANSITIONS.get(current, frozenset())
            if not is_active(session):
                raise InvalidTransition(
                    current, target, valid, reason=f"session is {session['status']}"
                )
            if target not in valid:
                raise InvalidTransition(current, target, valid)

            plan = self.get_plan(project_id, feature_id)
            if (
                current == STAGE_PLANNING
                and target == STAGE_IMPLEMENTING
                and not plan["is_approved"]
            ):
                raise InvalidTransition(current, target, valid, reason="plan is not approved")

            if target < current:
                plan["review_count"] += 1
                self._put_plan(project_id, feature_id, plan)
            if target == STAGE_PLANNING:
                session["plan_review_iteration"] = 0
                session["plan_validation_attempts"] = 0

            session["stage"] = target
            session["status"] = STAGE_STATUS[target]
            self._put_session(session)
            if target == STAGE_COMPLETED:
                promoted = self._promote_next(project_id)
        log.info("Session %s stage %d -> %d", feature_id, current, target)
        if promoted is not None:
            self._notify_activation(promoted)
        return session

    async def pause_to_queue(
        self, project_id: str, feature_id: str, *, queue_at: QueueInsert = "end"
    ) -> SessionDoc:
        """Move the active session back into the queue, remembering its stage."""
        promoted: SessionDoc | None = None
        async with self._lock:
            session = self.require_session(project_id, feature_id)
            if not is_active(session):
                raise InvalidTransition(
                    session["stage"],
                    STAGE_QUEUED,
                    VALID_TRANSITIONS.get(session["stage"], frozenset()),
                    reason=f"session is {session['status']}",
                )
            resume_stage = session["stage"]
            self._enqueue(session, queue_at, resume_stage=resume_stage)
            self._put_session(session)
            promoted = self._promote_next(project_id, exclude=feature_id)
        if promoted is not None:
            self._notify_activation(promoted)
        return session

    # -- queue --

    async def reorder_queue(self, project_id: str, feature_ids: Sequence[str]) -> list[SessionDoc]:
        """Stable partial reorder: named ids first, the rest keep their relative order."""
        async with self._lock:
            queue = self.list_queue(project_id)
            by_id = {s["feature_id"]: s for s in queue}
            ordered: list[str] = []
            for feature_id in feature_ids:
                if feature_id in ordered:
                    continue
                if feature_id not in by_id:
                    raise QueueEntryNotFound(
                        f"Session '{feature_id}' is not queued for project {project_id}"
                    )
                ordered.append(feature_id)
            ordered.extend(s["feature_id"] for s in queue if s["feature_id"] not in ordered)
            for position, feature_id in enumerate(ordered, start=1):
                session = by_id[feature_id]
                if session["queue_position"] != position:
                    session["queue_position"] = position
                    self._put_session(session)
            return [by_id[f] for f in ordered]

    def _enqueue(
        self, session: SessionDoc, queue_at: QueueInsert, *, resume_stage: int | None
    ) -> None:
        """Insert *session* into its project's queue. Caller holds the lock."""
        queue = [
            s
            for s in self.list_queue(session["project_id"])
            if s["feature_id"] != session["feature_id"]
        ]
        if queue_at == "front":
            position = 1
        elif queue_at == "end":
            position = len(queue) + 1
        elif isinstance(queue_at, int) and not isinstance(queue_at, bool):
            position = min(max(queue_at, 1), len(queue) + 1)
        else:
            raise ValueError(f"Invalid queue position {queue_at!r}. Must be 'front', 'end' or int")

        for index, other in enumerate(queue, start=1):
            new_position = index + 1 if index >= position else index
            if other["queue_position"] != new_position:
                other["queue_position"] = new_position
                self._put_session(other)

        session["stage"] = STAGE_QUEUED
        session["status"] = "queued"
        session["resume_stage"] = resume_stage
        session["queue_position"] = position
        session["queued_at"] = _utcnow()

    def _promote_next(self, project_id: str, *, exclude: str | None = None) -> SessionDoc | None:
        """Activate the lowest-position queued session. Caller holds the lock."""
        if self.active_session(project_id) is not None:
            return None
        queue = [s for s in self.list_queue(project_id) if s["feature_id"] != exclude]
        if not queue:
            self._renumber(project_id)
            return None
        head = queue[0]
        stage = head["resume_stage"] or STAGE_DISCOVERY
        head["stage"] = stage
        head["status"] = STAGE_STATUS[stage]
        head["queue_position"] = None
        head["queued_at"] = None
        head["resume_stage"] = None
        self._put_session(head)
        self._renumber(project_id)
        log.info("Promoted session %s to %s", head["feature_id"], head["status"])
        return head

    def _renumber(self, project_id: str) -> None:
        for position, session in enumerate(self.list_queue(project_id), start=1):
            if session["queue_position"] != position:
                session["queue_position"] = position
                self._put_session(session)

    def _notify_activation(self, session: SessionDoc) -> None:
        for listener in list(self._activation_listeners):
            listener(session)

    # -- session fields --

    def update_session(self, project_id: str, feature_id: str, **fields: Any) -> SessionDoc:
        """Update non-structural session fields.

        Stage, status and queue position change only through the admission,
        transition and queue operations above.
        """
        protected = PROTECTED_FIELDS.intersection(fields)
        if protected:
            raise ProtectedFieldError(f"Cannot update protected fields: {sorted(protected)}")
        structural = {"stage", "status", "queue_position", "queued_at", "resume_stage"}
        if structural.intersection(fields):
            raise ProtectedFieldError(
                f"Use stage/queue operations to change {sorted(structural.intersection(fields))}"
            )
        session = self.require_session(project_id, feature_id)
        unknown = set(fields) - set(session)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        session.update(fields)  # type: ignore[typeddict-item]
        self._put_session(session)
        return session

    def _put_session(self, session: SessionDoc) -> None:
        session["updated_at"] = _utcnow()
        self.store.put(
            _doc_path(session["project_id"], session["feature_id"], "session"), dict(session)
        )

    def _add_to_indexes(self, project_id: str, feature_id: str) -> None:
        projects = self.store.get(PROJECTS_DOC) or {"project_ids": []}
        if project_id not in projects["project_ids"]:
            projects["project_ids"].append(project_id)
            self.store.put(PROJECTS_DOC, projects)
        index = self.store.get(_index_path(project_id)) or {"feature_ids": []}
        index["feature_ids"].append(feature_id)
        self.store.put(_index_path(project_id), index)

    # -- plan --

    @staticmethod
    def _empty_plan(stamp: str) -> PlanDoc:
        return {
            "plan_version": 0,
            "is_approved": False,
            "review_count": 0,
            "steps": [],
            "test_requirement": None,
            "all_tests_passing": None,
            "test_fix_attempts": 0,
            "created_at": stamp,
            "updated_at": stamp,
        }

    def get_plan(self, project_id: str, feature_id: str) -> PlanDoc:
        doc = self.store.get(_doc_path(project_id, feature_id, "plan"))
        if doc is None:
            raise SessionNotFound(project_id, feature_id)
        return cast(PlanDoc, doc)

    def _put_plan(self, project_id: str, feature_id: str, plan: PlanDoc) -> None:
        plan["updated_at"] = _utcnow()
        self.store.put(_doc_path(project_id, feature_id, "plan"), dict(plan))

    def save_plan_steps(
        self, project_id: str, feature_id: str, steps: Iterable[ParsedStep]
    ) -> PlanDoc:
        """Replace the step list, bump ``plan_version`` and clear approval.

        A previously completed step whose content hash is unchanged stays
        completed in the new version.
        """
        plan = self.get_plan(project_id, feature_id)
        previous = {s["id"]: s for s in plan["steps"]}
        new_steps: list[StepDoc] = []
        for parsed in steps:
            digest = step_content_hash(parsed.title, parsed.description)
            status = parsed.status if parsed.status in VALID_STEP_STATUSES else "pending"
            step: StepDoc = {
                "id": parsed.id,
                "parent_id": parsed.parent_id,
                "title": parsed.title,
                "description": parsed.description,
                "status": status,
                "complexity": parsed.complexity or DEFAULT_STEP_COMPLEXITY,
                "retry_count": 0,
                "content_hash": digest,
                "completed_in_version": None,
            }
            if parsed.acceptance_criteria_ids is not None:
                step["acceptance_criteria_ids"] = parsed.acceptance_criteria_ids
            if parsed.estimated_files is not None:
                step["estimated_files"] = parsed.estimated_files
            old = previous.get(parsed.id)
            if old and old["status"] == "completed" and old["content_hash"] == digest:
                step["status"] = "completed"
                step["completed_in_version"] = old["completed_in_version"]
                if "summary" in old:
                    step["summary"] = old["summary"]
            new_steps.append(step)

        plan["steps"] = new_steps
        plan["plan_version"] += 1
        plan["is_approved"] = False
        plan["all_tests_passing"] = None
        plan["test_fix_attempts"] = 0
        self._put_plan(project_id, feature_id, plan)
        return plan

    def set_plan_approved(self, project_id: str, feature_id: str, approved: bool = True) -> PlanDoc:
        plan = self.get_plan(project_id, feature_id)
        plan["is_approved"] = approved
        self._put_plan(project_id, feature_id, plan)
        return plan

    def set_test_requirement(
        self, project_id: str, feature_id: str, requirement: dict[str, Any]
    ) -> PlanDoc:
        plan = self.get_plan(project_id, feature_id)
        plan["test_requirement"] = requirement
        self._put_plan(project_id, feature_id, plan)
        return plan

    def set_tests_passing(self, project_id: str, feature_id: str, passing: bool) -> PlanDoc:
        plan = self.get_plan(project_id, feature_id)
        plan["all_tests_passing"] = passing
        self._put_plan(project_id, feature_id, plan)
        return plan

    def update_step(self, project_id: str, feature_id: str, step_id: str, **fields: Any) -> StepDoc:
        plan = self.get_plan(project_id, feature_id)
        step = _find_step(plan, step_id)
        if "status" in fields and fields["status"] not in VALID_STEP_STATUSES:
            raise ValueError(
                f"Invalid step status '{fields['status']}'. "
                f"Must be one of: {sorted(VALID_STEP_STATUSES)}"
            )
        step.update(fields)  # type: ignore[typeddict-item]
        self._put_plan(project_id, feature_id, plan)
        return step

    def complete_step(
        self,
        project_id: str,
        feature_id: str,
        step_id: str,
        *,
        summary: str = "",
        tests_added: Sequence[str] = (),
    ) -> bool:
        """Mark a step completed. Returns False if it already was in this plan version."""
        plan = self.get_plan(project_id, feature_id)
        step = _find_step(plan, step_id)
        if step["status"] == "completed" and step["completed_in_version"] == plan["plan_version"]:
            return False
        step["status"] = "completed"
        step["completed_in_version"] = plan["plan_version"]
        step["summary"] = summary
        step["tests_added"] = list(tests_added)
        self._put_plan(project_id, feature_id, plan)
        return True

    def record_test_fix_attempt(self, project_id: str, feature_id: str) -> int:
        """Count a round where every step is done but the suite is still red."""
        plan = self.get_plan(project_id, feature_id)
        plan["test_fix_attempts"] += 1
        self._put_plan(project_id, feature_id, plan)
        return plan["test_fix_attempts"]

    def record_step_failure(self, project_id: str, feature_id: str, step_id: str) -> StepDoc:
        plan = self.get_plan(project_id, feature_id)
        step = _find_step(plan, step_id)
        step["retry_count"] += 1
        if step["status"] in ("pending", "needs_review"):
            step["status"] = "in_progress"
        self._put_plan(project_id, feature_id, plan)
        return step

    def reset_steps(
        self, project_id: str, feature_id: str, statuses: dict[str, str]
    ) -> PlanDoc:
        """Set each named step to the given status and clear its retry count."""
        plan = self.get_plan(project_id, feature_id)
        for step in plan["steps"]:
            if step["id"] in statuses:
                step["status"] = statuses[step["id"]]
                step["retry_count"] = 0
                step["completed_in_version"] = None
        plan["all_tests_passing"] = None
        plan["test_fix_attempts"] = 0
        self._put_plan(project_id, feature_id, plan)
        return plan

    # -- questions --

    def list_questions(self, project_id: str, feature_id: str) -> list[QuestionDoc]:
        doc = self.store.get(_doc_path(project_id, feature_id, "questions")) or {}
        return cast(list[QuestionDoc], doc.get("questions", []))

    def pending_questions(self, project_id: str, feature_id: str) -> list[QuestionDoc]:
        return [q for q in self.list_questions(project_id, feature_id) if q["answer"] is None]

    def _put_questions(
        self, project_id: str, feature_id: str, questions: list[QuestionDoc]
    ) -> None:
        self.store.put(_doc_path(project_id, feature_id, "questions"), {"questions": questions})

    def save_questions(
        self,
        project_id: str,
        feature_id: str,
        stage: int,
        decisions: Iterable[ParsedDecision],
        *,
        step_id: str | None = None,
        blocker: bool = False,
    ) -> list[QuestionDoc]:
        questions = self.list_questions(project_id, feature_id)
        created = [_question_from_decision(d, stage, step_id) for d in decisions]
        if blocker:
            for question in created:
                question["category"] = BLOCKER_CATEGORY
                question["is_required"] = True
        if created:
            self._put_questions(project_id, feature_id, questions + created)
        return created

    def answer_question(
        self, project_id: str, feature_id: str, question_id: str, answer: str
    ) -> QuestionDoc:
        questions = self.list_questions(project_id, feature_id)
        for question in questions:
            if question["id"] == question_id:
                question["answer"] = answer
                question["answered_at"] = _utcnow()
                self._put_questions(project_id, feature_id, questions)
                return question
        raise LookupError(f"Question '{question_id}' not found for session {feature_id}")

    # -- execution status --

    def get_status(self, project_id: str, feature_id: str) -> StatusDoc:
        doc = self.store.get(_doc_path(project_id, feature_id, "status"))
        if doc is None:
            raise SessionNotFound(project_id, feature_id)
        return cast(StatusDoc, doc)

    def _put_status(self, project_id: str, feature_id: str, status: StatusDoc) -> None:
        self.store.put(_doc_path(project_id, feature_id, "status"), dict(status))

    def update_status(
        self,
        project_id: str,
        feature_id: str,
        status: str,
        last_action: str,
        **fields: Any,
    ) -> StatusDoc:
        if status not in VALID_EXECUTION_STATUSES:
            raise ValueError(
                f"Invalid execution status '{status}'. "
                f"Must be one of: {sorted(VALID_EXECUTION_STATUSES)}"
            )
        doc = self.get_status(project_id, feature_id)
        doc["status"] = status
        doc["last_action"] = last_action
        doc["last_action_at"] = _utcnow()
        doc.update(fields)  # type: ignore[typeddict-item]
        self._put_status(project_id, feature_id, doc)
        return doc

    def touch_status(self, project_id: str, feature_id: str) -> None:
        """Refresh ``last_action_at`` so a long invocation is not mistaken for a crash."""
        doc = self.get_status(project_id, feature_id)
        doc["last_action_at"] = _utcnow()
        self._put_status(project_id, feature_id, doc)

    # -- invocation records --

    def list_invocations(self, project_id: str, feature_id: str) -> list[InvocationRecord]:
        doc = self.store.get(_doc_path(project_id, feature_id, "invocations")) or {}
        return cast(list[InvocationRecord], doc.get("records", []))

    def latest_invocation(self, project_id: str, feature_id: str) -> InvocationRecord | None:
        records = self.list_invocations(project_id, feature_id)
        return records[-1] if records else None

    def _put_invocations(
        self, project_id: str, feature_id: str, records: list[InvocationRecord]
    ) -> None:
        self.store.put(
            _doc_path(project_id, feature_id, "invocations"),
            {"records": records[-MAX_INVOCATION_RECORDS:]},
        )

    def start_invocation(
        self, project_id: str, feature_id: str, *, stage: int, continuation: str | None
    ) -> InvocationRecord:
        """Persist a ``started`` record and bump the spawn count before spawning."""
        record: InvocationRecord = {
            "id": uuid.uuid4().hex[:12],
            "stage": stage,
            "state": "started",
            "started_at": _utcnow(),
            "completed_at": None,
            "continuation": continuation,
            "is_error": False,
            "failure": None,
            "cost_usd": None,
            "output": "",
        }
        records = self.list_invocations(project_id, feature_id)
        records.append(record)
        self._put_invocations(project_id, feature_id, records)
        status = self.get_status(project_id, feature_id)
        self.update_status(
            project_id,
            feature_id,
            "executing",
            f"stage{stage}_started",
            spawn_count=status["spawn_count"] + 1,
        )
        return record

    def finish_invocation(
        self,
        project_id: str,
        feature_id: str,
        record_id: str,
        *,
        state: str = "completed",
        continuation: str | None = None,
        is_error: bool = False,
        failure: str | None = None,
        cost_usd: float | None = None,
        output: str = "",
    ) -> InvocationRecord:
        records = self.list_invocations(project_id, feature_id)
        for record in records:
            if record["id"] == record_id:
                record["state"] = state
                record["completed_at"] = _utcnow()
                record["is_error"] = is_error
                record["failure"] = failure
                record["cost_usd"] = cost_usd
                record["output"] = output[:MAX_RECORDED_OUTPUT_CHARS]
                if continuation:
                    record["continuation"] = continuation
                self._put_invocations(project_id, feature_id, records)
                return record
        raise LookupError(f"Invocation record '{record_id}' not found for session {feature_id}")


def _find_step(plan: PlanDoc, step_id: str) -> StepDoc:
    for step in plan["steps"]:
        if step["id"] == step_id:
            return step
    raise LookupError(f"Step '{step_id}' not found in plan v{plan['plan_version']}")


def _question_from_decision(
    decision: ParsedDecision, stage: int, step_id: str | None
) -> QuestionDoc:
    category = decision.category if decision.category in QUESTION_CATEGORIES else None
    priority = min(max(decision.priority, 1), 3)
    return {
        "id": uuid.uuid4().hex[:12],
        "stage": question_stage_label(stage),
        "stage_number": stage,
        "priority": priority,
        "category": category or DEFAULT_QUESTION_CATEGORY,
        "question_text": decision.question_text,
        "question_type": "single_choice" if len(decision.options) <= 4 else "multi_choice",
        "options": [
            {
                "label": option.label,
                "value": option.label.lower().replace(" ", "_"),
                "recommended": option.recommended,
            }
            for option in decision.options
        ],
        "is_required": priority <= 2,
        "file": decision.file,
        "line": decision.line,
        "step_id": step_id,
        "answer": None,
        "asked_at": _utcnow(),
        "answered_at": None,
    }
