"""Stage controller: drives one session through the stage graph.

Each stage handler runs one agent invocation, folds the parsed outcome into
the registry, and either hands a follow-up prompt back to the run loop or
stops (waiting for answers, idle, error). A session has at most one run in
flight; every run and background job goes through a ``TaskSupervisor`` so
failures are logged instead of lost.
"""

from __future__ import annotations

import asyncio
import contextlib
import contextvars
import logging
import sqlite3
from collections.abc import Callable, Coroutine, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

from featurectl import events
from featurectl.agents_config import load_stage_templates
from featurectl.assessors import DEFAULT_AGENTS_BY_COMPLEXITY, DEFAULT_COMPLEXITY, Assessor
from featurectl.delivery import DeliverableVerifier
from featurectl.errors import InvalidTransition
from featurectl.events import EventSink
from featurectl.invoker import AgentInvoker, InvocationResult
from featurectl.markers import (
    DecisionOption,
    Outcome,
    ParsedDecision,
    ParsedStep,
    parse_plan_steps,
)
from featurectl.models import (
    BLOCKER_CATEGORY,
    STAGE_COMPLETED,
    STAGE_DELIVERY,
    STAGE_DISCOVERY,
    STAGE_FINAL_APPROVAL,
    STAGE_IMPLEMENTING,
    STAGE_PLANNING,
    STAGE_REVIEW,
    STEP_DONE_STATUSES,
    PlanDoc,
    QuestionDoc,
    SessionDoc,
    StepDoc,
    stage_name,
)
from featurectl.prompts import (
    answers_prompt,
    delivery_prompt,
    discovery_prompt,
    implementation_finish_prompt,
    implementation_prompt,
    implementation_retry_prompt,
    plan_validation_prompt,
    planning_continuation_prompt,
    planning_prompt,
    recovery_prompt,
    replan_prompt,
    review_prompt,
)
from featurectl.registry import SessionRegistry, is_active, session_dir
from featurectl.settings import Settings
from featurectl.store import add_session_log

log = logging.getLogger(__name__)

MAX_ITERATIONS = 10
MAX_VALIDATION_ATTEMPTS = 3
MAX_STEP_RETRIES = 3

_READ_ONLY = ("Read", "Glob", "Grep", "Task")

STAGE_CAPABILITIES: MappingProxyType[int, tuple[str, ...]] = MappingProxyType(
    {
        STAGE_DISCOVERY: _READ_ONLY,
        STAGE_PLANNING: _READ_ONLY,
        STAGE_IMPLEMENTING: ("Read", "Write", "Edit", "Bash", "Glob", "Grep", "Task"),
        STAGE_DELIVERY: ("Read", "Bash(git:*)", "Bash(gh:*)"),
        STAGE_REVIEW: (*_READ_ONLY, "Bash(git:diff*)", "Bash(gh:pr*)"),
    }
)

# Stages whose agent may edit files without per-action prompts.
SKIP_PERMISSION_STAGES = frozenset({STAGE_IMPLEMENTING})

# Sub-agent roster for stages that fan out; None means "use the session's suggestion".
STAGE_SUBAGENTS: MappingProxyType[int, tuple[str, ...] | None] = MappingProxyType(
    {
        STAGE_DISCOVERY: None,
        STAGE_PLANNING: ("frontend", "backend", "database", "testing", "infrastructure"),
    }
)

# Answer keywords for engine-raised blocker questions.
BLOCKER_RETRY = "retry"
BLOCKER_SKIP = "skip"
BLOCKER_ACCEPT = "accept"
BLOCKER_REPLAN = "replan"

_current_session: contextvars.ContextVar[tuple[str, str] | None] = contextvars.ContextVar(
    "featurectl_current_session", default=None
)


def should_continue_plan_review(review_count: int, has_decisions: bool, approved: bool) -> bool:
    """Loop planning again when the agent approved but still raised decisions."""
    return approved and has_decisions and review_count < MAX_ITERATIONS


def validate_plan_structure(plan: PlanDoc) -> list[str]:
    """Structural problems that block implementation of *plan*."""
    steps = plan["steps"]
    if not steps:
        return ["The plan has no steps."]
    issues: list[str] = []
    seen: set[str] = set()
    for step in steps:
        if step["id"] in seen:
            issues.append(f"Duplicate step id '{step['id']}'.")
        seen.add(step["id"])
        if not step["title"].strip():
            issues.append(f"Step '{step['id']}' has no title.")
    for step in steps:
        parent = step["parent_id"]
        if parent is None:
            continue
        if parent == step["id"]:
            issues.append(f"Step '{step['id']}' depends on itself.")
        elif parent not in seen:
            issues.append(f"Step '{step['id']}' depends on unknown step '{parent}'.")
    return issues


def implementation_complete(plan: PlanDoc) -> bool:
    """Every step done and, when tests are required, the suite reported passing."""
    requirement = plan["test_requirement"] or {}
    tests_required = requirement.get("required", True)
    if not plan["steps"]:
        if tests_required:
            return plan["all_tests_passing"] is True
        return plan["all_tests_passing"] is not None
    if any(s["status"] not in STEP_DONE_STATUSES for s in plan["steps"]):
        return False
    if tests_required:
        # Per-step completions only count when their tests passed, so an
        # unreported suite is accepted and only an explicit failure blocks.
        return plan["all_tests_passing"] is not False
    return True


def blocker_choice(answer: str) -> str:
    text = answer.strip().lower()
    if "plan" in text:
        return BLOCKER_REPLAN
    if "skip" in text:
        return BLOCKER_SKIP
    if "accept" in text or "continue" in text:
        return BLOCKER_ACCEPT
    return BLOCKER_RETRY


class SessionLogHandler(logging.Handler):
    """Persist controller log records to the session_logs table.

    Runs for different projects overlap on one logger, so records are only
    kept when they were emitted from this session's run task.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        project_id: str,
        feature_id: str,
        *,
        source: str = "controller",
    ) -> None:
        super().__init__()
        self.conn = conn
        self.project_id = project_id
        self.feature_id = feature_id
        self.source = source

    def emit(self, record: logging.LogRecord) -> None:
        if _current_session.get() != (self.project_id, self.feature_id):
            return
        try:
            add_session_log(
                self.conn,
                project_id=self.project_id,
                feature_id=self.feature_id,
                level=record.levelname,
                message=self.format(record),
                source=self.source,
            )
        except Exception:
            self.handleError(record)


class TaskSupervisor:
    """Owns background tasks and logs the ones that die with an exception."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("Background task %s failed", task.get_name(), exc_info=exc)

    def __len__(self) -> int:
        return len(self._tasks)

    async def join(self) -> None:
        """Wait until no supervised task is left, including ones spawned meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


@dataclass
class Next:
    """Run the loop again, optionally with an explicit prompt."""

    prompt: str | None = None


StageHandler = Callable[[SessionDoc, str | None], Coroutine[Any, Any, Next | None]]


class StageController:
    def __init__(
        self,
        registry: SessionRegistry,
        invoker: AgentInvoker,
        assessor: Assessor,
        events_sink: EventSink,
        verifier: DeliverableVerifier,
        *,
        settings: Settings | None = None,
        capabilities: Mapping[int, Sequence[str]] = STAGE_CAPABILITIES,
        subagents: Mapping[int, Sequence[str] | None] = STAGE_SUBAGENTS,
        templates: Callable[[str | None], Mapping[int, str]] = load_stage_templates,
        log_conn: sqlite3.Connection | None = None,
    ) -> None:
        self.registry = registry
        self.invoker = invoker
        self.assessor = assessor
        self.events = events_sink
        self.verifier = verifier
        self.settings = settings or Settings()
        self.capabilities = MappingProxyType(dict(capabilities))
        self.subagents = MappingProxyType(dict(subagents))
        self._templates = templates
        self._log_conn = log_conn
        self.supervisor = TaskSupervisor()
        self._running: set[tuple[str, str]] = set()
        self._handlers: dict[int, StageHandler] = {
            STAGE_DISCOVERY: self._discovery,
            STAGE_PLANNING: self._planning,
            STAGE_IMPLEMENTING: self._implementing,
            STAGE_DELIVERY: self._delivery,
            STAGE_REVIEW: self._review,
        }
        registry.add_activation_listener(self._on_activated)

    # -- public operations --

    def is_running(self, project_id: str, feature_id: str) -> bool:
        return (project_id, feature_id) in self._running

    def schedule(
        self, project_id: str, feature_id: str, *, prompt: str | None = None, reason: str = "run"
    ) -> asyncio.Task:
        return self.supervisor.spawn(
            self.run(project_id, feature_id, prompt=prompt),
            name=f"{reason}:{session_dir(project_id, feature_id)}",
        )

    async def run(self, project_id: str, feature_id: str, *, prompt: str | None = None) -> None:
        """Drive the session until it needs input, errors or leaves the active set.

        A second request for a session that is already running is ignored.
        """
        key = (project_id, feature_id)
        if key in self._running:
            log.info("Session %s is already running; ignoring run request", feature_id)
            return
        self._running.add(key)
        token = _current_session.set(key)
        handler: SessionLogHandler | None = None
        if self._log_conn is not None:
            handler = SessionLogHandler(self._log_conn, project_id, feature_id)
            handler.setLevel(logging.INFO)
            log.addHandler(handler)
            if log.getEffectiveLevel() > logging.INFO:
                log.setLevel(logging.INFO)
        try:
            await self._run_loop(project_id, feature_id, prompt)
        except Exception:
            log.exception("Run failed for session %s", feature_id)
            session = self.registry.get_session(project_id, feature_id)
            if session is not None:
                self._set_status(session, "error", f"stage{session['stage']}_error")
            raise
        finally:
            if handler is not None:
                log.removeHandler(handler)
            _current_session.reset(token)
            self._running.discard(key)

    async def create_session(self, **fields: Any) -> SessionDoc:
        """Create a session, assess its complexity and start it if it is active."""
        session = await self.registry.create_session(**fields)
        pid, fid = session["project_id"], session["feature_id"]
        assessment = await self.assessor.assess_complexity(session)
        session = self.registry.update_session(
            pid,
            fid,
            complexity=assessment.complexity,
            suggested_agents=assessment.suggested_agents,
        )
        log.info(
            "Session %s complexity %s (%s)", fid, assessment.complexity, assessment.reason
        )
        if session["status"] == "queued":
            self._emit(
                events.SESSION_QUEUED, session, {"queue_position": session["queue_position"]}
            )
        elif is_active(session):
            self._emit(events.STAGE_CHANGED, session, {"from": None, "to": session["stage"]})
            self.schedule(pid, fid, reason="create")
        return session

    async def answer(
        self, project_id: str, feature_id: str, question_id: str, answer: str
    ) -> QuestionDoc:
        """Record an answer; resume the stage once nothing is left pending."""
        question = self.registry.answer_question(project_id, feature_id, question_id, answer)
        session = self.registry.require_session(project_id, feature_id)
        self._emit(
            events.QUESTION_ANSWERED, session, {"question_id": question_id, "answer": answer}
        )

        prompt: str | None = None
        if question["category"] == BLOCKER_CATEGORY:
            self.registry.update_status(
                project_id, feature_id, "idle", "stage3_unblocked", blocked_step_id=None
            )
            choice = blocker_choice(answer)
            if choice == BLOCKER_REPLAN:
                step = await self._return_to_planning(
                    session, f"Blocked: {question['question_text']}"
                )
                if step is not None:
                    self.schedule(project_id, feature_id, prompt=step.prompt, reason="replan")
                return question
            prompt = self._resolve_blocker(session, question, choice)

        if self.registry.pending_questions(project_id, feature_id):
            return question
        session = self.registry.require_session(project_id, feature_id)
        if not is_active(session) or self.is_running(project_id, feature_id):
            return question
        if prompt is None:
            answered = self._answers_since_last_run(session)
            prompt = answers_prompt(answered) if answered else None
        self.schedule(project_id, feature_id, prompt=prompt, reason="answer")
        return question

    async def approve(self, project_id: str, feature_id: str) -> SessionDoc:
        """FinalApproval -> Completed."""
        session = self.registry.require_session(project_id, feature_id)
        session = await self._transition(session, STAGE_COMPLETED)
        self._set_status(session, "idle", "session_completed")
        return session

    async def request_changes(
        self, project_id: str, feature_id: str, target: int, reason: str = ""
    ) -> SessionDoc:
        """Send a session awaiting final approval back to Planning or Review."""
        session = self.registry.require_session(project_id, feature_id)
        if session["stage"] != STAGE_FINAL_APPROVAL or target not in (
            STAGE_PLANNING,
            STAGE_REVIEW,
        ):
            raise InvalidTransition(
                session["stage"],
                target,
                (STAGE_PLANNING, STAGE_REVIEW),
                reason="changes can only be requested at final approval",
            )
        reason = reason or "Changes requested at final approval"
        if target == STAGE_REVIEW:
            session = await self._transition(session, STAGE_REVIEW)
            self.schedule(project_id, feature_id, reason="request-changes")
            return session
        step = await self._return_to_planning(session, reason)
        if step is not None:
            self.schedule(project_id, feature_id, prompt=step.prompt, reason="request-changes")
        return self.registry.require_session(project_id, feature_id)

    async def pause(self, project_id: str, feature_id: str, *, abandon: bool = False) -> SessionDoc:
        """Pause or abandon; an in-flight run stops once its current invocation returns."""
        session = await self.registry.back_out(project_id, feature_id, abandon=abandon)
        if abandon:
            self._set_status(session, "idle", "session_abandoned")
        else:
            self._set_status(session, "paused", "session_paused")
        return session

    async def resume(self, project_id: str, feature_id: str, **kwargs: Any) -> SessionDoc:
        session = await self.registry.resume_session(project_id, feature_id, **kwargs)
        if session["status"] == "queued":
            self._emit(
                events.SESSION_QUEUED, session, {"queue_position": session["queue_position"]}
            )
        else:
            self._set_status(session, "idle", "session_resumed")
            self.schedule(project_id, feature_id, reason="resume")
        return session

    def recover(self, session: SessionDoc) -> asyncio.Task:
        """Re-enter the session's stage after an interrupted invocation."""
        log.info(
            "Re-entering %s for session %s", stage_name(session["stage"]), session["feature_id"]
        )
        return self.schedule(
            session["project_id"],
            session["feature_id"],
            prompt=recovery_prompt(session["stage"]),
            reason="recover",
        )

    # -- run loop --

    async def _run_loop(self, project_id: str, feature_id: str, prompt: str | None) -> None:
        next_prompt = prompt
        while True:
            session = self.registry.require_session(project_id, feature_id)
            if not is_active(session):
                log.info("Session %s is %s; stopping", feature_id, session["status"])
                return
            handler = self._handlers.get(session["stage"])
            if handler is None:
                return
            step = await handler(session, next_prompt)
            if step is None:
                return
            next_prompt = step.prompt

    def _on_activated(self, session: SessionDoc) -> None:
        self._emit(events.SESSION_PROMOTED, session, {"stage": session["stage"]})
        self.schedule(session["project_id"], session["feature_id"], reason="promote")

    # -- stage handlers --

    async def _discovery(self, session: SessionDoc, prompt: str | None) -> Next | None:
        pid, fid = session["project_id"], session["feature_id"]
        if prompt is None:
            prompt = discovery_prompt(
                session, self._agents_for(session), self._instructions(session)
            )
        result = await self._invoke(session, prompt)
        if not self._still_active(session):
            return None
        if result.is_error:
            return self._stage_error(session, result)
        outcome = result.outcome

        if outcome.plan_file_path:
            session = self.registry.update_session(pid, fid, plan_file_path=outcome.plan_file_path)
        steps = self._steps_from(outcome, session)
        if steps:
            self._save_steps(session, steps)

        if await self._save_decisions(session, outcome.decisions):
            return self._await_input(session, "stage1_awaiting_answers")
        if session["plan_file_path"] and not self.registry.pending_questions(pid, fid):
            await self._transition(session, STAGE_PLANNING)
            return Next()
        return self._idle(session, "stage1_complete")

    async def _planning(self, session: SessionDoc, prompt: str | None) -> Next | None:
        pid, fid = session["project_id"], session["feature_id"]
        iteration = session["plan_review_iteration"] + 1
        session = self.registry.update_session(pid, fid, plan_review_iteration=iteration)
        if prompt is None:
            plan = self.registry.get_plan(pid, fid)
            prompt = planning_prompt(
                session, plan, iteration, self._agents_for(session), self._instructions(session)
            )
        result = await self._invoke(session, prompt)
        if not self._still_active(session):
            return None
        if result.is_error:
            return self._stage_error(session, result)
        outcome = result.outcome

        steps = self._steps_from(outcome, session)
        if steps:
            self._save_steps(session, steps)
        questions = await self._save_decisions(session, outcome.decisions, validate=True)

        if should_continue_plan_review(iteration, bool(questions), outcome.plan_approved):
            log.info(
                "Plan review %d approved with %d open decision(s); continuing",
                iteration,
                len(questions),
            )
            return Next(planning_continuation_prompt(iteration + 1, len(questions)))
        if not outcome.plan_approved:
            if questions:
                return self._await_input(session, "stage2_awaiting_answers")
            return self._idle(session, "stage2_complete")
        if questions:
            log.warning(
                "Plan review stopped at %d iterations with %d open decision(s); proceeding",
                iteration,
                len(questions),
            )

        plan = self.registry.get_plan(pid, fid)
        issues = validate_plan_structure(plan)
        if issues:
            attempts = session["plan_validation_attempts"] + 1
            session = self.registry.update_session(pid, fid, plan_validation_attempts=attempts)
            if attempts <= MAX_VALIDATION_ATTEMPTS:
                log.info("Plan failed validation (attempt %d): %s", attempts, "; ".join(issues))
                return Next(plan_validation_prompt(issues, attempts, MAX_VALIDATION_ATTEMPTS))
            log.warning(
                "Plan still invalid after %d attempts; proceeding: %s",
                MAX_VALIDATION_ATTEMPTS,
                "; ".join(issues),
            )
            self._set_status(session, "executing", "stage2_validation_exhausted")

        plan = self.registry.set_plan_approved(pid, fid)
        self._emit(events.PLAN_APPROVED, session, {"plan_version": plan["plan_version"]})
        await self._transition(session, STAGE_IMPLEMENTING)
        return Next()

    async def _implementing(self, session: SessionDoc, prompt: str | None) -> Next | None:
        pid, fid = session["project_id"], session["feature_id"]
        plan = self.registry.get_plan(pid, fid)
        if plan["test_requirement"] is None:
            requirement = await self.assessor.assess_test_requirement(session, plan)
            plan = self.registry.set_test_requirement(pid, fid, requirement.to_dict())
            log.info(
                "Tests %s for %s: %s",
                "required" if requirement.required else "not required",
                fid,
                requirement.reason,
            )
        if prompt is None and implementation_complete(plan) and plan["steps"]:
            return await self._finish_implementation(session)

        if prompt is None:
            prompt = implementation_prompt(session, plan, self._instructions(session))
        result = await self._invoke(
            session, prompt, continuation_field="implementation_continuation"
        )
        if not self._still_active(session):
            return None
        if result.is_error:
            return self._stage_error(session, result)
        outcome = result.outcome

        status = outcome.implementation_status
        if status is not None and status.step_id:
            self.registry.update_status(
                pid, fid, "executing", "stage3_step_started", current_step_id=status.step_id
            )
            self._emit(
                events.STEP_STARTED,
                session,
                {"step_id": status.step_id, "message": status.message},
            )

        steps_by_id = {s["id"]: s for s in plan["steps"]}
        progressed = False
        failed: set[str] = set()
        blocked: list[StepDoc] = []
        for completion in outcome.step_completions:
            step = steps_by_id.get(completion.id)
            if step is None:
                log.warning("Agent completed unknown step %s", completion.id)
                continue
            if completion.tests_passing:
                if self.registry.complete_step(
                    pid,
                    fid,
                    completion.id,
                    summary=completion.summary,
                    tests_added=completion.tests_added,
                ):
                    progressed = True
                    self._emit(
                        events.STEP_COMPLETED,
                        session,
                        {"step_id": completion.id, "summary": completion.summary},
                    )
                continue
            failed.add(completion.id)
            updated = self.registry.record_step_failure(pid, fid, completion.id)
            if updated["retry_count"] >= MAX_STEP_RETRIES:
                blocked.append(updated)

        if outcome.implementation_complete:
            self.registry.set_tests_passing(pid, fid, outcome.all_tests_passing)

        questions = await self._save_decisions(session, outcome.decisions)
        if blocked:
            for step in blocked:
                self._block_step(session, step)
            return None
        if questions:
            return self._await_input(session, "stage3_awaiting_answers")

        plan = self.registry.get_plan(pid, fid)
        if implementation_complete(plan):
            return await self._finish_implementation(session)

        remaining = [s for s in plan["steps"] if s["status"] not in STEP_DONE_STATUSES]
        if not remaining:
            attempts = self.registry.record_test_fix_attempt(pid, fid)
            if attempts >= MAX_STEP_RETRIES:
                return self._block_suite(session)
            return Next(implementation_finish_prompt())

        current = remaining[0]
        if not progressed and not failed:
            # No completion reported at all counts against the step in progress.
            current = self.registry.record_step_failure(pid, fid, current["id"])
            if current["retry_count"] >= MAX_STEP_RETRIES:
                return self._block_step(session, current)
        return Next(
            implementation_retry_prompt(current["id"], current["retry_count"] + 1, MAX_STEP_RETRIES)
        )

    async def _finish_implementation(self, session: SessionDoc) -> Next:
        self.registry.update_status(
            session["project_id"],
            session["feature_id"],
            "executing",
            "stage3_complete",
            current_step_id=None,
        )
        await self._transition(session, STAGE_DELIVERY)
        return Next()

    async def _delivery(self, session: SessionDoc, prompt: str | None) -> Next | None:
        pid, fid = session["project_id"], session["feature_id"]
        if prompt is None:
            prompt = delivery_prompt(session, self._instructions(session))
        result = await self._invoke(session, prompt)
        if not self._still_active(session):
            return None
        if result.is_error:
            return self._stage_error(session, result)

        claimed = result.outcome.pr_created
        url = await self.verifier.confirm(session["project_path"], session["feature_branch"])
        if url is None:
            log.error(
                "No pull request found for %s (agent claimed %s)",
                session["feature_branch"],
                claimed.url if claimed else "nothing",
            )
            self._set_status(session, "error", "stage4_no_pr_url")
            return None
        session = self.registry.update_session(pid, fid, pr_url=url)
        log.info("Pull request confirmed for %s: %s", fid, url)
        await self._transition(session, STAGE_REVIEW)
        return Next()

    async def _review(self, session: SessionDoc, prompt: str | None) -> Next | None:
        pid, fid = session["project_id"], session["feature_id"]
        if prompt is None:
            plan = self.registry.get_plan(pid, fid)
            prompt = review_prompt(session, plan, self._instructions(session))
        result = await self._invoke(session, prompt)
        if not self._still_active(session):
            return None
        if result.is_error:
            return self._stage_error(session, result)
        outcome = result.outcome

        ci_failing = outcome.ci_failed or (
            outcome.ci_status is not None and outcome.ci_status.status == "failing"
        )
        if outcome.return_to_planning or ci_failing:
            reason = outcome.return_reason or "CI checks failed"
            return await self._return_to_planning(session, reason)

        if await self._save_decisions(session, outcome.decisions):
            return self._await_input(session, "stage5_awaiting_answers")
        if outcome.pr_approved:
            session = await self._transition(session, STAGE_FINAL_APPROVAL)
            self._set_status(session, "waiting_input", "stage6_awaiting_approval")
            return None
        return self._idle(session, "stage5_complete")

    async def _return_to_planning(self, session: SessionDoc, reason: str) -> Next | None:
        pid, fid = session["project_id"], session["feature_id"]
        plan = self.registry.get_plan(pid, fid)
        if plan["review_count"] >= MAX_ITERATIONS:
            log.error(
                "Session %s hit the replanning limit (%d); failing", fid, MAX_ITERATIONS
            )
            self._set_status(session, "error", f"stage{session['stage']}_replan_limit")
            await self.registry.fail_session(pid, fid, reason="replanning limit reached")
            return None
        impact = await self.assessor.assess_incomplete_steps(session, plan, reason)
        self.registry.reset_steps(pid, fid, {i.step_id: i.status for i in impact.affected})
        log.info(
            "Returning %s to planning: %s (%d step(s) to revisit)",
            fid,
            reason,
            len(impact.affected),
        )
        await self._transition(session, STAGE_PLANNING)
        return Next(replan_prompt(reason, [i.step_id for i in impact.affected]))

    # -- blockers --

    def _block_step(self, session: SessionDoc, step: StepDoc) -> None:
        pid, fid = session["project_id"], session["feature_id"]
        self.registry.update_step(pid, fid, step["id"], status="blocked")
        log.warning("Step %s blocked after %d attempts", step["id"], step["retry_count"])
        decision = ParsedDecision(
            priority=1,
            category=BLOCKER_CATEGORY,
            question_text=(
                f"Step {step['id']} ({step['title']}) is still failing after "
                f"{MAX_STEP_RETRIES} attempts. How should we proceed?"
            ),
            options=[
                DecisionOption("Retry the step", recommended=True),
                DecisionOption("Skip this step"),
                DecisionOption("Return to planning"),
            ],
        )
        self._raise_blocker(session, decision, step_id=step["id"])
        return None

    def _block_suite(self, session: SessionDoc) -> None:
        log.warning("Test suite still failing after %d attempts", MAX_STEP_RETRIES)
        decision = ParsedDecision(
            priority=1,
            category=BLOCKER_CATEGORY,
            question_text=(
                f"Every step is done but the test suite is still failing after "
                f"{MAX_STEP_RETRIES} attempts. How should we proceed?"
            ),
            options=[
                DecisionOption("Retry the test fixes", recommended=True),
                DecisionOption("Accept and continue to delivery"),
                DecisionOption("Return to planning"),
            ],
        )
        self._raise_blocker(session, decision, step_id=None)
        return None

    def _raise_blocker(
        self, session: SessionDoc, decision: ParsedDecision, *, step_id: str | None
    ) -> None:
        pid, fid = session["project_id"], session["feature_id"]
        questions = self.registry.save_questions(
            pid, fid, session["stage"], [decision], step_id=step_id, blocker=True
        )
        self._emit(
            events.QUESTIONS_BATCH,
            session,
            {"count": len(questions), "question_ids": [q["id"] for q in questions]},
        )
        self._set_status(session, "waiting_input", "stage3_blocked", blocked_step_id=step_id)

    def _resolve_blocker(
        self, session: SessionDoc, question: QuestionDoc, choice: str
    ) -> str | None:
        """Apply a retry/skip/accept answer; return the prompt to resume with, if any."""
        pid, fid = session["project_id"], session["feature_id"]
        step_id = question["step_id"]
        if step_id is not None:
            if choice == BLOCKER_SKIP:
                self.registry.update_step(pid, fid, step_id, status="skipped")
                return None
            self.registry.reset_steps(pid, fid, {step_id: "pending"})
            return implementation_retry_prompt(step_id, 1, MAX_STEP_RETRIES)
        if choice in (BLOCKER_ACCEPT, BLOCKER_SKIP):
            self.registry.set_tests_passing(pid, fid, True)
            return None
        self.registry.reset_steps(pid, fid, {})
        return implementation_finish_prompt()

    # -- invocation --

    async def _invoke(
        self, session: SessionDoc, prompt: str, *, continuation_field: str = "continuation"
    ) -> InvocationResult:
        pid, fid = session["project_id"], session["feature_id"]
        stage = session["stage"]
        continuation = session[continuation_field]  # type: ignore[literal-required]
        record = self.registry.start_invocation(pid, fid, stage=stage, continuation=continuation)
        self._emit(
            events.EXECUTION_STATUS,
            session,
            {"status": "running", "action": f"stage{stage}_started"},
        )

        def observe(chunk: str) -> None:
            self._emit(events.AGENT_OUTPUT, session, {"stage": stage, "chunk": chunk})

        heartbeat = asyncio.create_task(self._heartbeat(pid, fid), name=f"heartbeat:{fid}")
        try:
            result = await self.invoker.invoke(
                prompt,
                session["project_path"],
                continuation=continuation,
                capabilities=self.capabilities.get(stage, ()),
                timeout=self.settings.invocation_timeout,
                skip_permissions=stage in SKIP_PERMISSION_STAGES,
                observer=observe,
            )
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        if result.continuation and result.continuation != continuation:
            self.registry.update_session(pid, fid, **{continuation_field: result.continuation})
        self.registry.finish_invocation(
            pid,
            fid,
            record["id"],
            continuation=result.continuation,
            is_error=result.is_error,
            failure=result.failure,
            cost_usd=result.cost_usd,
            output=result.output,
        )
        log.info(
            "Stage %d invocation for %s finished in %dms (error=%s)",
            stage,
            fid,
            result.duration_ms,
            result.is_error,
        )
        return result

    def _still_active(self, session: SessionDoc) -> bool:
        """False once the session was paused or abandoned while its agent ran."""
        current = self.registry.require_session(session["project_id"], session["feature_id"])
        if is_active(current):
            return True
        log.info(
            "Session %s became %s during its invocation; stopping",
            current["feature_id"],
            current["status"],
        )
        return False

    async def _heartbeat(self, project_id: str, feature_id: str) -> None:
        interval = max(self.settings.stale_threshold / 3, 1.0)
        while True:
            await asyncio.sleep(interval)
            self.registry.touch_status(project_id, feature_id)

    def _stage_error(self, session: SessionDoc, result: InvocationResult) -> None:
        stage = session["stage"]
        log.error(
            "Stage %d invocation failed for %s: %s (%s)",
            stage,
            session["feature_id"],
            result.error,
            result.failure,
        )
        self._set_status(session, "error", f"stage{stage}_{result.failure or 'error'}")
        return None

    # -- helpers --

    async def _transition(self, session: SessionDoc, target: int) -> SessionDoc:
        source = session["stage"]
        updated = await self.registry.transition_stage(
            session["project_id"], session["feature_id"], target
        )
        self._emit(events.STAGE_CHANGED, updated, {"from": source, "to": target})
        return updated

    async def _save_decisions(
        self, session: SessionDoc, decisions: Sequence[ParsedDecision], *, validate: bool = False
    ) -> list[QuestionDoc]:
        if not decisions:
            return []
        pid, fid = session["project_id"], session["feature_id"]
        if validate:
            plan = self.registry.get_plan(pid, fid)
            decisions = await self.assessor.validate_decisions(decisions, session, plan)
        questions = self.registry.save_questions(pid, fid, session["stage"], decisions)
        if questions:
            self._emit(
                events.QUESTIONS_BATCH,
                session,
                {"count": len(questions), "question_ids": [q["id"] for q in questions]},
            )
        return questions

    def _save_steps(self, session: SessionDoc, steps: Sequence[ParsedStep]) -> PlanDoc:
        plan = self.registry.save_plan_steps(session["project_id"], session["feature_id"], steps)
        self._emit(
            events.PLAN_UPDATED,
            session,
            {"plan_version": plan["plan_version"], "step_count": len(plan["steps"])},
        )
        return plan

    def _steps_from(self, outcome: Outcome, session: SessionDoc) -> list[ParsedStep]:
        """Steps from markers, else from the plan file the output names."""
        if outcome.plan_steps:
            return outcome.plan_steps
        if not outcome.plan_file_path:
            return []
        path = Path(outcome.plan_file_path)
        if not path.is_absolute():
            path = Path(session["project_path"]) / path
        try:
            text = path.read_text(encoding="utf-8")
        except OSError:
            log.warning("Plan file %s is not readable", path)
            return []
        return parse_plan_steps(text)

    def _answers_since_last_run(self, session: SessionDoc) -> list[QuestionDoc]:
        pid, fid = session["project_id"], session["feature_id"]
        latest = self.registry.latest_invocation(pid, fid)
        since = latest["started_at"] if latest else ""
        return [
            q
            for q in self.registry.list_questions(pid, fid)
            if q["answer"] is not None
            and q["category"] != BLOCKER_CATEGORY
            and (q["answered_at"] or "") >= since
        ]

    def _agents_for(self, session: SessionDoc) -> Sequence[str]:
        configured = self.subagents.get(session["stage"])
        if configured is not None:
            return configured
        return session["suggested_agents"] or DEFAULT_AGENTS_BY_COMPLEXITY[DEFAULT_COMPLEXITY]

    def _instructions(self, session: SessionDoc) -> str:
        return self._templates(session["project_path"]).get(session["stage"], "")

    def _await_input(self, session: SessionDoc, action: str) -> None:
        self._set_status(session, "waiting_input", action)
        return None

    def _idle(self, session: SessionDoc, action: str) -> None:
        self._set_status(session, "idle", action)
        return None

    def _set_status(self, session: SessionDoc, status: str, action: str, **fields: Any) -> None:
        self.registry.update_status(
            session["project_id"], session["feature_id"], status, action, **fields
        )
        shown = {"executing": "running", "error": "error"}.get(status, "idle")
        self._emit(events.EXECUTION_STATUS, session, {"status": shown, "action": action})

    def _emit(
        self, event_type: str, session: SessionDoc, data: dict[str, Any] | None = None
    ) -> None:
        self.events.publish(
            event_type,
            session_dir(session["project_id"], session["feature_id"]),
            project=session["project_id"],
            data=data,
        )
