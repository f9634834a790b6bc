"""Tests for session admission, the per-project queue and session documents."""

from __future__ import annotations

import asyncio

import pytest

from featurectl.errors import (
    ConcurrencyConflict,
    DuplicateSession,
    InvalidTransition,
    ProtectedFieldError,
    QueueEntryNotFound,
    SessionNotFound,
)
from featurectl.markers import DecisionOption, ParsedDecision, ParsedStep
from featurectl.models import BLOCKER_CATEGORY
from featurectl.registry import (
    SessionRegistry,
    feature_id_for,
    is_active,
    project_id_for,
    step_content_hash,
)


async def _create(registry: SessionRegistry, project_dir: str, title: str, **kwargs):
    return await registry.create_session(title=title, project_path=project_dir, **kwargs)


def _positions(registry: SessionRegistry, project_id: str) -> list[tuple[str, int]]:
    return [(s["feature_id"], s["queue_position"]) for s in registry.list_queue(project_id)]


def _active_ids(registry: SessionRegistry, project_id: str) -> list[str]:
    return [s["feature_id"] for s in registry.list_sessions(project_id) if is_active(s)]


def _step(step_id: str, title: str, description: str = "", parent: str | None = None):
    return ParsedStep(
        id=step_id, parent_id=parent, status="pending", title=title, description=description
    )


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------


class TestIdentifiers:
    def test_feature_id_slug(self) -> None:
        assert feature_id_for("Add CSV Export!") == "add-csv-export"
        assert feature_id_for("  spaced   out -- title ") == "spaced-out-title"
        assert len(feature_id_for("x" * 100)) == 64

    def test_feature_id_rejects_empty_slug(self) -> None:
        with pytest.raises(ValueError):
            feature_id_for("!!!")

    def test_project_id_is_stable(self) -> None:
        assert project_id_for("/srv/repo") == project_id_for("/srv/repo")
        assert project_id_for("/srv/repo") != project_id_for("/srv/other")
        assert len(project_id_for("/srv/repo")) == 32

    def test_step_hash_ignores_whitespace(self) -> None:
        assert step_content_hash("Title", "a  b\r\n\nc") == step_content_hash("Title", "a b\nc")
        assert step_content_hash("Title", "x") != step_content_hash("Title", "y")
        assert len(step_content_hash("Title")) == 16


# ---------------------------------------------------------------------------
# Admission and queue
# ---------------------------------------------------------------------------


class TestAdmission:
    @pytest.mark.asyncio
    async def test_first_session_is_active(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "First feature")
        assert session["stage"] == 1
        assert session["status"] == "discovery"
        assert session["queue_position"] is None
        assert session["feature_branch"] == "feature/first-feature"
        assert registry.active_session(session["project_id"])["feature_id"] == "first-feature"
        assert registry.get_status(session["project_id"], "first-feature")["status"] == "idle"

    @pytest.mark.asyncio
    async def test_later_sessions_queue_in_order(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        for title in ("Queued a", "Queued b", "Queued c"):
            await _create(registry, project_dir, title)
        pid = active["project_id"]
        assert _positions(registry, pid) == [("queued-a", 1), ("queued-b", 2), ("queued-c", 3)]
        assert registry.get_status(pid, "queued-a")["last_action"] == "session_queued"

    @pytest.mark.asyncio
    async def test_queue_front_and_index(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        await _create(registry, project_dir, "Queued a")
        await _create(registry, project_dir, "Queued b")
        await _create(registry, project_dir, "Jumps ahead", queue_at="front")
        await _create(registry, project_dir, "In the middle", queue_at=3)
        assert [f for f, _ in _positions(registry, active["project_id"])] == [
            "jumps-ahead",
            "queued-a",
            "in-the-middle",
            "queued-b",
        ]
        assert [p for _, p in _positions(registry, active["project_id"])] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, registry, project_dir) -> None:
        await _create(registry, project_dir, "Same title")
        with pytest.raises(DuplicateSession):
            await _create(registry, project_dir, "Same Title")

    @pytest.mark.asyncio
    async def test_projects_are_independent(self, registry, tmp_path) -> None:
        a = tmp_path / "a"
        b = tmp_path / "b"
        a.mkdir()
        b.mkdir()
        first = await _create(registry, str(a), "Feature")
        second = await _create(registry, str(b), "Feature")
        assert first["status"] == "discovery"
        assert second["status"] == "discovery"
        assert len(registry.list_all_sessions()) == 2


class TestBackOutAndPromotion:
    @pytest.mark.asyncio
    async def test_backing_out_active_promotes_head(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        for title in ("Queued a", "Queued b", "Queued c"):
            await _create(registry, project_dir, title)
        promoted: list[str] = []
        registry.add_activation_listener(lambda s: promoted.append(s["feature_id"]))

        pid = active["project_id"]
        paused = await registry.back_out(pid, "active-one")
        assert paused["status"] == "paused"
        assert promoted == ["queued-a"]
        head = registry.require_session(pid, "queued-a")
        assert head["status"] == "discovery"
        assert head["queue_position"] is None
        assert _positions(registry, pid) == [("queued-b", 1), ("queued-c", 2)]

    @pytest.mark.asyncio
    async def test_backing_out_queued_renumbers(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        for title in ("Queued a", "Queued b", "Queued c"):
            await _create(registry, project_dir, title)
        pid = active["project_id"]
        abandoned = await registry.back_out(pid, "queued-b", abandon=True)
        assert abandoned["status"] == "failed"
        assert abandoned["status_reason"] == "abandoned"
        assert _positions(registry, pid) == [("queued-a", 1), ("queued-c", 2)]
        assert registry.active_session(pid)["feature_id"] == "active-one"

    @pytest.mark.asyncio
    async def test_completion_promotes_next(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        await _create(registry, project_dir, "Queued a")
        pid, fid = active["project_id"], active["feature_id"]
        await registry.transition_stage(pid, fid, 2)
        registry.set_plan_approved(pid, fid)
        for stage in (3, 4, 5, 6, 7):
            await registry.transition_stage(pid, fid, stage)
        assert registry.require_session(pid, fid)["status"] == "completed"
        assert registry.active_session(pid)["feature_id"] == "queued-a"
        assert registry.list_queue(pid) == []

    @pytest.mark.asyncio
    async def test_cannot_back_out_terminal(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        await registry.fail_session(active["project_id"], "active-one", reason="boom")
        with pytest.raises(ValueError):
            await registry.back_out(active["project_id"], "active-one")


class TestResume:
    @pytest.mark.asyncio
    async def test_resume_when_idle_reactivates_stage(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        pid = active["project_id"]
        await registry.transition_stage(pid, "active-one", 2)
        await registry.pause_session(pid, "active-one", reason="lunch")
        resumed = await registry.resume_session(pid, "active-one")
        assert resumed["stage"] == 2
        assert resumed["status"] == "planning"
        assert resumed["status_reason"] is None

    @pytest.mark.asyncio
    async def test_resume_when_busy_queues_or_conflicts(self, registry, project_dir) -> None:
        first = await _create(registry, project_dir, "First")
        pid = first["project_id"]
        await registry.pause_session(pid, "first")
        await _create(registry, project_dir, "Second")

        with pytest.raises(ConcurrencyConflict):
            await registry.resume_session(pid, "first", enqueue_if_busy=False)

        queued = await registry.resume_session(pid, "first", queue_at="front")
        assert queued["status"] == "queued"
        assert queued["resume_stage"] == 1
        assert queued["queue_position"] == 1

    @pytest.mark.asyncio
    async def test_resume_active_session_rejected(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        with pytest.raises(ValueError):
            await registry.resume_session(active["project_id"], "active-one")

    @pytest.mark.asyncio
    async def test_pause_to_queue_remembers_stage(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        pid = active["project_id"]
        await _create(registry, project_dir, "Queued a")
        await registry.transition_stage(pid, "active-one", 2)

        await registry.transition_stage(pid, "active-one", 0)

        paused = registry.require_session(pid, "active-one")
        assert paused["status"] == "queued"
        assert paused["resume_stage"] == 2
        assert registry.active_session(pid)["feature_id"] == "queued-a"
        assert _positions(registry, pid) == [("active-one", 1)]


    @pytest.mark.asyncio
    async def test_new_session_waits_behind_requeued_one(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        pid = active["project_id"]
        await registry.transition_stage(pid, "active-one", 2)
        await registry.transition_stage(pid, "active-one", 0)
        promoted: list[str] = []
        registry.add_activation_listener(lambda s: promoted.append(s["feature_id"]))

        second = await _create(registry, project_dir, "Second")

        assert second["status"] == "queued"
        assert second["queue_position"] == 1
        assert promoted == ["active-one"]
        requeued = registry.require_session(pid, "active-one")
        assert requeued["stage"] == 2
        assert requeued["status"] == "planning"
        assert _positions(registry, pid) == [("second", 1)]
        assert registry.get_status(pid, "second")["last_action"] == "session_queued"

    @pytest.mark.asyncio
    async def test_resume_waits_behind_requeued_one(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        pid = active["project_id"]
        await _create(registry, project_dir, "Other")
        await registry.pause_session(pid, "other")
        await registry.transition_stage(pid, "active-one", 0)

        with pytest.raises(ConcurrencyConflict):
            await registry.resume_session(pid, "other", enqueue_if_busy=False)

        resumed = await registry.resume_session(pid, "other")
        assert resumed["status"] == "queued"
        assert resumed["queue_position"] == 1
        assert _active_ids(registry, pid) == ["active-one"]


class TestReorder:
    @pytest.mark.asyncio
    async def test_partial_reorder_is_stable(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        for title in ("Queued a", "Queued b", "Queued c", "Queued d"):
            await _create(registry, project_dir, title)
        pid = active["project_id"]
        ordered = await registry.reorder_queue(pid, ["queued-c", "queued-a"])
        assert [s["feature_id"] for s in ordered] == [
            "queued-c",
            "queued-a",
            "queued-b",
            "queued-d",
        ]
        assert [p for _, p in _positions(registry, pid)] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_unknown_id_rejected(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        await _create(registry, project_dir, "Queued a")
        with pytest.raises(QueueEntryNotFound):
            await registry.reorder_queue(active["project_id"], ["active-one"])


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_creates_admit_one(self, registry, project_dir) -> None:
        titles = ["Feature a", "Feature b", "Feature c", "Feature d"]

        created = await asyncio.gather(*(_create(registry, project_dir, t) for t in titles))

        pid = created[0]["project_id"]
        assert len(_active_ids(registry, pid)) == 1
        assert [p for _, p in _positions(registry, pid)] == [1, 2, 3]
        assert sorted(s["status"] == "queued" for s in created) == [False, True, True, True]

    @pytest.mark.asyncio
    async def test_concurrent_queue_changes_keep_positions_dense(
        self, registry, project_dir
    ) -> None:
        active = await _create(registry, project_dir, "Active one")
        for title in ("Queued a", "Queued b", "Queued c", "Queued d"):
            await _create(registry, project_dir, title)
        pid = active["project_id"]

        await asyncio.gather(
            registry.reorder_queue(pid, ["queued-d", "queued-b"]),
            registry.back_out(pid, "active-one"),
            registry.back_out(pid, "queued-c", abandon=True),
            registry.reorder_queue(pid, ["queued-b"]),
            _create(registry, project_dir, "Late one"),
        )

        assert _active_ids(registry, pid) == ["queued-d"]
        assert _positions(registry, pid) == [("queued-b", 1), ("queued-a", 2), ("late-one", 3)]

    @pytest.mark.asyncio
    async def test_back_out_racing_creates(self, registry, project_dir) -> None:
        active = await _create(registry, project_dir, "Active one")
        pid = active["project_id"]

        await asyncio.gather(
            registry.back_out(pid, "active-one"),
            _create(registry, project_dir, "Next x"),
            _create(registry, project_dir, "Next y"),
        )

        assert len(_active_ids(registry, pid)) == 1
        assert [p for _, p in _positions(registry, pid)] == [1]


# ---------------------------------------------------------------------------
# Stage transitions
# ---------------------------------------------------------------------------


class TestTransitions:
    @pytest.mark.asyncio
    async def test_skipping_stages_rejected(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        with pytest.raises(InvalidTransition) as exc_info:
            await registry.transition_stage(session["project_id"], "feature", 3)
        assert exc_info.value.valid == [2]
        assert registry.require_session(session["project_id"], "feature")["stage"] == 1

    @pytest.mark.asyncio
    async def test_implementing_requires_approved_plan(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        await registry.transition_stage(pid, "feature", 2)
        with pytest.raises(InvalidTransition, match="not approved"):
            await registry.transition_stage(pid, "feature", 3)
        registry.set_plan_approved(pid, "feature")
        moved = await registry.transition_stage(pid, "feature", 3)
        assert moved["status"] == "implementing"

    @pytest.mark.asyncio
    async def test_backward_move_counts_replan(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        await registry.transition_stage(pid, "feature", 2)
        registry.set_plan_approved(pid, "feature")
        await registry.transition_stage(pid, "feature", 3)
        registry.update_session(pid, "feature", plan_review_iteration=4)

        back = await registry.transition_stage(pid, "feature", 2)

        assert registry.get_plan(pid, "feature")["review_count"] == 1
        assert back["plan_review_iteration"] == 0

    @pytest.mark.asyncio
    async def test_inactive_session_cannot_transition(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        await registry.pause_session(session["project_id"], "feature")
        with pytest.raises(InvalidTransition, match="paused"):
            await registry.transition_stage(session["project_id"], "feature", 2)


# ---------------------------------------------------------------------------
# Session fields
# ---------------------------------------------------------------------------


class TestUpdateSession:
    @pytest.mark.asyncio
    async def test_protected_and_structural_fields(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        with pytest.raises(ProtectedFieldError):
            registry.update_session(pid, "feature", created_at="2020-01-01T00:00:00Z")
        with pytest.raises(ProtectedFieldError):
            registry.update_session(pid, "feature", stage=5)
        with pytest.raises(ValueError):
            registry.update_session(pid, "feature", nonsense=1)

    @pytest.mark.asyncio
    async def test_plain_fields_persist(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        registry.update_session(pid, "feature", continuation="abc", complexity="simple")
        stored = registry.require_session(pid, "feature")
        assert stored["continuation"] == "abc"
        assert stored["complexity"] == "simple"

    def test_missing_session(self, registry) -> None:
        with pytest.raises(SessionNotFound):
            registry.require_session("nope", "nope")


# ---------------------------------------------------------------------------
# Plan documents
# ---------------------------------------------------------------------------


class TestPlan:
    @pytest.mark.asyncio
    async def test_unchanged_completed_steps_survive_replan(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        registry.save_plan_steps(
            pid, "feature", [_step("s1", "Model", "Add the model"), _step("s2", "View", "Render")]
        )
        assert registry.complete_step(pid, "feature", "s1", summary="done")
        registry.complete_step(pid, "feature", "s2")
        registry.set_plan_approved(pid, "feature")

        plan = registry.save_plan_steps(
            pid,
            "feature",
            [_step("s1", "Model", "Add  the model"), _step("s2", "View", "Render a table")],
        )

        assert plan["plan_version"] == 2
        assert plan["is_approved"] is False
        by_id = {s["id"]: s for s in plan["steps"]}
        assert by_id["s1"]["status"] == "completed"
        assert by_id["s1"]["completed_in_version"] == 1
        assert by_id["s1"]["summary"] == "done"
        assert by_id["s2"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_complete_step_once_per_version(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        registry.save_plan_steps(pid, "feature", [_step("s1", "Model")])
        assert registry.complete_step(pid, "feature", "s1") is True
        assert registry.complete_step(pid, "feature", "s1") is False

    @pytest.mark.asyncio
    async def test_step_failures_and_reset(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        registry.save_plan_steps(pid, "feature", [_step("s1", "Model"), _step("s2", "View")])
        step = registry.record_step_failure(pid, "feature", "s1")
        assert step["retry_count"] == 1
        assert step["status"] == "in_progress"
        registry.set_tests_passing(pid, "feature", False)
        assert registry.record_test_fix_attempt(pid, "feature") == 1

        plan = registry.reset_steps(pid, "feature", {"s1": "pending"})

        assert plan["steps"][0]["retry_count"] == 0
        assert plan["steps"][0]["status"] == "pending"
        assert plan["all_tests_passing"] is None
        assert plan["test_fix_attempts"] == 0

    @pytest.mark.asyncio
    async def test_invalid_step_status(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        registry.save_plan_steps(pid, "feature", [_step("s1", "Model")])
        with pytest.raises(ValueError):
            registry.update_step(pid, "feature", "s1", status="finished")
        with pytest.raises(LookupError):
            registry.update_step(pid, "feature", "s9", status="blocked")


# ---------------------------------------------------------------------------
# Questions, status and invocation records
# ---------------------------------------------------------------------------


def _decision(priority: int = 1, category: str = "scope", options: int = 2) -> ParsedDecision:
    return ParsedDecision(
        priority=priority,
        category=category,
        question_text="Which way?",
        options=[
            DecisionOption(label=f"Choice {i}", recommended=i == 0) for i in range(options)
        ],
    )


class TestQuestions:
    @pytest.mark.asyncio
    async def test_question_shape(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        [required, optional, multi] = registry.save_questions(
            pid,
            "feature",
            2,
            [_decision(1), _decision(3, category="made-up"), _decision(2, options=5)],
        )
        assert required["stage"] == "planning"
        assert required["is_required"] is True
        assert required["options"][0] == {
            "label": "Choice 0",
            "value": "choice_0",
            "recommended": True,
        }
        assert optional["category"] == "technical"
        assert optional["is_required"] is False
        assert multi["question_type"] == "multi_choice"
        assert len(registry.pending_questions(pid, "feature")) == 3

    @pytest.mark.asyncio
    async def test_blocker_questions(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        [question] = registry.save_questions(
            pid, "feature", 3, [_decision(3)], step_id="s1", blocker=True
        )
        assert question["category"] == BLOCKER_CATEGORY
        assert question["is_required"] is True
        assert question["step_id"] == "s1"
        assert question["stage"] == "implementation"

    @pytest.mark.asyncio
    async def test_answering(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        [question] = registry.save_questions(pid, "feature", 1, [_decision()])
        answered = registry.answer_question(pid, "feature", question["id"], "Choice 1")
        assert answered["answer"] == "Choice 1"
        assert answered["answered_at"] is not None
        assert registry.pending_questions(pid, "feature") == []
        with pytest.raises(LookupError):
            registry.answer_question(pid, "feature", "missing", "x")


class TestStatusAndRecords:
    @pytest.mark.asyncio
    async def test_invocation_lifecycle(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        pid = session["project_id"]
        record = registry.start_invocation(pid, "feature", stage=1, continuation=None)
        status = registry.get_status(pid, "feature")
        assert status["status"] == "executing"
        assert status["last_action"] == "stage1_started"
        assert status["spawn_count"] == 1
        assert registry.latest_invocation(pid, "feature")["state"] == "started"

        finished = registry.finish_invocation(
            pid, "feature", record["id"], continuation="cont-1", output="x" * 30_000
        )
        assert finished["state"] == "completed"
        assert finished["continuation"] == "cont-1"
        assert len(finished["output"]) == 20_000

    @pytest.mark.asyncio
    async def test_invalid_execution_status(self, registry, project_dir) -> None:
        session = await _create(registry, project_dir, "Feature")
        with pytest.raises(ValueError):
            registry.update_status(session["project_id"], "feature", "running", "x")
