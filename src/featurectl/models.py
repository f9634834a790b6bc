"""Stage graph, status vocabularies and persisted document shapes."""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Literal, NotRequired, TypedDict

STAGE_QUEUED = 0
STAGE_DISCOVERY = 1
STAGE_PLANNING = 2
STAGE_IMPLEMENTING = 3
STAGE_DELIVERY = 4
STAGE_REVIEW = 5
STAGE_FINAL_APPROVAL = 6
STAGE_COMPLETED = 7

STAGE_NAMES = MappingProxyType(
    {
        STAGE_QUEUED: "queued",
        STAGE_DISCOVERY: "discovery",
        STAGE_PLANNING: "planning",
        STAGE_IMPLEMENTING: "implementing",
        STAGE_DELIVERY: "delivery",
        STAGE_REVIEW: "review",
        STAGE_FINAL_APPROVAL: "final_approval",
        STAGE_COMPLETED: "completed",
    }
)

# Session status mirrors the stage for stages 0-7.
STAGE_STATUS = STAGE_NAMES
ACTIVE_STATUSES = frozenset(
    STAGE_NAMES[stage] for stage in range(STAGE_DISCOVERY, STAGE_COMPLETED)
)
VALID_SESSION_STATUSES = frozenset(STAGE_NAMES.values()) | {"paused", "failed"}
SESSION_TERMINAL_STATUSES = frozenset({"completed", "failed"})

# Directed stage graph. Pause-to-queue (active -> 0) is handled separately.
VALID_TRANSITIONS: MappingProxyType[int, frozenset[int]] = MappingProxyType(
    {
        STAGE_QUEUED: frozenset(),
        STAGE_DISCOVERY: frozenset({STAGE_PLANNING}),
        STAGE_PLANNING: frozenset({STAGE_DISCOVERY, STAGE_IMPLEMENTING}),
        STAGE_IMPLEMENTING: frozenset({STAGE_PLANNING, STAGE_DELIVERY}),
        STAGE_DELIVERY: frozenset({STAGE_REVIEW}),
        STAGE_REVIEW: frozenset({STAGE_PLANNING, STAGE_FINAL_APPROVAL}),
        STAGE_FINAL_APPROVAL: frozenset({STAGE_PLANNING, STAGE_REVIEW, STAGE_COMPLETED}),
        STAGE_COMPLETED: frozenset(),
    }
)

VALID_STEP_STATUSES = frozenset(
    {"pending", "in_progress", "completed", "blocked", "skipped", "needs_review"}
)
STEP_DONE_STATUSES = frozenset({"completed", "skipped"})
DEFAULT_STEP_COMPLEXITY = "medium"

ExecutionStatus = Literal["idle", "executing", "waiting_input", "paused", "error"]
VALID_EXECUTION_STATUSES = frozenset({"idle", "executing", "waiting_input", "paused", "error"})

InvocationState = Literal["started", "completed", "interrupted"]

QueueInsert = Literal["front", "end"] | int

QUESTION_CATEGORIES = frozenset(
    {
        "scope",
        "approach",
        "technical",
        "design",
        "code_quality",
        "architecture",
        "security",
        "performance",
    }
)
DEFAULT_QUESTION_CATEGORY = "technical"
# Questions the engine raises itself when a bounded retry loop is exhausted.
BLOCKER_CATEGORY = "blocker"


def stage_name(stage: int) -> str:
    return STAGE_NAMES.get(stage, f"stage{stage}")


def question_stage_label(stage: int) -> str:
    if stage == STAGE_DISCOVERY:
        return "discovery"
    if stage == STAGE_PLANNING:
        return "planning"
    if stage == STAGE_IMPLEMENTING:
        return "implementation"
    return "review"


# ---------------------------------------------------------------------------
# Persisted documents
# ---------------------------------------------------------------------------


class SessionDoc(TypedDict):
    id: str
    project_id: str
    feature_id: str
    title: str
    description: str
    project_path: str
    acceptance_criteria: list[str]
    affected_files: list[str]
    technical_notes: str
    base_branch: str
    feature_branch: str
    stage: int
    status: str
    status_reason: str | None
    resume_stage: int | None
    queue_position: int | None
    queued_at: str | None
    continuation: str | None
    implementation_continuation: str | None
    plan_file_path: str | None
    pr_url: str | None
    complexity: str | None
    suggested_agents: list[str]
    plan_review_iteration: int
    plan_validation_attempts: int
    session_expires_at: str
    created_at: str
    updated_at: str


class StepDoc(TypedDict):
    id: str
    parent_id: str | None
    title: str
    description: str
    status: str
    complexity: str
    retry_count: int
    content_hash: str
    completed_in_version: int | None
    summary: NotRequired[str]
    tests_added: NotRequired[list[str]]
    acceptance_criteria_ids: NotRequired[list[str]]
    estimated_files: NotRequired[list[str]]


class PlanDoc(TypedDict):
    plan_version: int
    is_approved: bool
    review_count: int
    steps: list[StepDoc]
    test_requirement: dict[str, Any] | None
    all_tests_passing: bool | None
    test_fix_attempts: int
    created_at: str
    updated_at: str


class OptionDoc(TypedDict):
    label: str
    value: str
    recommended: bool


class QuestionDoc(TypedDict):
    id: str
    stage: str
    stage_number: int
    priority: int
    category: str
    question_text: str
    question_type: str
    options: list[OptionDoc]
    is_required: bool
    file: str | None
    line: int | None
    step_id: str | None
    answer: str | None
    asked_at: str
    answered_at: str | None


class StatusDoc(TypedDict):
    status: str
    last_action: str | None
    last_action_at: str | None
    spawn_count: int
    current_step_id: str | None
    blocked_step_id: str | None


class InvocationRecord(TypedDict):
    id: str
    stage: int
    state: str
    started_at: str
    completed_at: str | None
    continuation: str | None
    is_error: bool
    failure: str | None
    cost_usd: float | None
    output: str
