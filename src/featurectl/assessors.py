"""Small classification tasks run on the lightweight invocation path.

Every assessor fails toward the safer default: tests required, decision kept,
completed steps flagged for review, normal complexity with a full agent set.
Replies are JSON objects embedded in free text and are checked against a
schema before use.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from typing import Any

from jsonschema import ValidationError, validate

from featurectl.invoker import AgentInvoker
from featurectl.markers import DecisionOption, ParsedDecision
from featurectl.models import PlanDoc, SessionDoc

log = logging.getLogger(__name__)

AGENT_TYPES = ("frontend", "backend", "database", "testing", "infrastructure", "documentation")
COMPLEXITY_LEVELS = ("trivial", "simple", "normal", "complex")
DEFAULT_COMPLEXITY = "normal"
DEFAULT_AGENTS_BY_COMPLEXITY = {
    "trivial": ("frontend",),
    "simple": ("frontend", "testing"),
    "normal": ("frontend", "backend", "testing", "infrastructure"),
    "complex": AGENT_TYPES,
}
DEFAULT_DECISION_VALIDATION_TIMEOUT = 180

TEST_REQUIREMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["required", "reason"],
    "properties": {
        "required": {"type": "boolean"},
        "reason": {"type": "string"},
        "testTypes": {"type": "array", "items": {"type": "string"}},
        "existingFramework": {"type": ["string", "null"]},
        "suggestedCoverage": {"type": "string"},
    },
}

DECISION_VERDICT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "anyOf": [
        {
            "required": ["action"],
            "properties": {
                "action": {"enum": ["pass", "filter", "repurpose"]},
                "reason": {"type": "string"},
                "questions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "questionText": {"type": "string"},
                            "category": {"type": "string"},
                            "priority": {"type": "integer"},
                            "options": {
                                "type": "array",
                                "items": {
                                    "type": "object",
                                    "required": ["label"],
                                    "properties": {
                                        "label": {"type": "string"},
                                        "recommended": {"type": "boolean"},
                                    },
                                },
                            },
                        },
                    },
                },
            },
        },
        # Older reply shape.
        {
            "required": ["valid"],
            "properties": {"valid": {"type": "boolean"}, "reason": {"type": "string"}},
        },
    ],
}

STEP_IMPACT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["affectedSteps"],
    "properties": {
        "affectedSteps": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["stepId", "status"],
                "properties": {
                    "stepId": {"type": "string"},
                    "status": {"enum": ["pending", "needs_review"]},
                    "reason": {"type": "string"},
                },
            },
        },
        "unaffectedSteps": {"type": "array", "items": {"type": "string"}},
        "summary": {"type": "string"},
    },
}

COMPLEXITY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["complexity", "reason"],
    "properties": {
        "complexity": {"type": "string"},
        "reason": {"type": "string"},
        "suggestedAgents": {"type": "array", "items": {"type": "string"}},
    },
}


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class CoverageRequirement:
    required: bool
    reason: str
    test_types: list[str] = field(default_factory=list)
    existing_framework: str | None = None
    suggested_coverage: str = ""
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class DecisionVerdict:
    action: str
    reason: str
    questions: list[ParsedDecision] = field(default_factory=list)
    fallback: bool = False


@dataclass
class StepImpact:
    step_id: str
    status: str
    reason: str = ""


@dataclass
class ImpactAssessment:
    affected: list[StepImpact]
    unaffected: list[str]
    summary: str
    fallback: bool = False


@dataclass
class ComplexityAssessment:
    complexity: str
    reason: str
    suggested_agents: list[str]
    fallback: bool = False


# ---------------------------------------------------------------------------
# Reply decoding
# ---------------------------------------------------------------------------


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first decodable JSON object embedded in *text*."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            value = None
        if isinstance(value, dict):
            return value
        start = text.find("{", start + 1)
    return None


def _decode_reply(text: str, schema: dict[str, Any]) -> dict[str, Any] | None:
    reply = extract_json_object(text)
    if reply is None:
        return None
    try:
        validate(reply, schema)
    except ValidationError as e:
        log.warning("Classifier reply failed schema check: %s", e.message)
        return None
    return reply


def _steps_summary(plan: PlanDoc) -> str:
    return "\n".join(
        f"- [{s['id']}] ({s['status']}) {s['title']}: {s['description']}" for s in plan["steps"]
    )


# ---------------------------------------------------------------------------
# Assessor
# ---------------------------------------------------------------------------


class Assessor:
    """Runs classification prompts through the invoker's lightweight path."""

    def __init__(
        self,
        invoker: AgentInvoker,
        *,
        timeout: float = 120,
        decision_timeout: float = DEFAULT_DECISION_VALIDATION_TIMEOUT,
    ) -> None:
        self.invoker = invoker
        self.timeout = timeout
        self.decision_timeout = decision_timeout

    async def _ask(
        self, prompt: str, workdir: str, schema: dict[str, Any], *, timeout: float | None = None
    ) -> dict[str, Any] | None:
        result = await self.invoker.classify(prompt, workdir, timeout=timeout or self.timeout)
        if result.is_error:
            log.warning("Classifier run failed (%s): %s", result.failure, result.error)
            return None
        return _decode_reply(result.output, schema)

    # -- test requirement --

    async def assess_test_requirement(
        self, session: SessionDoc, plan: PlanDoc
    ) -> CoverageRequirement:
        prompt = (
            "Decide whether the change below needs automated tests. Inspect the repository "
            "for an existing test framework.\n\n"
            f"Feature: {session['title']}\n{session['description']}\n\n"
            f"Plan steps:\n{_steps_summary(plan)}\n\n"
            'Reply with JSON only: {"required": bool, "reason": str, "testTypes": [str], '
            '"existingFramework": str|null, "suggestedCoverage": str}'
        )
        reply = await self._ask(prompt, session["project_path"], TEST_REQUIREMENT_SCHEMA)
        if reply is None:
            return CoverageRequirement(
                required=True,
                reason="Assessment unavailable; requiring tests",
                test_types=["unit"],
                fallback=True,
            )
        return CoverageRequirement(
            required=reply["required"],
            reason=reply["reason"],
            test_types=list(reply.get("testTypes", [])),
            existing_framework=reply.get("existingFramework"),
            suggested_coverage=reply.get("suggestedCoverage", ""),
        )

    # -- decision validation --

    async def validate_decision(
        self, decision: ParsedDecision, session: SessionDoc, plan: PlanDoc
    ) -> DecisionVerdict:
        options = "\n".join(f"- {o.label}" for o in decision.options)
        prompt = (
            "A reviewer raised the question below about an implementation plan. Check the "
            "codebase and decide whether it should be shown to the user.\n"
            "pass = valid concern; filter = false positive; repurpose = replace it with "
            "better questions.\n\n"
            f"Question ({decision.category}, priority {decision.priority}):\n"
            f"{decision.question_text}\nOptions:\n{options}\n\n"
            f"Plan steps:\n{_steps_summary(plan)}\n\n"
            'Reply with JSON only: {"action": "pass"|"filter"|"repurpose", "reason": str, '
            '"questions": [{"questionText": str, "category": str, "priority": int, '
            '"options": [{"label": str, "recommended": bool}]}]}'
        )
        reply = await self._ask(
            prompt, session["project_path"], DECISION_VERDICT_SCHEMA, timeout=self.decision_timeout
        )
        if reply is None:
            return DecisionVerdict(action="pass", reason="Validation unavailable", fallback=True)
        if "action" not in reply:
            return DecisionVerdict(
                action="pass" if reply["valid"] else "filter",
                reason=reply.get("reason", ""),
            )
        action = reply["action"]
        reason = reply.get("reason", "")
        if action != "repurpose":
            return DecisionVerdict(action=action, reason=reason)
        questions = [_decision_from_reply(q) for q in reply.get("questions", [])]
        questions = [q for q in questions if q.options]
        if not questions:
            return DecisionVerdict(action="filter", reason=reason or "Repurposed to nothing")
        return DecisionVerdict(action="repurpose", reason=reason, questions=questions)

    async def validate_decisions(
        self, decisions: Sequence[ParsedDecision], session: SessionDoc, plan: PlanDoc
    ) -> list[ParsedDecision]:
        """Validate in parallel; return the decisions to show, in input order."""
        if not decisions:
            return []
        verdicts = await asyncio.gather(
            *(self.validate_decision(d, session, plan) for d in decisions)
        )
        kept: list[ParsedDecision] = []
        for decision, verdict in zip(decisions, verdicts, strict=True):
            if verdict.action == "pass":
                kept.append(decision)
            elif verdict.action == "repurpose":
                kept.extend(verdict.questions)
            else:
                log.info("Filtered decision %r: %s", decision.question_text[:80], verdict.reason)
        log.info(
            "Decision validation: %d raised, %d kept", len(decisions), len(kept)
        )
        return kept

    # -- incomplete steps --

    async def assess_incomplete_steps(
        self, session: SessionDoc, plan: PlanDoc, reason: str
    ) -> ImpactAssessment:
        prompt = (
            "Review found a problem with the delivered change. Decide which plan steps must "
            "be redone.\n\n"
            f"Problem: {reason}\n\nPlan steps:\n{_steps_summary(plan)}\n\n"
            'Reply with JSON only: {"affectedSteps": [{"stepId": str, "status": '
            '"pending"|"needs_review", "reason": str}], "unaffectedSteps": [str], '
            '"summary": str}'
        )
        reply = await self._ask(prompt, session["project_path"], STEP_IMPACT_SCHEMA)
        known = {s["id"] for s in plan["steps"]}
        if reply is not None:
            affected = [
                StepImpact(i["stepId"], i["status"], i.get("reason", ""))
                for i in reply["affectedSteps"]
                if i["stepId"] in known
            ]
            if affected:
                return ImpactAssessment(
                    affected=affected,
                    unaffected=[s for s in reply.get("unaffectedSteps", []) if s in known],
                    summary=reply.get("summary", ""),
                )
        completed = [s["id"] for s in plan["steps"] if s["status"] == "completed"]
        return ImpactAssessment(
            affected=[StepImpact(s, "needs_review", "Conservative reset") for s in completed],
            unaffected=[],
            summary="Assessment unavailable; every completed step needs review",
            fallback=True,
        )

    # -- complexity --

    async def assess_complexity(self, session: SessionDoc) -> ComplexityAssessment:
        prompt = (
            "Classify how large the requested change is for this repository.\n\n"
            f"Feature: {session['title']}\n{session['description']}\n\n"
            f"Levels: {', '.join(COMPLEXITY_LEVELS)}. Agent types: {', '.join(AGENT_TYPES)}.\n"
            'Reply with JSON only: {"complexity": str, "reason": str, "suggestedAgents": [str]}'
        )
        reply = await self._ask(prompt, session["project_path"], COMPLEXITY_SCHEMA)
        if reply is None:
            return ComplexityAssessment(
                complexity=DEFAULT_COMPLEXITY,
                reason="Assessment unavailable; using normal complexity",
                suggested_agents=list(DEFAULT_AGENTS_BY_COMPLEXITY[DEFAULT_COMPLEXITY]),
                fallback=True,
            )
        complexity = reply["complexity"]
        if complexity not in COMPLEXITY_LEVELS:
            complexity = DEFAULT_COMPLEXITY
        agents = [a for a in reply.get("suggestedAgents", []) if a in AGENT_TYPES]
        return ComplexityAssessment(
            complexity=complexity,
            reason=reply["reason"],
            suggested_agents=agents or list(DEFAULT_AGENTS_BY_COMPLEXITY[complexity]),
        )


def _decision_from_reply(question: dict[str, Any]) -> ParsedDecision:
    options = [
        DecisionOption(label=o["label"], recommended=bool(o.get("recommended")))
        for o in question.get("options", [])
    ]
    if options and not any(o.recommended for o in options):
        options[0].recommended = True
    return ParsedDecision(
        priority=question.get("priority") or 2,
        category=question.get("category") or "technical",
        question_text=question.get("questionText", ""),
        options=options,
    )
