"""Prompt builders for each stage.

Prompts only describe the task and the marker grammar the agent must answer
with; the parser in ``featurectl.markers`` is the other half of that contract.
"""

from __future__ import annotations

from collections.abc import Sequence

from featurectl.models import PlanDoc, QuestionDoc, SessionDoc, stage_name

MAX_REVIEW_ITERATIONS_HINT = 10

DECISION_FORMAT = """\
[DECISION_NEEDED priority="1|2|3" category="scope|approach|technical|design"]
Question here?
- Option A: Description (recommended)
- Option B: Description
[/DECISION_NEEDED]"""

PLAN_STEP_FORMAT = """\
[PLAN_STEP id="step-1" parent="null" status="pending" complexity="low|medium|high"]
Step title
What the step accomplishes.
[/PLAN_STEP]"""

STEP_COMPLETE_FORMAT = """\
[STEP_COMPLETE id="step-1"]
Summary of the change.
Tests added: path/to/test_file.py
Tests passing: yes
[/STEP_COMPLETE]"""


def _with_instructions(prompt: str, instructions: str) -> str:
    if not instructions:
        return prompt
    return f"{prompt}\n\n## Project Instructions\n{instructions}"


def _agents_line(agents: Sequence[str]) -> str:
    if not agents:
        return "Work through the codebase directly."
    return "Use the Task tool to run these sub-agents in parallel: " + ", ".join(
        f"{a} agent" for a in agents
    )


def _feature_block(session: SessionDoc) -> str:
    criteria = (
        "\n".join(f"{i}. {c}" for i, c in enumerate(session["acceptance_criteria"], start=1))
        or "No specific criteria provided."
    )
    lines = [
        "## Feature",
        f"Title: {session['title']}",
        f"Description: {session['description']}",
        f"Project Path: {session['project_path']}",
        "",
        "## Acceptance Criteria",
        criteria,
    ]
    if session["affected_files"]:
        lines += ["", "## Affected Files (hints)", *session["affected_files"]]
    if session["technical_notes"]:
        lines += ["", "## Technical Notes", session["technical_notes"]]
    return "\n".join(lines)


def _plan_block(plan: PlanDoc) -> str:
    if not plan["steps"]:
        return "No plan steps defined."
    rows = []
    for i, step in enumerate(plan["steps"], start=1):
        parent = f" (depends on: {step['parent_id']})" if step["parent_id"] else ""
        rows.append(
            f"{i}. [{step['id']}] {step['title']}{parent} - {step['status']}\n"
            f"   {step['description'] or 'No description'}"
        )
    return "\n".join(rows)


def discovery_prompt(session: SessionDoc, agents: Sequence[str], instructions: str = "") -> str:
    prompt = f"""You are helping implement a new feature. Study the codebase before planning.

{_feature_block(session)}

## Instructions
1. {_agents_line(agents)}
2. Ask clarifying questions, most fundamental first. Every question needs options
   with one recommended choice:
{DECISION_FORMAT}
3. Once questions are answered, write an implementation plan as steps:
{PLAN_STEP_FORMAT}
4. Save the plan to a markdown file and report its path:
[PLAN_FILE path="/absolute/path/to/plan.md"]"""
    return _with_instructions(prompt, instructions)


def planning_prompt(
    session: SessionDoc,
    plan: PlanDoc,
    iteration: int,
    agents: Sequence[str],
    instructions: str = "",
) -> str:
    prompt = f"""You are reviewing an implementation plan. Raise each issue as a decision.

Feature: {session['title']}

## Current Plan (v{plan['plan_version']})
{_plan_block(plan)}

## Review Iteration
This is review {iteration} of {MAX_REVIEW_ITERATIONS_HINT} recommended.

## Instructions
1. {_agents_line(agents)}
2. Check for missing error handling, coupling, security and performance problems.
3. Present each issue as a decision with fix options:
{DECISION_FORMAT}
4. Re-emit the full step list if you change the plan:
{PLAN_STEP_FORMAT}
5. If no issues remain, output on its own line:
[PLAN_APPROVED]"""
    return _with_instructions(prompt, instructions)


def planning_continuation_prompt(iteration: int, pending_decisions: int) -> str:
    return (
        f"Continue the plan review. This is review iteration {iteration} of "
        f"{MAX_REVIEW_ITERATIONS_HINT}. The previous iteration approved the plan but still "
        f"raised {pending_decisions} decision(s). Resolve them in the plan where you can, "
        "raise only the decisions that truly need the user, and output [PLAN_APPROVED] "
        "on its own line when the plan is ready."
    )


def plan_validation_prompt(issues: Sequence[str], attempt: int, max_attempts: int) -> str:
    listed = "\n".join(f"- {issue}" for issue in issues)
    return (
        f"The plan failed structural validation (attempt {attempt} of {max_attempts}):\n"
        f"{listed}\n\nRe-emit the complete corrected step list using:\n{PLAN_STEP_FORMAT}\n"
        "then output [PLAN_APPROVED] on its own line."
    )


def answers_prompt(questions: Sequence[QuestionDoc]) -> str:
    answered = "\n\n".join(
        f"Q: {q['question_text']}\nA: {q['answer']}" for q in questions if q["answer"] is not None
    )
    return f"The user answered your questions:\n\n{answered}\n\nContinue with these decisions."


def implementation_prompt(
    session: SessionDoc,
    plan: PlanDoc,
    instructions: str = "",
) -> str:
    requirement = plan["test_requirement"] or {}
    if requirement.get("required", True):
        types = ", ".join(requirement.get("test_types") or ["unit"])
        tests = f"Tests are required ({types}). A step is complete only when its tests pass."
    else:
        tests = "Tests are not required for this change; keep existing tests passing."
    prompt = f"""Implement the approved plan on branch {session['feature_branch']}.

## Plan (v{plan['plan_version']})
{_plan_block(plan)}

## Testing
{tests}

## Instructions
1. Work through the steps in order, respecting dependencies. Skip completed steps.
2. Report progress while working:
[IMPLEMENTATION_STATUS]
step_id: step-1
status: in_progress
message: what you are doing
[/IMPLEMENTATION_STATUS]
3. After each step:
{STEP_COMPLETE_FORMAT}
4. If you are blocked, ask:
{DECISION_FORMAT}
5. When every step is done:
[IMPLEMENTATION_COMPLETE]
Summary.
All tests passing: yes
[/IMPLEMENTATION_COMPLETE]"""
    return _with_instructions(prompt, instructions)


def implementation_retry_prompt(step_id: str, attempt: int, max_attempts: int) -> str:
    return (
        f"Step {step_id} is not complete: its tests are failing or it was not finished. "
        f"Fix it (attempt {attempt} of {max_attempts}) and report it with "
        f'[STEP_COMPLETE id="{step_id}"] including "Tests passing: yes".'
    )


def implementation_finish_prompt() -> str:
    return (
        "Every step is marked complete but the full test suite has not been reported "
        "passing. Run all tests, fix failures, and finish with [IMPLEMENTATION_COMPLETE] "
        'including "All tests passing: yes".'
    )


def delivery_prompt(session: SessionDoc, instructions: str = "") -> str:
    prompt = f"""Open a pull request for the finished work.

1. Push branch {session['feature_branch']} to the remote.
2. Create a pull request from {session['feature_branch']} into {session['base_branch']} titled
   "{session['title']}" with a summary of the change.
3. Report it:
[PR_CREATED]
Title: ...
Branch: {session['feature_branch']} → {session['base_branch']}
URL: https://...
[/PR_CREATED]"""
    return _with_instructions(prompt, instructions)


def review_prompt(session: SessionDoc, plan: PlanDoc, instructions: str = "") -> str:
    prompt = f"""Review pull request {session['pr_url']} for "{session['title']}".

## Plan (v{plan['plan_version']})
{_plan_block(plan)}

## Instructions
1. Check CI and report it:
[CI_STATUS status="passing|failing|pending"]
check summaries
[/CI_STATUS]
   Output [CI_FAILED] if any required check fails.
2. Review the diff against the plan and acceptance criteria.
3. If the work must be replanned:
[RETURN_TO_STAGE_2]
Reason: what is wrong
[/RETURN_TO_STAGE_2]
4. Ask about anything only the user can settle:
{DECISION_FORMAT}
5. If the change is ready, output [PR_APPROVED]."""
    return _with_instructions(prompt, instructions)


def replan_prompt(reason: str, affected: Sequence[str]) -> str:
    steps = ", ".join(affected) if affected else "none identified"
    return (
        f"Review sent the change back for replanning.\nReason: {reason}\n"
        f"Steps to revisit: {steps}\n\nRevise the plan. Re-emit the full step list and "
        "output [PLAN_APPROVED] on its own line when it is ready."
    )


def recovery_prompt(stage: int) -> str:
    return (
        f"The previous {stage_name(stage)} run was interrupted before it finished. "
        "Check the current state of the work, then continue where you left off using "
        "the same markers as before."
    )
