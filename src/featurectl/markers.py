"""Marker extraction from agent output.

``parse(text)`` is pure: the same text always yields an equal ``Outcome`` and
nothing here raises on malformed input. Markers that do not match the grammar
are simply absent from the result.

Step completions are resolved through three tiers (closed marker, self-closing
marker, plain-text heading). The heading tier is a separate extractor so it can
be disabled with ``parse(text, fallback=False)``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

DEFAULT_DECISION_PRIORITY = 3
DEFAULT_DECISION_CATEGORY = "general"
DEFAULT_STEP_STATUS = "pending"
STEP_COMPLEXITIES = ("low", "medium", "high")
CI_STATUSES = ("passing", "failing", "pending")

# Plain-text tier only looks this far past a heading for a summary.
_FALLBACK_SUMMARY_CHARS = 500

_ATTR_RE = re.compile(r'(\w+)="([^"]*)"')
_INT_RE = re.compile(r"^\s*([+-]?\d+)")

_DECISION_RE = re.compile(r"\[DECISION_NEEDED([^\]]*)\](.*?)\[/DECISION_NEEDED\]", re.DOTALL)
_OPTION_PREFIX_RE = re.compile(r"^-\s+\*?\*?Option\s+\w+", re.IGNORECASE)
_OPTION_LINE_RE = re.compile(
    r"^-\s+(?:\*?\*?Option\s+\w+:\s*\*?\*?\s*)?(.+?)(?:\s+\(recommended\))?$", re.IGNORECASE
)
_RECOMMENDED_RE = re.compile(r"\s*\(recommended\)\s*", re.IGNORECASE)

_PLAN_STEP_RE = re.compile(r"\[PLAN_STEP([^\]]*)\](.*?)\[/PLAN_STEP\]", re.DOTALL)

_STEP_MARKER_RE = re.compile(r"""\[STEP_COMPLETE\s+id=['"]([^'"]+)['"]\]""")
# Closed form: the body may not contain another opening marker.
_STEP_CLOSED_RE = re.compile(
    r"""\[STEP_COMPLETE\s+id=['"]([^'"]+)['"]\]((?:(?!\[STEP_COMPLETE\s).)*?)\[/STEP_COMPLETE\]""",
    re.DOTALL,
)
_STEP_SUMMARY_RE = re.compile(r"(.*?)(?=\n\n|\[STEP_|\[IMPLEMENTATION|\Z)", re.DOTALL)
_STEP_HEADING_RES = (
    re.compile(
        r"(?:^|\n)#+\s*\*?\*?Step\s+(\d+|[a-z]+-\d+)\s+"
        r"(?:Complete|Completed|Done)\*?\*?\s*(?:\n|$)",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:^|\n)\*?\*?Step\s+(\d+|[a-z]+-\d+)\s+(?:Complete|Completed|Done)\*?\*?\s*(?:\n|$)",
        re.IGNORECASE,
    ),
)
_HEADING_SUMMARY_END_RE = re.compile(r"\n(?:#+\s|\*\*Step|\[STEP)")

_TESTS_ADDED_RE = re.compile(r"Tests added:\s*(.+)", re.IGNORECASE)
_TESTS_PASSING_RE = re.compile(r"Tests passing:\s*(yes|no|true|false)", re.IGNORECASE)
_ALL_TESTS_PASSING_RE = re.compile(r"All tests passing:\s*(yes|no|true|false)", re.IGNORECASE)

_PLAN_FILE_RE = re.compile(r'\[PLAN_FILE\s+path="([^"]+)"\]')
_PLAN_APPROVED_RE = re.compile(r"^\[PLAN_APPROVED\]$", re.MULTILINE)
_IMPL_COMPLETE_RE = re.compile(
    r"\[IMPLEMENTATION_COMPLETE\](.*?)\[/IMPLEMENTATION_COMPLETE\]", re.DOTALL
)
_IMPL_STATUS_RE = re.compile(
    r"\[IMPLEMENTATION_STATUS\](.*?)\[/IMPLEMENTATION_STATUS\]", re.DOTALL
)
_PR_CREATED_RE = re.compile(r"\[PR_CREATED\](.*?)\[/PR_CREATED\]", re.DOTALL)
_PR_BRANCH_RE = re.compile(r"Branch:\s*(\S+)\s*(?:→|->)\s*(\S+)")
_CI_STATUS_RE = re.compile(
    r'\[CI_STATUS\s+status="(passing|failing|pending)"\](.*?)\[/CI_STATUS\]', re.DOTALL
)
_RETURN_RE = re.compile(r"\[RETURN_TO_STAGE_2\](.*?)\[/RETURN_TO_STAGE_2\]", re.DOTALL)
_REASON_RE = re.compile(r"Reason:\s*(.+)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Outcome types
# ---------------------------------------------------------------------------


@dataclass
class DecisionOption:
    label: str
    recommended: bool = False


@dataclass
class ParsedDecision:
    priority: int
    category: str
    question_text: str
    options: list[DecisionOption]
    file: str | None = None
    line: int | None = None


@dataclass
class ParsedStep:
    id: str
    parent_id: str | None
    status: str
    title: str
    description: str
    complexity: str | None = None
    acceptance_criteria_ids: list[str] | None = None
    estimated_files: list[str] | None = None


@dataclass
class StepCompletion:
    id: str
    summary: str
    tests_added: list[str] = field(default_factory=list)
    tests_passing: bool = True


@dataclass
class ImplementationStatus:
    step_id: str
    status: str
    files_modified: int
    tests_status: str
    work_type: str
    progress: int
    message: str


@dataclass
class PullRequestInfo:
    title: str
    source_branch: str
    target_branch: str
    url: str | None = None


@dataclass
class CIStatus:
    status: str
    checks: str


@dataclass
class Outcome:
    """Everything extracted from one invocation's final text."""

    decisions: list[ParsedDecision] = field(default_factory=list)
    plan_steps: list[ParsedStep] = field(default_factory=list)
    step_completions: list[StepCompletion] = field(default_factory=list)
    plan_file_path: str | None = None
    plan_approved: bool = False
    implementation_complete: bool = False
    implementation_summary: str | None = None
    all_tests_passing: bool = False
    tests_added: list[str] = field(default_factory=list)
    implementation_status: ImplementationStatus | None = None
    pr_created: PullRequestInfo | None = None
    ci_status: CIStatus | None = None
    ci_failed: bool = False
    pr_approved: bool = False
    return_to_planning: bool = False
    return_reason: str | None = None
    plan_mode_entered: bool = False
    plan_mode_exited: bool = False

    @property
    def step_completed(self) -> StepCompletion | None:
        """The last completion reported, if any."""
        return self.step_completions[-1] if self.step_completions else None

    @property
    def has_decisions(self) -> bool:
        return bool(self.decisions)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _attributes(raw: str) -> dict[str, str]:
    return {key: value for key, value in _ATTR_RE.findall(raw)}


def _safe_int(value: str | None, default: int | None) -> int | None:
    """Leading-integer parse that falls back to *default* instead of raising."""
    if not value:
        return default
    match = _INT_RE.match(value)
    return int(match.group(1)) if match else default


def _split_list(value: str | None) -> list[str] | None:
    if value is None:
        return None
    return [item.strip() for item in value.split(",") if item.strip()]


def _tests_added(body: str) -> list[str]:
    match = _TESTS_ADDED_RE.search(body)
    if not match:
        return []
    return [
        item.strip()
        for item in match.group(1).split(",")
        if item.strip() and item.strip().lower() != "none"
    ]


def _yes(match: re.Match[str] | None, default: bool) -> bool:
    if not match:
        return default
    return match.group(1).lower() in ("yes", "true")


# ---------------------------------------------------------------------------
# Extractors
# ---------------------------------------------------------------------------


def parse_decisions(text: str) -> list[ParsedDecision]:
    decisions: list[ParsedDecision] = []
    for match in _DECISION_RE.finditer(text):
        attrs = _attributes(match.group(1))
        lines = [line.strip() for line in match.group(2).strip().split("\n")]

        options_start = next(
            (i for i, line in enumerate(lines) if _OPTION_PREFIX_RE.match(line)), -1
        )
        question_lines: list[str] = []
        options: list[DecisionOption] = []
        for i, line in enumerate(lines):
            in_options = options_start >= 0 and i >= options_start
            recommended = "(recommended)" in line.lower()
            looks_like_option = in_options or recommended or bool(_OPTION_PREFIX_RE.match(line))
            if looks_like_option and line.startswith("-"):
                option_match = _OPTION_LINE_RE.match(line)
                if option_match:
                    label = _RECOMMENDED_RE.sub("", option_match.group(1))
                    label = label.removeprefix("**").removesuffix("**").strip()
                    options.append(DecisionOption(label=label, recommended=recommended))
            elif line:
                question_lines.append(line)

        if not options:
            continue
        if not any(option.recommended for option in options):
            options[0].recommended = True

        decisions.append(
            ParsedDecision(
                priority=_safe_int(attrs.get("priority"), DEFAULT_DECISION_PRIORITY)
                or DEFAULT_DECISION_PRIORITY,
                category=attrs.get("category") or DEFAULT_DECISION_CATEGORY,
                question_text="\n".join(question_lines).strip(),
                options=options,
                file=attrs.get("file") or None,
                line=_safe_int(attrs.get("line"), None),
            )
        )
    return decisions


def parse_plan_steps(text: str) -> list[ParsedStep]:
    steps: list[ParsedStep] = []
    for match in _PLAN_STEP_RE.finditer(text):
        attrs = _attributes(match.group(1))
        lines = match.group(2).strip().split("\n")
        parent = attrs.get("parent")
        complexity = (attrs.get("complexity") or "").strip().lower()
        steps.append(
            ParsedStep(
                id=attrs.get("id", ""),
                parent_id=None if not parent or parent == "null" else parent,
                status=attrs.get("status") or DEFAULT_STEP_STATUS,
                title=lines[0].strip(),
                description="\n".join(lines[1:]).strip(),
                complexity=complexity if complexity in STEP_COMPLEXITIES else None,
                acceptance_criteria_ids=_split_list(attrs.get("acceptanceCriteria")),
                estimated_files=_split_list(attrs.get("estimatedFiles")),
            )
        )
    return steps


def parse_step_completions(text: str) -> list[StepCompletion]:
    """Closed markers first, then self-closing markers, de-duplicated by id."""
    completions: list[StepCompletion] = []
    seen: set[str] = set()
    closed_spans: list[tuple[int, int]] = []

    for match in _STEP_CLOSED_RE.finditer(text):
        step_id = match.group(1)
        closed_spans.append((match.start(), match.end()))
        if step_id in seen:
            continue
        body = match.group(2).strip()
        seen.add(step_id)
        completions.append(
            StepCompletion(
                id=step_id,
                summary=body,
                tests_added=_tests_added(body),
                tests_passing=_yes(_TESTS_PASSING_RE.search(body), True),
            )
        )

    for match in _STEP_MARKER_RE.finditer(text):
        step_id = match.group(1)
        if step_id in seen or any(start == match.start() for start, _ in closed_spans):
            continue
        rest = text[match.end() :]
        summary_match = _STEP_SUMMARY_RE.match(rest)
        summary = summary_match.group(1).strip() if summary_match else ""
        seen.add(step_id)
        completions.append(
            StepCompletion(id=step_id, summary=summary or f"Step {step_id} completed")
        )

    return completions


def parse_heading_completions(
    text: str, *, exclude: set[str] | None = None
) -> list[StepCompletion]:
    """Lowest-priority tier: "Step N Complete" style headings without markers."""
    seen = set(exclude or ())
    completions: list[StepCompletion] = []
    for pattern in _STEP_HEADING_RES:
        for match in pattern.finditer(text):
            step_id = match.group(1)
            if step_id in seen:
                continue
            seen.add(step_id)
            context = text[match.end() : match.end() + _FALLBACK_SUMMARY_CHARS]
            summary = _HEADING_SUMMARY_END_RE.split(context, maxsplit=1)[0].strip()
            completions.append(
                StepCompletion(id=step_id, summary=summary or f"Step {step_id} completed")
            )
    return completions


def parse_implementation_status(text: str) -> ImplementationStatus | None:
    match = _IMPL_STATUS_RE.search(text)
    if not match:
        return None
    body = match.group(1)

    def value(key: str) -> str:
        line = re.search(rf"^\s*{key}:\s*(.+)", body, re.IGNORECASE | re.MULTILINE)
        return line.group(1).strip() if line else ""

    return ImplementationStatus(
        step_id=value("step_id"),
        status=value("status"),
        files_modified=_safe_int(value("files_modified"), 0) or 0,
        tests_status=value("tests_status"),
        work_type=value("work_type"),
        progress=_safe_int(value("progress"), 0) or 0,
        message=value("message"),
    )


def parse_pr_created(text: str) -> PullRequestInfo | None:
    match = _PR_CREATED_RE.search(text)
    if not match:
        return None
    body = match.group(1)
    title = re.search(r"Title:\s*(.+)", body)
    branch = _PR_BRANCH_RE.search(body)
    url = re.search(r"URL:\s*(\S+)", body)
    return PullRequestInfo(
        title=title.group(1).strip() if title else "",
        source_branch=branch.group(1) if branch else "",
        target_branch=branch.group(2) if branch else "",
        url=url.group(1).strip() if url else None,
    )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse(text: str, *, fallback: bool = True) -> Outcome:
    """Extract every marker from *text*.

    Re-parsing after more text is appended re-derives the whole Outcome.
    """
    if not text:
        return Outcome()

    completions = parse_step_completions(text)
    if fallback:
        completions.extend(parse_heading_completions(text, exclude={c.id for c in completions}))

    outcome = Outcome(
        decisions=parse_decisions(text),
        plan_steps=parse_plan_steps(text),
        step_completions=completions,
        plan_approved=bool(_PLAN_APPROVED_RE.search(text)),
        implementation_complete="[IMPLEMENTATION_COMPLETE]" in text,
        implementation_status=parse_implementation_status(text),
        pr_created=parse_pr_created(text),
        ci_failed="[CI_FAILED]" in text,
        pr_approved="[PR_APPROVED]" in text,
        plan_mode_entered="[PLAN_MODE_ENTERED]" in text,
        plan_mode_exited="[PLAN_MODE_EXITED]" in text,
    )

    plan_file = _PLAN_FILE_RE.search(text)
    if plan_file:
        outcome.plan_file_path = plan_file.group(1)

    impl = _IMPL_COMPLETE_RE.search(text)
    if impl:
        body = impl.group(1).strip()
        outcome.implementation_summary = body
        outcome.all_tests_passing = _yes(_ALL_TESTS_PASSING_RE.search(body), False)
        outcome.tests_added = _tests_added(body)

    ci = _CI_STATUS_RE.search(text)
    if ci:
        outcome.ci_status = CIStatus(status=ci.group(1), checks=ci.group(2).strip())

    returned = _RETURN_RE.search(text)
    if returned:
        body = returned.group(1).strip()
        reason = _REASON_RE.search(body)
        outcome.return_to_planning = True
        outcome.return_reason = reason.group(1).strip() if reason else body

    return outcome

