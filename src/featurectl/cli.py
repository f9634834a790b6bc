from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from featurectl import __version__
from featurectl.errors import ConcurrencyConflict
from featurectl.models import STAGE_PLANNING, STAGE_REVIEW, QueueInsert, stage_name
from featurectl.registry import project_id_for
from featurectl.service import Engine
from featurectl.service import main as service_main
from featurectl.store import connect, list_session_logs

T = TypeVar("T")

_CHANGE_TARGETS = {"planning": STAGE_PLANNING, "review": STAGE_REVIEW}


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Every command writes JSON to stdout, so usage errors and domain errors are
    reported as ``{"ok": false, "error": ...}`` there as well. Unknown commands
    get fuzzy-matched suggestions via ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _project_id(project_path: str) -> str:
    return project_id_for(str(Path(project_path).resolve()))


def _parse_queue_at(value: str) -> QueueInsert:
    if value in ("front", "end"):
        return value  # type: ignore[return-value]
    try:
        return int(value)
    except ValueError:
        raise click.BadParameter(
            f"'{value}' is not 'front', 'end' or a position", param_hint="--queue-at"
        ) from None


def _with_engine(operation: Callable[[Engine], Awaitable[T]], *, wait: bool = True) -> T:
    """Run *operation* against a fresh engine, then let scheduled stage runs finish."""

    async def _run() -> T:
        with connect() as conn:
            engine = Engine(conn)
            try:
                result = await operation(engine)
                if wait:
                    await engine.controller.supervisor.join()
            finally:
                await engine.close()
            return result

    try:
        return asyncio.run(_run())
    except (LookupError, ValueError, ConcurrencyConflict) as e:
        raise click.ClickException(str(e)) from e


def _session_payload(engine: Engine, project_id: str, feature_id: str) -> dict[str, Any]:
    registry = engine.registry
    session = registry.require_session(project_id, feature_id)
    return {
        "session": dict(session),
        "stage_name": stage_name(session["stage"]),
        "execution": dict(registry.get_status(project_id, feature_id)),
        "plan": dict(registry.get_plan(project_id, feature_id)),
        "pending_questions": registry.pending_questions(project_id, feature_id),
    }


project_option = click.option(
    "--project",
    "-p",
    "project_path",
    default=".",
    show_default=True,
    type=click.Path(exists=True, file_okay=False),
    help="Project directory.",
)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
def main():
    """Drive a code-generation agent through a staged feature pipeline.

    \b
    Quick start:
      featurectl session create "Add OAuth login" -p REPO   Start (or queue) a feature
      featurectl decision list add-oauth-login -p REPO       See what the agent is asking
      featurectl decision answer add-oauth-login QID "..."   Answer and resume
      featurectl approve add-oauth-login -p REPO             Final sign-off
      featurectl serve                                       Run recovery in the background

    \b
    Stages:
      1 discovery  2 planning  3 implementing  4 delivery
      5 review     6 final approval  7 completed
    """


# -- session --


@main.group()
def session():
    """Create, inspect and steer feature sessions."""


@session.command("create")
@click.argument("title")
@project_option
@click.option("--description", "-d", default="", help="What the feature should do.")
@click.option("--criterion", "-c", "criteria", multiple=True, help="Acceptance criterion.")
@click.option("--file", "-f", "files", multiple=True, help="File likely to be affected.")
@click.option("--notes", default="", help="Technical notes for the agent.")
@click.option("--base-branch", default="main", show_default=True)
@click.option("--queue-at", default="end", show_default=True, help="front, end or a position.")
@click.option("--no-run", is_flag=True, help="Create only; do not start the first stage.")
def session_create(
    title: str,
    project_path: str,
    description: str,
    criteria: tuple[str, ...],
    files: tuple[str, ...],
    notes: str,
    base_branch: str,
    queue_at: str,
    no_run: bool,
):
    """Create a session; it is queued if the project already has an active one."""
    position = _parse_queue_at(queue_at)

    async def op(engine: Engine) -> dict[str, Any]:
        fields = {
            "title": title,
            "project_path": str(Path(project_path).resolve()),
            "description": description,
            "acceptance_criteria": list(criteria),
            "affected_files": list(files),
            "technical_notes": notes,
            "base_branch": base_branch,
            "queue_at": position,
        }
        if no_run:
            created = await engine.registry.create_session(**fields)
        else:
            created = await engine.controller.create_session(**fields)
        return dict(created)

    _echo(_with_engine(op, wait=not no_run))


@session.command("list")
@project_option
@click.option("--all", "all_projects", is_flag=True, help="List sessions of every project.")
def session_list(project_path: str, all_projects: bool):
    """List sessions with their stage and queue position."""

    async def op(engine: Engine) -> list[dict[str, Any]]:
        if all_projects:
            sessions = engine.registry.list_all_sessions()
        else:
            sessions = engine.registry.list_sessions(_project_id(project_path))
        return [
            {
                "feature_id": s["feature_id"],
                "project_id": s["project_id"],
                "title": s["title"],
                "stage": s["stage"],
                "status": s["status"],
                "queue_position": s["queue_position"],
                "updated_at": s["updated_at"],
            }
            for s in sessions
        ]

    _echo(_with_engine(op, wait=False))


@session.command("show")
@click.argument("feature_id")
@project_option
def session_show(feature_id: str, project_path: str):
    """Show a session with its plan, execution status and pending questions."""

    async def op(engine: Engine) -> dict[str, Any]:
        return _session_payload(engine, _project_id(project_path), feature_id)

    _echo(_with_engine(op, wait=False))


@session.command("run")
@click.argument("feature_id")
@project_option
def session_run(feature_id: str, project_path: str):
    """Run the session's current stage until it needs input or stops."""
    project_id = _project_id(project_path)

    async def op(engine: Engine) -> dict[str, Any]:
        await engine.controller.run(project_id, feature_id)
        await engine.controller.supervisor.join()
        return _session_payload(engine, project_id, feature_id)

    _echo(_with_engine(op))


@session.command("pause")
@click.argument("feature_id")
@project_option
def session_pause(feature_id: str, project_path: str):
    """Pause a session; the next queued session is promoted."""

    async def op(engine: Engine) -> dict[str, Any]:
        return dict(await engine.controller.pause(_project_id(project_path), feature_id))

    _echo(_with_engine(op))


@session.command("abandon")
@click.argument("feature_id")
@project_option
def session_abandon(feature_id: str, project_path: str):
    """Abandon a session for good."""

    async def op(engine: Engine) -> dict[str, Any]:
        return dict(
            await engine.controller.pause(_project_id(project_path), feature_id, abandon=True)
        )

    _echo(_with_engine(op))


@session.command("resume")
@click.argument("feature_id")
@project_option
@click.option("--queue-at", default="end", show_default=True, help="front, end or a position.")
@click.option("--no-queue", is_flag=True, help="Fail instead of queueing when the project is busy.")
def session_resume(feature_id: str, project_path: str, queue_at: str, no_queue: bool):
    """Resume a paused or failed session."""
    position = _parse_queue_at(queue_at)

    async def op(engine: Engine) -> dict[str, Any]:
        resumed = await engine.controller.resume(
            _project_id(project_path),
            feature_id,
            queue_at=position,
            enqueue_if_busy=not no_queue,
        )
        return dict(resumed)

    _echo(_with_engine(op))


@session.command("logs")
@click.argument("feature_id")
@project_option
@click.option("--level", default=None, help="Only records of this level (e.g. WARNING).")
def session_logs(feature_id: str, project_path: str, level: str | None):
    """Show controller log records persisted for a session."""
    with connect() as conn:
        rows = list_session_logs(
            conn, _project_id(project_path), feature_id, level.upper() if level else None
        )
    _echo(rows)


# -- queue --


@main.group()
def queue():
    """Inspect and reorder a project's session queue."""


@queue.command("list")
@project_option
def queue_list(project_path: str):
    """List queued sessions in position order."""

    async def op(engine: Engine) -> dict[str, Any]:
        project_id = _project_id(project_path)
        active = engine.registry.active_session(project_id)
        return {
            "active": active["feature_id"] if active else None,
            "queue": [
                {
                    "position": s["queue_position"],
                    "feature_id": s["feature_id"],
                    "title": s["title"],
                    "resume_stage": s["resume_stage"],
                    "queued_at": s["queued_at"],
                }
                for s in engine.registry.list_queue(project_id)
            ],
        }

    _echo(_with_engine(op, wait=False))


@queue.command("reorder")
@click.argument("feature_ids", nargs=-1, required=True)
@project_option
def queue_reorder(feature_ids: tuple[str, ...], project_path: str):
    """Move the named sessions to the front, in the given order."""

    async def op(engine: Engine) -> list[str]:
        ordered = await engine.registry.reorder_queue(_project_id(project_path), feature_ids)
        return [s["feature_id"] for s in ordered]

    _echo({"queue": _with_engine(op, wait=False)})


# -- decisions --


@main.group()
def decision():
    """List and answer the agent's questions."""


@decision.command("list")
@click.argument("feature_id")
@project_option
@click.option("--all", "show_all", is_flag=True, help="Include answered questions.")
def decision_list(feature_id: str, project_path: str, show_all: bool):
    """List pending (or all) questions for a session."""

    async def op(engine: Engine) -> list[Any]:
        project_id = _project_id(project_path)
        engine.registry.require_session(project_id, feature_id)
        if show_all:
            return engine.registry.list_questions(project_id, feature_id)
        return engine.registry.pending_questions(project_id, feature_id)

    _echo(_with_engine(op, wait=False))


@decision.command("answer")
@click.argument("feature_id")
@click.argument("question_id")
@click.argument("answer")
@project_option
def decision_answer(feature_id: str, question_id: str, answer: str, project_path: str):
    """Answer a question; the stage resumes once nothing is pending."""

    async def op(engine: Engine) -> dict[str, Any]:
        question = await engine.controller.answer(
            _project_id(project_path), feature_id, question_id, answer
        )
        return dict(question)

    _echo(_with_engine(op))


# -- final approval --


@main.command()
@click.argument("feature_id")
@project_option
def approve(feature_id: str, project_path: str):
    """Approve a session at final approval; it completes."""

    async def op(engine: Engine) -> dict[str, Any]:
        return dict(await engine.controller.approve(_project_id(project_path), feature_id))

    _echo(_with_engine(op))


@main.command("request-changes")
@click.argument("feature_id")
@project_option
@click.option(
    "--to",
    "target",
    type=click.Choice(sorted(_CHANGE_TARGETS)),
    default="planning",
    show_default=True,
)
@click.option("--reason", default="", help="What needs to change.")
def request_changes(feature_id: str, project_path: str, target: str, reason: str):
    """Send a session at final approval back to planning or review."""

    async def op(engine: Engine) -> dict[str, Any]:
        updated = await engine.controller.request_changes(
            _project_id(project_path), feature_id, _CHANGE_TARGETS[target], reason
        )
        return dict(updated)

    _echo(_with_engine(op))


# -- operations --


@main.command()
@click.option("--dry-run", is_flag=True, help="Report stuck sessions without resuming them.")
def recover(dry_run: bool):
    """Resume sessions whose last invocation was interrupted."""

    async def op(engine: Engine) -> Any:
        return engine.scanner.scan(dry_run=dry_run)

    _echo(_with_engine(op, wait=not dry_run))


@main.command()
@click.option("--project", "-p", "project_path", default=None, help="Only this project's events.")
@click.option("--session", "-s", "feature_id", default=None, help="Only this session's events.")
@click.option("--timeout", default=30.0, show_default=True, help="Seconds per blocking read.")
def events(project_path: str | None, feature_id: str | None, timeout: float):
    """Stream engine events as JSON lines."""
    from featurectl.events import EventSubscriber
    from featurectl.registry import session_dir

    project_id = _project_id(project_path) if project_path else None
    session_id = None
    if feature_id:
        if project_id is None:
            raise click.UsageError("--session requires --project")
        session_id = session_dir(project_id, feature_id)
    subscriber = EventSubscriber(project=project_id, session_id=session_id, timeout=timeout)
    try:
        for event in subscriber:
            if event is not None:
                click.echo(json.dumps(event, default=str))
    except KeyboardInterrupt:
        pass


@main.command()
def serve():
    """Run the engine: periodic recovery until SIGTERM/SIGINT."""
    service_main()
