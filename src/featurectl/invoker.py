"""Subprocess runner for the external code-generation agent.

``invoke`` is the full path used by stage work; ``classify`` is the lightweight
path used by assessors (smaller model, read-only tools, shorter timeout).
Failures are reported on the returned ``InvocationResult``; nothing raised by
the subprocess machinery escapes this module.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from featurectl.errors import (
    FAILURE_AGENT,
    FAILURE_PROTOCOL,
    FAILURE_SPAWN,
    FAILURE_TIMEOUT,
    InvocationTimeout,
    SpawnFailure,
)
from featurectl.markers import Outcome, parse

log = logging.getLogger(__name__)

DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_INVOCATION_TIMEOUT = 15 * 60
DEFAULT_CLASSIFIER_TIMEOUT = 120
DEFAULT_CLASSIFIER_MODEL = "haiku"
CLASSIFIER_CAPABILITIES = ("Read", "Glob", "Grep")

_READ_CHUNK = 64 * 1024
_STREAM_LIMIT = 10 * 1024 * 1024  # agent payloads can be large

OutputObserver = Callable[[str], None]


@dataclass
class InvocationResult:
    """What one agent run produced, successful or not."""

    outcome: Outcome
    output: str
    continuation: str | None = None
    cost_usd: float | None = None
    is_error: bool = False
    error: str | None = None
    failure: str | None = None
    exit_code: int | None = None
    duration_ms: int = 0
    raw_output: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.is_error


class AgentInvoker:
    def __init__(
        self,
        *,
        command: str = DEFAULT_AGENT_COMMAND,
        classifier_model: str = DEFAULT_CLASSIFIER_MODEL,
        parser: Callable[[str], Outcome] = parse,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command = command
        self.classifier_model = classifier_model
        self.parser = parser
        self._env = env

    def build_command(
        self,
        prompt: str,
        *,
        continuation: str | None = None,
        capabilities: Sequence[str] = (),
        skip_permissions: bool = False,
        model: str | None = None,
    ) -> list[str]:
        argv = [self.command, "--print", "--output-format", "json"]
        if model:
            argv += ["--model", model]
        if continuation:
            argv += ["--resume", continuation]
        if capabilities:
            argv += ["--allowedTools", ",".join(capabilities)]
        if skip_permissions:
            argv.append("--dangerously-skip-permissions")
        argv += ["-p", prompt]
        return argv

    async def invoke(
        self,
        prompt: str,
        workdir: str,
        *,
        continuation: str | None = None,
        capabilities: Sequence[str] = (),
        timeout: float = DEFAULT_INVOCATION_TIMEOUT,
        skip_permissions: bool = False,
        observer: OutputObserver | None = None,
    ) -> InvocationResult:
        """Run the agent in *workdir*, resuming *continuation* when given."""
        argv = self.build_command(
            prompt,
            continuation=continuation,
            capabilities=capabilities,
            skip_permissions=skip_permissions,
        )
        return await self._execute(argv, workdir, timeout=timeout, observer=observer)

    async def classify(
        self,
        prompt: str,
        workdir: str,
        *,
        timeout: float = DEFAULT_CLASSIFIER_TIMEOUT,
        capabilities: Sequence[str] = CLASSIFIER_CAPABILITIES,
    ) -> InvocationResult:
        """Lightweight one-shot run for a small classification task."""
        argv = self.build_command(prompt, capabilities=capabilities, model=self.classifier_model)
        return await self._execute(argv, workdir, timeout=timeout, observer=None)

    # -- internals --

    async def _execute(
        self,
        argv: list[str],
        workdir: str,
        *,
        timeout: float,
        observer: OutputObserver | None,
    ) -> InvocationResult:
        started = time.monotonic()
        try:
            stdout, stderr, exit_code = await self._run(argv, workdir, timeout, observer)
        except SpawnFailure as e:
            log.error("Agent spawn failed in %s: %s", workdir, e)
            return InvocationResult(
                outcome=Outcome(),
                output="",
                is_error=True,
                error=str(e),
                failure=FAILURE_SPAWN,
                duration_ms=_elapsed_ms(started),
            )
        except InvocationTimeout as e:
            log.warning("Agent invocation timed out in %s: %s", workdir, e)
            return InvocationResult(
                outcome=Outcome(),
                output="",
                is_error=True,
                error=str(e),
                failure=FAILURE_TIMEOUT,
                duration_ms=_elapsed_ms(started),
            )

        result = self._interpret(stdout, stderr, exit_code)
        result.duration_ms = _elapsed_ms(started)
        log.info(
            "Agent exited %s in %dms (error=%s, %d chars)",
            exit_code,
            result.duration_ms,
            result.is_error,
            len(result.output),
        )
        return result

    async def _run(
        self,
        argv: list[str],
        workdir: str,
        timeout: float,
        observer: OutputObserver | None,
    ) -> tuple[str, str, int]:
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=workdir,
                env=self._env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=_STREAM_LIMIT,
            )
        except OSError as e:
            raise SpawnFailure(f"Could not start {argv[0]!r}: {e}") from e

        stdout_chunks: list[str] = []
        stderr_lines: list[str] = []

        async def pump_stdout() -> None:
            assert process.stdout is not None
            while True:
                chunk = await process.stdout.read(_READ_CHUNK)
                if not chunk:
                    break
                text = chunk.decode(errors="replace")
                stdout_chunks.append(text)
                if observer is not None:
                    _notify(observer, text)

        async def drain_stderr() -> None:
            assert process.stderr is not None
            while True:
                line = await process.stderr.readline()
                if not line:
                    break
                decoded = line.decode(errors="replace").rstrip()
                stderr_lines.append(decoded)
                log.debug("agent stderr: %s", decoded)

        async def communicate() -> int:
            await asyncio.gather(pump_stdout(), drain_stderr())
            return await process.wait()

        try:
            exit_code = await asyncio.wait_for(communicate(), timeout=timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise InvocationTimeout(f"Agent did not finish within {timeout:g}s") from None
        return "".join(stdout_chunks), "\n".join(stderr_lines), exit_code

    def _interpret(self, stdout: str, stderr: str, exit_code: int) -> InvocationResult:
        try:
            payload = json.loads(stdout)
        except json.JSONDecodeError:
            payload = None
        if not isinstance(payload, dict):
            log.warning(
                "Agent output is not a JSON object; parsing raw text (%d chars)", len(stdout)
            )
            return InvocationResult(
                outcome=self.parser(stdout),
                output=stdout,
                is_error=True,
                error=stderr or "Agent output could not be decoded",
                failure=FAILURE_PROTOCOL,
                exit_code=exit_code,
                raw_output=stdout,
            )

        text = payload.get("result")
        if not isinstance(text, str):
            text = ""
        cost = payload.get("total_cost_usd", payload.get("cost_usd"))
        # A non-zero exit is an error even when the payload looks fine.
        is_error = bool(payload.get("is_error")) or exit_code != 0
        error = None
        if is_error:
            error = payload.get("error") or stderr or f"Agent exited with code {exit_code}"
        return InvocationResult(
            outcome=self.parser(text),
            output=text,
            continuation=payload.get("session_id") or None,
            cost_usd=float(cost) if isinstance(cost, int | float) else None,
            is_error=is_error,
            error=error,
            failure=FAILURE_AGENT if is_error else None,
            exit_code=exit_code,
            raw_output=stdout,
            payload=payload,
        )


def _notify(observer: OutputObserver, text: str) -> None:
    try:
        observer(text)
    except Exception:
        log.exception("Output observer failed")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
