"""Error taxonomy for the orchestration engine.

Integrity errors are raised to the caller. Invocation failures never cross the
invoker boundary as exceptions; they are reported as ``InvocationResult.failure``
using the ``FAILURE_*`` codes below.
"""

from __future__ import annotations

from collections.abc import Iterable

FAILURE_SPAWN = "spawn_failure"
FAILURE_TIMEOUT = "timeout"
FAILURE_PROTOCOL = "protocol_parse_failure"
FAILURE_AGENT = "agent_error"
FAILURE_KINDS = {FAILURE_SPAWN, FAILURE_TIMEOUT, FAILURE_PROTOCOL, FAILURE_AGENT}


class InvalidTransition(ValueError):
    def __init__(self, current: int, target: int, valid: Iterable[int], reason: str = "") -> None:
        self.current = current
        self.target = target
        self.valid = sorted(valid)
        msg = (
            f"Invalid stage transition {current} -> {target}. "
            f"Valid targets from stage {current}: {self.valid}"
        )
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class SessionNotFound(LookupError):
    def __init__(self, project_id: str, feature_id: str) -> None:
        self.project_id = project_id
        self.feature_id = feature_id
        super().__init__(f"Session '{project_id}/{feature_id}' not found")


class QueueEntryNotFound(LookupError):
    """A reorder request named a session that is not queued."""


class DuplicateSession(ValueError):
    pass


class ProtectedFieldError(ValueError):
    pass


class ConcurrencyConflict(RuntimeError):
    """Activation attempted while another session is active for the project."""

    def __init__(self, project_id: str, active_feature_id: str) -> None:
        self.project_id = project_id
        self.active_feature_id = active_feature_id
        super().__init__(
            f"Project {project_id} already has an active session '{active_feature_id}'"
        )


class SpawnFailure(RuntimeError):
    """The agent process could not be started."""


class InvocationTimeout(TimeoutError):
    """The agent process exceeded its hard timeout and was killed."""
