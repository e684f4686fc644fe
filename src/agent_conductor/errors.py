"""Exception hierarchy for orchestration failures."""

from __future__ import annotations


class ConductorError(Exception):
    """Base class for all orchestration errors."""


class PreconditionError(ConductorError):
    """A dispatch or transition was refused before any side effect."""


class NotFoundError(PreconditionError):
    def __init__(self, kind: str, identifier: object) -> None:
        super().__init__(f"{kind} {identifier} not found")
        self.kind = kind
        self.identifier = identifier


class InactiveError(PreconditionError):
    """The agent or routine exists but is not runnable."""


class InvalidTransitionError(PreconditionError):
    def __init__(self, task_id: int, current: str, requested: str, detail: str = "") -> None:
        message = f"Task {task_id} cannot move from {current} to {requested}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.task_id = task_id
        self.current = current
        self.requested = requested


class OwnershipError(PreconditionError):
    """The acting agent or user does not own the target record."""


class LedgerError(ConductorError):
    """Execution ledger misuse, such as finalising an execution twice."""


class EngineRunError(ConductorError):
    """The execution engine raised instead of returning a result."""


class BrainDecisionError(ConductorError):
    """The Brain's output could not be turned into an actionable decision."""


class CredentialError(ConductorError):
    """A stored credential could not be decrypted."""
