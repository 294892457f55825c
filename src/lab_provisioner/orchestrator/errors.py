"""Error taxonomy for provisioning runs.

Stage-level errors are raised inside the stage executor and converted into an
`Outcome` at the stage boundary. They never escape a lane. Plan validation
errors are raised before any side effect and abort the whole run.
"""

from __future__ import annotations

from typing import Iterable, List


class ProvisioningError(RuntimeError):
    """Base class for everything the orchestrator raises on purpose."""

    def __init__(self, message: str, *, output: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.reason = message
        self.output = output
        self.attempts = attempts


class TransientSystemFailure(ProvisioningError):
    """Host unreachable, timeout or convergence lag that outlived its retries."""


class PreconditionIndeterminate(ProvisioningError):
    """The precondition probe could not tell whether work is needed."""


class ActionFailure(ProvisioningError):
    """The collaborator action itself reported failure."""


class PostconditionMismatch(ProvisioningError):
    """The action claimed success but the postcondition still does not hold."""


class PlanValidationError(ProvisioningError):
    """Structural problem in a plan: cycle, unknown host, dangling dependency."""

    def __init__(self, problems: Iterable[str]) -> None:
        self.problems: List[str] = list(problems) or ["invalid plan"]
        super().__init__("; ".join(self.problems))


class PlanFileError(PlanValidationError):
    """The plan file could not be read or does not have the expected shape."""
