"""Remote command dispatch: host connections, collaborator registry, dispatcher."""

from .connection import (
    ConnectionFactory,
    HostConnection,
    HostSpec,
    HostUnreachableError,
)
from .dispatcher import CommandOutcome, Dispatcher
from .registry import (
    BUILTIN_NOOP_ACTION,
    BUILTIN_REACHABLE_PROBE,
    ActionSpec,
    CollaboratorRegistry,
    ExitClassification,
    ProbeResult,
    ProbeSpec,
    Verdict,
)

__all__ = [
    "ConnectionFactory",
    "HostConnection",
    "HostSpec",
    "HostUnreachableError",
    "CommandOutcome",
    "Dispatcher",
    "BUILTIN_NOOP_ACTION",
    "BUILTIN_REACHABLE_PROBE",
    "ActionSpec",
    "CollaboratorRegistry",
    "ExitClassification",
    "ProbeResult",
    "ProbeSpec",
    "Verdict",
]
