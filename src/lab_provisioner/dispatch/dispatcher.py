"""Remote command dispatcher: pure transport, no interpretation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .connection import HostConnection, HostUnreachableError
from .registry import CollaboratorRegistry

logger = logging.getLogger(__name__)

DIAGNOSTIC_LIMIT = 2000


@dataclass(frozen=True)
class CommandOutcome:
    """What came back from one remote invocation."""

    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration: float
    timed_out: bool = False
    unreachable: bool = False

    @property
    def transient(self) -> bool:
        """Timeouts and unreachable hosts are transient by default."""
        return self.timed_out or self.unreachable

    def diagnostic(self, limit: int = DIAGNOSTIC_LIMIT) -> str:
        """Last captured remote text, stderr first, keeping the tail."""
        text = (self.stderr or "").strip() or (self.stdout or "").strip()
        if len(text) > limit:
            return "..." + text[-limit:]
        return text

    def to_dict(self) -> dict:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration": round(self.duration, 3),
            "timed_out": self.timed_out,
            "unreachable": self.unreachable,
        }


class Dispatcher:
    """
    Executes registered actions and probes on a host.

    Returns exit code, output and duration. Exit codes are never interpreted
    here; that is the stage's job, using the collaborator's classifier.
    """

    def __init__(
        self,
        registry: CollaboratorRegistry,
        *,
        action_timeout: float = 1800.0,
        probe_timeout: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.action_timeout = action_timeout
        self.probe_timeout = probe_timeout
        self._clock = clock

    def dispatch(
        self,
        connection: HostConnection,
        action_ref: str,
        params: Optional[Mapping[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        spec = self.registry.action(action_ref)
        command = spec.render(params)
        effective_timeout = timeout or spec.timeout or self.action_timeout
        logger.debug("[%s] dispatch %s (timeout=%ss)", connection.host_id, action_ref, effective_timeout)
        return self._run(connection, command, effective_timeout)

    def run_probe(
        self,
        connection: HostConnection,
        probe_ref: str,
        timeout: Optional[float] = None,
    ) -> CommandOutcome:
        spec = self.registry.probe(probe_ref)
        command = spec.command
        effective_timeout = timeout or spec.timeout or self.probe_timeout
        logger.debug("[%s] probe %s (timeout=%ss)", connection.host_id, probe_ref, effective_timeout)
        return self._run(connection, command, effective_timeout)

    def _run(self, connection: HostConnection, command: str, timeout: float) -> CommandOutcome:
        started = self._clock()
        try:
            result = connection.run(command, timeout=timeout)
        except HostUnreachableError as exc:
            duration = self._clock() - started
            logger.warning("   🔌 %s", exc)
            return CommandOutcome(
                command=command,
                exit_code=-1,
                stdout="",
                stderr=str(exc),
                duration=duration,
                unreachable=True,
            )
        duration = self._clock() - started
        return CommandOutcome(
            command=command,
            exit_code=result.exit_status,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
            duration=duration,
            timed_out=bool(getattr(result, "timed_out", False)),
        )
