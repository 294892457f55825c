"""Precondition / postcondition checker."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ..dispatch import CollaboratorRegistry, CommandOutcome, Dispatcher, HostConnection
from .models import ProbeResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProbeCheck:
    result: ProbeResult
    outcome: CommandOutcome

    @property
    def detail(self) -> str:
        if self.outcome.unreachable:
            return "host unreachable"
        if self.outcome.timed_out:
            return "probe timed out"
        return f"exit {self.outcome.exit_code}"


class Checker:
    """Runs read-only probes and answers satisfied / unsatisfied / indeterminate."""

    def __init__(self, dispatcher: Dispatcher, registry: CollaboratorRegistry) -> None:
        self.dispatcher = dispatcher
        self.registry = registry

    def check(
        self,
        connection: HostConnection,
        probe_ref: str,
        timeout: Optional[float] = None,
    ) -> ProbeResult:
        return self.probe(connection, probe_ref, timeout).result

    def probe(
        self,
        connection: HostConnection,
        probe_ref: str,
        timeout: Optional[float] = None,
    ) -> ProbeCheck:
        spec = self.registry.probe(probe_ref)
        outcome = self.dispatcher.run_probe(connection, probe_ref, timeout=timeout)
        result = spec.evaluate(outcome)
        logger.debug("[%s] probe %s -> %s (%s)", connection.host_id, probe_ref, result.value, outcome.exit_code)
        return ProbeCheck(result=result, outcome=outcome)
