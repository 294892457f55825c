"""Shared fakes for orchestrator tests.

`FakeLab` simulates a set of hosts whose state is a set of "facts". For each
fact `x` it registers an action `make.x` (command `make x`) that adds the fact
and a probe `has.x` (command `check x`) that reports whether it is present.
Sessions go through the real `HostConnection`, so unreachable hosts surface
exactly the way a dropped SSH or WinRM session would.
"""

from __future__ import annotations

import io
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

import pytest

from lab_provisioner.dispatch import ActionSpec, CollaboratorRegistry, HostConnection, HostSpec, ProbeSpec
from lab_provisioner.orchestrator import (
    ActionCall,
    OrchestrationDriver,
    RetryPolicy,
    Stage,
    StatusReporter,
)

RETRYABLE_CODE = 75
REBOOT_CODE = 3010


@dataclass
class FakeResult:
    command: str
    stdout: str
    stderr: str
    exit_status: int
    timed_out: bool = False


class FakeSession:
    def __init__(self, lab: "FakeLab", host_id: str) -> None:
        self.lab = lab
        self.host_id = host_id

    def connect(self) -> None:
        if self.host_id in self.lab.unreachable:
            raise OSError("connection refused")

    def close(self) -> None:
        pass

    def run(self, command: str, *, timeout: Optional[float] = None) -> FakeResult:
        return self.lab.handle(self.host_id, command)


class FakeLab:
    def __init__(self) -> None:
        self.state: Set[str] = set()
        self.action_codes: Dict[str, List[int]] = {}
        self.probe_codes: Dict[str, List[int]] = {}
        self.lag: Dict[str, int] = {}
        self.phantom: Set[str] = set()
        self.timeouts: Set[str] = set()
        self.unreachable: Set[str] = set()
        self.calls: List[Tuple[str, str]] = []
        self.intervals: List[Tuple[str, str, float, float]] = []
        self.sleeps: List[float] = []
        self.action_delay = 0.0
        self._lock = threading.Lock()

    # -- collaborators -------------------------------------------------

    def registry(self, *facts: str) -> CollaboratorRegistry:
        registry = CollaboratorRegistry()
        for fact in facts:
            registry.register_action(ActionSpec(
                ref=f"make.{fact}",
                command=f"make {fact}",
                retryable_codes=frozenset({RETRYABLE_CODE}),
                annotations={REBOOT_CODE: "reboot required"},
            ))
            registry.register_probe(ProbeSpec(ref=f"has.{fact}", command=f"check {fact}"))
        return registry

    def stage(self, stage_id: str, host: str, fact: str, **kwargs) -> Stage:
        kwargs.setdefault("precondition", f"has.{fact}")
        return Stage(id=stage_id, host=host, action=ActionCall(ref=f"make.{fact}"), **kwargs)

    def connect(self, spec: HostSpec) -> HostConnection:
        return HostConnection(spec, lambda: FakeSession(self, spec.host_id))

    def driver(self, registry: CollaboratorRegistry, **kwargs) -> OrchestrationDriver:
        self.console = io.StringIO()
        kwargs.setdefault(
            "reporter_factory",
            lambda run_id, plan_id: StatusReporter(run_id, plan_id, stream=self.console),
        )
        kwargs.setdefault("retry_sleep", self.sleeps.append)
        return OrchestrationDriver(registry, self.connect, **kwargs)

    # -- remote behaviour ----------------------------------------------

    def commands(self, host: Optional[str] = None, prefix: str = "") -> List[str]:
        return [c for h, c in self.calls if (host is None or h == host) and c.startswith(prefix)]

    def handle(self, host: str, command: str) -> FakeResult:
        verb, _, fact = command.partition(" ")
        started = time.monotonic()
        with self._lock:
            self.calls.append((host, command))
            if host in self.unreachable:
                raise OSError("connection reset by peer")
        if verb == "make" and self.action_delay:
            time.sleep(self.action_delay)
        with self._lock:
            result = self._respond(command, verb, fact)
            self.intervals.append((host, command, started, time.monotonic()))
        return result

    def _respond(self, command: str, verb: str, fact: str) -> FakeResult:
        if command in self.timeouts:
            return FakeResult(command, "", "TIMEOUT", -1, timed_out=True)
        if verb == "make":
            codes = self.action_codes.get(fact)
            code = codes.pop(0) if codes else 0
            if code in (0, REBOOT_CODE) and fact not in self.phantom:
                self.state.add(fact)
            stderr = "" if code in (0, REBOOT_CODE) else f"make {fact} failed with {code}"
            return FakeResult(command, f"made {fact}", stderr, code)
        if verb == "check":
            codes = self.probe_codes.get(fact)
            if codes:
                return FakeResult(command, "", "probe error", codes.pop(0))
            if fact in self.state and self.lag.get(fact, 0) > 0:
                self.lag[fact] -= 1
                return FakeResult(command, "", "", 1)
            return FakeResult(command, "", "", 0 if fact in self.state else 1)
        if verb == "echo":
            return FakeResult(command, fact, "", 0)
        return FakeResult(command, "", f"unknown command {command}", 127)


@pytest.fixture
def lab() -> FakeLab:
    return FakeLab()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=4, initial_delay=10, multiplier=2, max_delay=40)
