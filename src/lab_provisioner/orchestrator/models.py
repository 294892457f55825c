"""Data models for the orchestrator module."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from ..dispatch.registry import ProbeResult, Verdict

__all__ = [
    "EXIT_OK",
    "EXIT_FAILED",
    "EXIT_INVALID_PLAN",
    "EXIT_ABORTED",
    "ProbeResult",
    "Verdict",
    "StageState",
    "RetryPolicy",
    "ActionCall",
    "Stage",
    "OutcomeKind",
    "Outcome",
    "RunStatus",
    "Run",
    "TransitionRecord",
]

# CLI 退出码
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID_PLAN = 2
EXIT_ABORTED = 3


class StageState(str, Enum):
    """阶段执行状态"""
    PENDING = "pending"
    CHECKING_PRECONDITION = "checking_precondition"
    EXECUTING = "executing"
    CHECKING_POSTCONDITION = "checking_postcondition"
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"

    @property
    def is_terminal(self) -> bool:
        return self in (
            StageState.SKIPPED,
            StageState.SUCCEEDED,
            StageState.FAILED,
            StageState.INDETERMINATE,
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential back-off.

    The wait before attempt n (n >= 2) is
    ``min(initial_delay * multiplier ** (n - 2), max_delay)``; the first
    attempt never waits. ``{4, 10, 2, 40}`` therefore runs at offsets
    0, 10, 30 and 70.
    """

    max_attempts: int = 1
    initial_delay: float = 0.0
    multiplier: float = 1.0
    max_delay: float = 0.0

    def __post_init__(self) -> None:
        if int(self.max_attempts) != self.max_attempts or self.max_attempts < 1:
            raise ValueError(f"max_attempts must be an integer >= 1, got {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must be >= 0, got {self.initial_delay}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")
        if self.max_delay < 0:
            raise ValueError(f"max_delay must be >= 0, got {self.max_delay}")

    def delay_before(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return min(self.initial_delay * (self.multiplier ** (attempt - 2)), self.max_delay)

    def schedule(self) -> List[float]:
        """Elapsed offsets at which each attempt starts, ignoring run time."""
        offsets: List[float] = []
        elapsed = 0.0
        for attempt in range(1, self.max_attempts + 1):
            elapsed += self.delay_before(attempt)
            offsets.append(elapsed)
        return offsets

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "multiplier": self.multiplier,
            "max_delay": self.max_delay,
        }

    @classmethod
    def from_dict(
        cls,
        payload: Optional[Mapping[str, Any]],
        defaults: Optional["RetryPolicy"] = None,
    ) -> "RetryPolicy":
        base = (defaults or cls()).to_dict()
        base.update({k: v for k, v in (payload or {}).items() if not k.startswith("_")})
        return cls(
            max_attempts=int(base["max_attempts"]),
            initial_delay=float(base["initial_delay"]),
            multiplier=float(base["multiplier"]),
            max_delay=float(base["max_delay"]),
        )


@dataclass(frozen=True)
class ActionCall:
    """Reference to a collaborator action plus its parameters."""

    ref: str
    params: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class Stage:
    """A single precondition-checked, idempotent provisioning step."""

    id: str
    host: str
    action: ActionCall
    description: str = ""
    precondition: Optional[str] = None
    postcondition: Optional[str] = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    depends_on: FrozenSet[str] = frozenset()
    # 目标系统最终一致：action 与 postcondition 都按 retry_policy 重试
    eventually_consistent: bool = False
    precondition_retryable: bool = False
    on_mismatch: str = "fail"       # "fail" | "warn"
    timeout: Optional[float] = None

    def __post_init__(self) -> None:
        if self.on_mismatch not in ("fail", "warn"):
            raise ValueError(
                f"Stage '{self.id}': on_mismatch must be 'fail' or 'warn', got '{self.on_mismatch}'"
            )
        if not isinstance(self.depends_on, frozenset):
            object.__setattr__(self, "depends_on", frozenset(self.depends_on))

    @property
    def postcondition_probe(self) -> Optional[str]:
        return self.postcondition or self.precondition

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "host": self.host,
            "description": self.description,
            "precondition": self.precondition,
            "postcondition": self.postcondition_probe,
            "action": {"ref": self.action.ref, "params": dict(self.action.params)},
            "depends_on": sorted(self.depends_on),
            "retry_policy": self.retry_policy.to_dict(),
            "eventually_consistent": self.eventually_consistent,
            "precondition_retryable": self.precondition_retryable,
            "on_mismatch": self.on_mismatch,
        }


class OutcomeKind(str, Enum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    FAILED = "failed"
    INDETERMINATE = "indeterminate"


@dataclass(frozen=True)
class Outcome:
    """Immutable terminal result of one stage in one run."""

    kind: OutcomeKind
    attempts: int = 0
    reason: str = ""
    last_output: str = ""
    annotations: Tuple[str, ...] = ()
    error_kind: Optional[str] = None
    blocked: bool = False           # 依赖失败，从未启动
    warning: bool = False           # 仅警告的 convergence mismatch
    cancelled: bool = False

    @property
    def state(self) -> StageState:
        if self.kind is OutcomeKind.SKIPPED:
            return StageState.SKIPPED
        if self.kind in (OutcomeKind.SUCCEEDED, OutcomeKind.RETRIED):
            return StageState.SUCCEEDED
        if self.kind is OutcomeKind.FAILED:
            return StageState.FAILED
        return StageState.INDETERMINATE

    @property
    def is_success(self) -> bool:
        return self.kind in (OutcomeKind.SKIPPED, OutcomeKind.SUCCEEDED, OutcomeKind.RETRIED)

    @property
    def blocks_dependents(self) -> bool:
        return not self.is_success and not self.warning

    @classmethod
    def skipped(cls, reason: str = "precondition already satisfied") -> "Outcome":
        return cls(kind=OutcomeKind.SKIPPED, reason=reason)

    @classmethod
    def succeeded(cls, attempts: int = 1, annotations: Tuple[str, ...] = ()) -> "Outcome":
        kind = OutcomeKind.RETRIED if attempts > 1 else OutcomeKind.SUCCEEDED
        return cls(kind=kind, attempts=attempts, annotations=tuple(annotations))

    @classmethod
    def failed(
        cls,
        reason: str,
        last_output: str = "",
        *,
        error_kind: Optional[str] = None,
        attempts: int = 0,
        annotations: Tuple[str, ...] = (),
    ) -> "Outcome":
        return cls(
            kind=OutcomeKind.FAILED,
            attempts=attempts,
            reason=reason,
            last_output=last_output or "(no output captured)",
            annotations=tuple(annotations),
            error_kind=error_kind,
        )

    @classmethod
    def indeterminate(
        cls,
        reason: str,
        last_output: str = "",
        *,
        error_kind: Optional[str] = None,
        attempts: int = 0,
        warning: bool = False,
        annotations: Tuple[str, ...] = (),
    ) -> "Outcome":
        return cls(
            kind=OutcomeKind.INDETERMINATE,
            attempts=attempts,
            reason=reason,
            last_output=last_output,
            annotations=tuple(annotations),
            error_kind=error_kind,
            warning=warning,
        )

    @classmethod
    def blocked_by(cls, dependency_id: str) -> "Outcome":
        return cls(
            kind=OutcomeKind.INDETERMINATE,
            reason=f"blocked: dependency '{dependency_id}' did not succeed",
            blocked=True,
        )

    @classmethod
    def not_started(cls) -> "Outcome":
        return cls(
            kind=OutcomeKind.INDETERMINATE,
            reason="cancelled before start",
            cancelled=True,
        )


class RunStatus(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    ABORTED = "aborted"

    @property
    def exit_code(self) -> int:
        return {
            RunStatus.ALL_SUCCEEDED: EXIT_OK,
            RunStatus.PARTIAL_FAILURE: EXIT_FAILED,
            RunStatus.ABORTED: EXIT_ABORTED,
        }[self]


@dataclass
class Run:
    """One execution of a plan.

    Results are kept in completion order. Once sealed the run is immutable.
    """

    plan_id: str
    run_id: str
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    status: Optional[RunStatus] = None
    _results: List[Tuple[Stage, Outcome]] = field(default_factory=list, repr=False)
    _by_id: Dict[str, Outcome] = field(default_factory=dict, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    _sealed: bool = field(default=False, repr=False)

    @property
    def results(self) -> List[Tuple[Stage, Outcome]]:
        with self._lock:
            return list(self._results)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def record(self, stage: Stage, outcome: Outcome) -> None:
        with self._lock:
            if self._sealed:
                raise RuntimeError(f"Run {self.run_id} is sealed; cannot record '{stage.id}'")
            if stage.id in self._by_id:
                raise RuntimeError(f"Stage '{stage.id}' already has an outcome in run {self.run_id}")
            self._results.append((stage, outcome))
            self._by_id[stage.id] = outcome

    def outcome_for(self, stage_id: str) -> Optional[Outcome]:
        with self._lock:
            return self._by_id.get(stage_id)

    def compute_status(self, cancelled: bool = False) -> RunStatus:
        if cancelled:
            return RunStatus.ABORTED
        with self._lock:
            if all(outcome.is_success for _, outcome in self._results):
                return RunStatus.ALL_SUCCEEDED
        return RunStatus.PARTIAL_FAILURE

    def seal(self, status: RunStatus) -> None:
        with self._lock:
            if self._sealed:
                raise RuntimeError(f"Run {self.run_id} is already sealed")
            self.status = status
            self.finished_at = datetime.now()
            self._sealed = True


@dataclass(frozen=True)
class TransitionRecord:
    """One structured log record per stage state transition."""

    seq: int
    timestamp: str
    run_id: str
    host: str
    stage_id: str
    from_state: StageState
    to_state: StageState
    attempt: int = 0
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "timestamp": self.timestamp,
            "run_id": self.run_id,
            "host": self.host,
            "stage_id": self.stage_id,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "attempt": self.attempt,
            "detail": self.detail,
        }
