"""Stage executor: runs one Stage through its state machine on one host."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

from ..dispatch import CollaboratorRegistry, CommandOutcome, Dispatcher, HostConnection, Verdict
from .checker import Checker, ProbeCheck
from .errors import (
    ActionFailure,
    PostconditionMismatch,
    PreconditionIndeterminate,
    ProvisioningError,
    TransientSystemFailure,
)
from .models import Outcome, OutcomeKind, ProbeResult, RetryPolicy, Stage, StageState
from .retry import FatalFailure, RetryableFailure, RetryExecutor, Success

if TYPE_CHECKING:
    from .reporter import StatusReporter

logger = logging.getLogger(__name__)

SINGLE_ATTEMPT = RetryPolicy(max_attempts=1)


class _StageTracker:
    """Current state of one stage; every change is forwarded to the reporter."""

    def __init__(self, stage: Stage, reporter: "StatusReporter") -> None:
        self.stage = stage
        self.reporter = reporter
        self.state = StageState.PENDING
        self.attempt = 0

    def to(self, state: StageState, detail: str = "") -> None:
        self.reporter.record_transition(
            self.stage.host,
            self.stage.id,
            self.state,
            state,
            attempt=self.attempt,
            detail=detail,
        )
        self.state = state

    def retry(self, attempt: int, reason: str, delay: float) -> None:
        self.attempt = attempt
        self.to(self.state, detail=f"retry in {delay:.1f}s: {reason}")


class StageExecutor:
    """
    阶段执行器

    Drives a single Stage:
    precondition probe -> action dispatch -> postcondition probe.
    Every stage-level error is caught here and turned into an Outcome, so
    nothing a stage does can take down a sibling lane.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        checker: Checker,
        registry: CollaboratorRegistry,
        reporter: "StatusReporter",
        retry_executor: Optional[RetryExecutor] = None,
        force: bool = False,
    ) -> None:
        self.dispatcher = dispatcher
        self.checker = checker
        self.registry = registry
        self.reporter = reporter
        self.retry_executor = retry_executor or RetryExecutor()
        self.force = force

    def execute(self, stage: Stage, connection: HostConnection) -> Outcome:
        tracker = _StageTracker(stage, self.reporter)
        logger.info("▶️  [%s] %s %s", stage.host, stage.id, f"- {stage.description}" if stage.description else "")
        try:
            outcome = self._run(stage, connection, tracker)
        except ProvisioningError as exc:
            outcome = Outcome.failed(
                exc.reason,
                exc.output,
                error_kind=type(exc).__name__,
                attempts=exc.attempts or tracker.attempt,
            )
        except Exception as exc:
            logger.exception("Unexpected error in stage %s", stage.id)
            outcome = Outcome.failed(
                str(exc) or type(exc).__name__,
                error_kind=type(exc).__name__,
                attempts=tracker.attempt,
            )

        if tracker.state is StageState.EXECUTING and not outcome.cancelled:
            tracker.to(StageState.CHECKING_POSTCONDITION, detail="action did not complete")
        tracker.to(outcome.state, detail=outcome.reason)
        self._log_outcome(stage, outcome)
        return outcome

    # ------------------------------------------------------------------
    # precondition
    # ------------------------------------------------------------------

    def _run(self, stage: Stage, connection: HostConnection, tracker: _StageTracker) -> Outcome:
        if self.force:
            tracker.to(StageState.CHECKING_PRECONDITION, detail="forced")
        elif stage.precondition is None:
            tracker.to(StageState.CHECKING_PRECONDITION, detail="no precondition")
        else:
            tracker.to(StageState.CHECKING_PRECONDITION)
            check = self._check_precondition(stage, connection, tracker)
            if check is None:
                return _cancelled_outcome(tracker.attempt)
            if check.result is ProbeResult.SATISFIED:
                return Outcome.skipped()
            tracker.attempt = 0

        tracker.to(StageState.EXECUTING)
        if stage.eventually_consistent:
            return self._execute_converging(stage, connection, tracker)
        return self._execute_once(stage, connection, tracker)

    def _check_precondition(
        self,
        stage: Stage,
        connection: HostConnection,
        tracker: _StageTracker,
    ) -> Optional[ProbeCheck]:
        """Returns the final probe check, or None if the run was cancelled."""
        policy = stage.retry_policy if stage.precondition_retryable else SINGLE_ATTEMPT
        checks: List[ProbeCheck] = []

        def attempt(number: int):
            tracker.attempt = number
            check = self.checker.probe(connection, stage.precondition, timeout=stage.timeout)
            checks.append(check)
            if check.result is ProbeResult.INDETERMINATE:
                return RetryableFailure(
                    f"precondition '{stage.precondition}' indeterminate ({check.detail})",
                    check.outcome.diagnostic(),
                )
            return Success(check)

        result = self.retry_executor.execute(attempt, policy, on_retry=tracker.retry)
        if result.cancelled:
            return None
        if not result.ok:
            raise PreconditionIndeterminate(result.reason, output=result.output, attempts=result.attempts)
        return result.value

    # ------------------------------------------------------------------
    # action + postcondition
    # ------------------------------------------------------------------

    def _execute_once(self, stage: Stage, connection: HostConnection, tracker: _StageTracker) -> Outcome:
        """Action retried per policy on transient or retryable exits, then one postcondition probe."""
        transient = [False]
        last: List[CommandOutcome] = []

        def attempt(number: int):
            tracker.attempt = number
            return self._dispatch_attempt(stage, connection, transient, last)

        result = self.retry_executor.execute(attempt, stage.retry_policy, on_retry=tracker.retry)
        if last:
            tracker.to(StageState.CHECKING_POSTCONDITION, detail=f"exit {last[-1].exit_code}")
        if result.cancelled:
            return _cancelled_outcome(result.attempts)
        if not result.ok:
            self._raise_action_failure(result, transient[0])

        annotations = (result.value.annotation,) if result.value.annotation else ()
        probe_ref = stage.postcondition_probe
        if probe_ref is None:
            return Outcome.succeeded(result.attempts, annotations)

        check = self.checker.probe(connection, probe_ref, timeout=stage.timeout)
        if check.result is ProbeResult.SATISFIED:
            return Outcome.succeeded(result.attempts, annotations)
        if check.result is ProbeResult.UNSATISFIED:
            return self._mismatch(stage, probe_ref, check.outcome, result.attempts, annotations)
        return Outcome.indeterminate(
            f"postcondition '{probe_ref}' indeterminate ({check.detail})",
            check.outcome.diagnostic(),
            error_kind=TransientSystemFailure.__name__,
            attempts=result.attempts,
            annotations=annotations,
        )

    def _execute_converging(self, stage: Stage, connection: HostConnection, tracker: _StageTracker) -> Outcome:
        """Action and postcondition both retried until the target system converges.

        Once the action has succeeded it is not dispatched again; later
        attempts only re-probe the postcondition.
        """
        probe_ref = stage.postcondition_probe
        annotations: List[str] = []
        transient = [False]
        state = {"action_done": False, "last_probe": None}

        def attempt(number: int):
            tracker.attempt = number
            if not state["action_done"]:
                step = self._dispatch_attempt(stage, connection, transient)
                if not isinstance(step, Success):
                    return step
                if step.value.annotation:
                    annotations.append(step.value.annotation)
                state["action_done"] = True
                tracker.to(StageState.CHECKING_POSTCONDITION, detail=f"exit {step.output}")

            if probe_ref is None:
                return Success()
            check = self.checker.probe(connection, probe_ref, timeout=stage.timeout)
            state["last_probe"] = check
            if check.result is ProbeResult.SATISFIED:
                return Success()
            # 尚未收敛
            return RetryableFailure(
                f"postcondition '{probe_ref}' not yet satisfied ({check.detail})",
                check.outcome.diagnostic(),
            )

        result = self.retry_executor.execute(attempt, stage.retry_policy, on_retry=tracker.retry)

        if result.ok:
            return Outcome.succeeded(result.attempts, tuple(annotations))
        if result.cancelled:
            return _cancelled_outcome(result.attempts)
        if not state["action_done"]:
            self._raise_action_failure(result, transient[0])

        check: ProbeCheck = state["last_probe"]
        if check.result is ProbeResult.UNSATISFIED:
            return self._mismatch(stage, probe_ref, check.outcome, result.attempts, tuple(annotations))
        return Outcome.indeterminate(
            f"postcondition '{probe_ref}' still indeterminate after {result.attempts} attempts",
            check.outcome.diagnostic(),
            error_kind=TransientSystemFailure.__name__,
            attempts=result.attempts,
            annotations=tuple(annotations),
        )

    def _dispatch_attempt(
        self,
        stage: Stage,
        connection: HostConnection,
        transient: List[bool],
        seen: Optional[List[CommandOutcome]] = None,
    ):
        """One classified action dispatch.

        Success carries the exit classification as its value and the exit
        code as its output. `transient[0]` tracks whether the latest failure
        was a timeout or an unreachable host.
        """
        outcome = self._dispatch(stage, connection)
        if seen is not None:
            seen.append(outcome)
        if outcome.transient:
            transient[0] = True
            return RetryableFailure(_transient_reason(stage, outcome), outcome.diagnostic())
        transient[0] = False
        classification = self.registry.action(stage.action.ref).classify(outcome.exit_code)
        if classification.verdict is Verdict.FATAL:
            return FatalFailure(
                f"action '{stage.action.ref}' failed with exit code {outcome.exit_code}",
                outcome.diagnostic(),
            )
        if classification.verdict is Verdict.RETRYABLE:
            return RetryableFailure(
                f"action '{stage.action.ref}' exit code {outcome.exit_code} is retryable",
                outcome.diagnostic(),
            )
        return Success(classification, str(outcome.exit_code))

    @staticmethod
    def _raise_action_failure(result, transient: bool) -> None:
        if result.fatal:
            raise ActionFailure(result.reason, output=result.output, attempts=result.attempts)
        error = TransientSystemFailure if transient else ActionFailure
        reason = result.reason
        if result.attempts > 1:
            reason = f"{reason} (gave up after {result.attempts} attempts)"
        raise error(reason, output=result.output, attempts=result.attempts)

    def _dispatch(self, stage: Stage, connection: HostConnection) -> CommandOutcome:
        return self.dispatcher.dispatch(
            connection,
            stage.action.ref,
            stage.action.params,
            timeout=stage.timeout,
        )

    @staticmethod
    def _mismatch(stage, probe_ref, outcome: CommandOutcome, attempts: int, annotations) -> Outcome:
        reason = f"action reported success but postcondition '{probe_ref}' is not satisfied"
        if stage.on_mismatch == "warn":
            return Outcome.indeterminate(
                reason,
                outcome.diagnostic(),
                error_kind=PostconditionMismatch.__name__,
                attempts=attempts,
                warning=True,
                annotations=tuple(annotations),
            )
        raise PostconditionMismatch(reason, output=outcome.diagnostic(), attempts=attempts)

    @staticmethod
    def _log_outcome(stage: Stage, outcome: Outcome) -> None:
        if outcome.kind is OutcomeKind.SKIPPED:
            logger.info("   ⏭️  [%s] %s already satisfied", stage.host, stage.id)
        elif outcome.is_success:
            note = f" ({', '.join(outcome.annotations)})" if outcome.annotations else ""
            logger.info("   ✅ [%s] %s %s after %d attempt(s)%s",
                        stage.host, stage.id, outcome.kind.value, outcome.attempts, note)
        elif outcome.warning:
            logger.warning("   ⚠️  [%s] %s: %s", stage.host, stage.id, outcome.reason)
        else:
            logger.error("   ❌ [%s] %s %s: %s", stage.host, stage.id, outcome.kind.value, outcome.reason)
            if outcome.last_output:
                logger.error("      %s", outcome.last_output[-500:])


def _transient_reason(stage: Stage, outcome: CommandOutcome) -> str:
    if outcome.unreachable:
        return f"host '{stage.host}' unreachable"
    return f"action '{stage.action.ref}' timed out after {outcome.duration:.0f}s"


def _cancelled_outcome(attempts: int) -> Outcome:
    return Outcome(
        kind=OutcomeKind.INDETERMINATE,
        attempts=attempts,
        reason="cancelled",
        cancelled=True,
    )
