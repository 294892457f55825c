"""Orchestration driver: schedules per-host lanes over a bounded worker pool."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Deque, Dict, List, Optional, Set

from ..dispatch import CollaboratorRegistry, Dispatcher, HostConnection, HostSpec
from .checker import Checker
from .models import Outcome, Run, Stage, StageState
from .plan import Plan
from .reporter import RunSummary, StatusReporter
from .retry import RetryExecutor
from .stage_executor import StageExecutor

logger = logging.getLogger(__name__)

ConnectionFactoryFn = Callable[[HostSpec], HostConnection]
ReporterFactory = Callable[[str, str], StatusReporter]


class OrchestrationDriver:
    """
    编排驱动器

    The driver thread owns all scheduling decisions. Worker threads run
    exactly one Stage each. A host never has more than one Stage in flight,
    so declaration order within a lane is completion order.

    Failure isolation is per dependency edge: a failed Stage only blocks the
    Stages that depend on it, directly or through a blocked Stage.
    """

    def __init__(
        self,
        registry: CollaboratorRegistry,
        connection_factory: ConnectionFactoryFn,
        *,
        reporter_factory: Optional[ReporterFactory] = None,
        concurrency: int = 4,
        force: bool = False,
        action_timeout: float = 1800.0,
        probe_timeout: float = 120.0,
        retry_sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.registry = registry
        self.connection_factory = connection_factory
        self.reporter_factory = reporter_factory or (lambda run_id, plan_id: StatusReporter(run_id, plan_id))
        self.concurrency = concurrency
        self.force = force
        self.action_timeout = action_timeout
        self.probe_timeout = probe_timeout
        self.retry_sleep = retry_sleep
        self.cancel_event = threading.Event()
        self.summary: Optional[RunSummary] = None
        self.reporter: Optional[StatusReporter] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop dispatching new Stages; in-flight Stages finish and are recorded."""
        if not self.cancel_event.is_set():
            logger.warning("🛑 Cancellation requested: no new stages will start")
        self.cancel_event.set()

    def run(self, plan: Plan, concurrency: Optional[int] = None) -> Run:
        # 校验失败时不会打开任何连接
        plan.validate(self.registry)
        limit = concurrency or self.concurrency
        if limit < 1:
            raise ValueError(f"concurrency must be >= 1, got {limit}")

        run = Run(plan_id=plan.plan_id, run_id=_new_run_id(plan.plan_id))
        reporter = self.reporter_factory(run.run_id, plan.plan_id)
        self.reporter = reporter
        reporter.open()

        dispatcher = Dispatcher(
            self.registry,
            action_timeout=self.action_timeout,
            probe_timeout=self.probe_timeout,
        )
        executor = StageExecutor(
            dispatcher,
            Checker(dispatcher, self.registry),
            self.registry,
            reporter,
            retry_executor=RetryExecutor(sleep=self.retry_sleep, cancel_event=self.cancel_event),
            force=self.force,
        )

        logger.info("🚀 Run %s: plan '%s', %d stage(s) on %d host(s), concurrency %d",
                    run.run_id, plan.plan_id, len(plan), len(plan.lanes), limit)

        connections: Dict[str, HostConnection] = {}
        try:
            self._schedule(plan, run, reporter, executor, connections, limit)
        finally:
            for connection in connections.values():
                connection.close()

        status = run.compute_status(cancelled=self.cancelled)
        run.seal(status)
        self.summary = reporter.close(run)
        logger.info("🏁 Run %s finished: %s", run.run_id, status.value)
        return run

    def _schedule(
        self,
        plan: Plan,
        run: Run,
        reporter: StatusReporter,
        executor: StageExecutor,
        connections: Dict[str, HostConnection],
        limit: int,
    ) -> None:
        lanes: Dict[str, Deque[Stage]] = {host: deque(stages) for host, stages in plan.lanes.items()}
        in_flight: Dict[Future, Stage] = {}
        busy: Set[str] = set()

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="lane") as pool:
            while True:
                progressed = self._advance(plan, run, reporter, executor, connections,
                                           lanes, in_flight, busy, pool, limit)
                if not in_flight:
                    if not any(lanes.values()):
                        return
                    if not progressed:
                        pending = [lane[0].id for lane in lanes.values() if lane]
                        raise RuntimeError(f"Scheduler stalled with pending stages: {', '.join(pending)}")
                    continue

                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    stage = in_flight.pop(future)
                    busy.discard(stage.host)
                    try:
                        outcome = future.result()
                    except Exception as exc:
                        logger.exception("Stage %s crashed outside its executor", stage.id)
                        outcome = Outcome.failed(str(exc) or type(exc).__name__, error_kind=type(exc).__name__)
                    run.record(stage, outcome)

    def _advance(
        self,
        plan: Plan,
        run: Run,
        reporter: StatusReporter,
        executor: StageExecutor,
        connections: Dict[str, HostConnection],
        lanes: Dict[str, Deque[Stage]],
        in_flight: Dict[Future, Stage],
        busy: Set[str],
        pool: ThreadPoolExecutor,
        limit: int,
    ) -> bool:
        """Resolve blocked/cancelled lane heads and submit ready ones.

        Repeats until nothing changes, so chains of blocked stages resolve in
        one call. Returns True if anything was resolved or submitted.
        """
        progressed = False
        changed = True
        while changed:
            changed = False
            for host, lane in lanes.items():
                if not lane or host in busy:
                    continue
                stage = lane[0]

                if self.cancelled:
                    lane.popleft()
                    self._resolve_unstarted(run, reporter, stage, Outcome.not_started(), "cancelled")
                    changed = True
                    continue

                blocker = _blocking_dependency(stage, run)
                if blocker is not None:
                    lane.popleft()
                    self._resolve_unstarted(run, reporter, stage, Outcome.blocked_by(blocker), f"blocked by {blocker}")
                    changed = True
                    continue

                if not _dependencies_done(stage, run) or len(in_flight) >= limit:
                    continue

                lane.popleft()
                connection = connections.get(host)
                if connection is None:
                    spec = plan.hosts.get(host) or HostSpec(host_id=host, address=host)
                    connection = self.connection_factory(spec)
                    connections[host] = connection
                busy.add(host)
                in_flight[pool.submit(executor.execute, stage, connection)] = stage
                changed = True
            progressed = progressed or changed
        return progressed

    @staticmethod
    def _resolve_unstarted(
        run: Run,
        reporter: StatusReporter,
        stage: Stage,
        outcome: Outcome,
        detail: str,
    ) -> None:
        reporter.record_transition(stage.host, stage.id, StageState.PENDING, outcome.state, detail=detail)
        run.record(stage, outcome)
        logger.warning("   🚫 [%s] %s not started: %s", stage.host, stage.id, detail)


def _blocking_dependency(stage: Stage, run: Run) -> Optional[str]:
    for dep in sorted(stage.depends_on):
        outcome = run.outcome_for(dep)
        if outcome is not None and outcome.blocks_dependents:
            return dep
    return None


def _dependencies_done(stage: Stage, run: Run) -> bool:
    return all(run.outcome_for(dep) is not None for dep in stage.depends_on)


def _new_run_id(plan_id: str) -> str:
    return f"{plan_id}-{datetime.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6]}"


__all__: List[str] = ["OrchestrationDriver"]
