"""High-level provisioning workflow."""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Mapping, Optional

from .config import AppConfig
from .dispatch import ConnectionFactory, HostConnection, HostSpec
from .orchestrator import OrchestrationDriver, Plan, RetryPolicy, RunSummary, Stage, StatusReporter
from .paths import get_logs_dir
from .planfile import PlanFile, load_plan_file
from .utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ProvisionRequest:
    """User-provided provisioning request captured from the CLI."""

    plan: str
    hosts: List[str] = field(default_factory=list)
    dry_run: bool = False
    force: bool = False
    concurrency: Optional[int] = None


class ProvisioningWorkflow:
    """Coordinates plan loading, validation and the orchestration driver."""

    def __init__(
        self,
        config: AppConfig,
        plan_file: Optional[str] = None,
        *,
        connection_factory: Optional[Callable[[HostSpec], HostConnection]] = None,
        stream: Optional[IO[str]] = None,
        retry_sleep: Optional[Callable[[float], None]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.config = config
        self.plan_file_path = Path(plan_file or config.transport.plan_file)
        self.connection_factory = connection_factory or ConnectionFactory(config.transport, environ)
        self.stream = stream if stream is not None else sys.stdout
        self.retry_sleep = retry_sleep
        self._plan_file: Optional[PlanFile] = None
        self._driver: Optional[OrchestrationDriver] = None
        self._cancel_requested = False

    @property
    def plan_file(self) -> PlanFile:
        if self._plan_file is None:
            self._plan_file = load_plan_file(
                self.plan_file_path,
                default_transport=self.config.transport.default_transport,
                default_retry=RetryPolicy.from_dict(self.config.retry.to_dict()),
            )
        return self._plan_file

    def list_plans(self) -> List[Dict[str, Any]]:
        return self.plan_file.describe_plans()

    def prepare(self, request: ProvisionRequest) -> Plan:
        """Build, filter and validate the requested plan. No side effects."""
        plan = self.plan_file.build_plan(request.plan)
        # 先对完整计划做校验，再裁剪 host
        plan.validate(self.plan_file.registry)
        if request.hosts:
            plan = plan.restrict_to_hosts(request.hosts)
            plan.validate(self.plan_file.registry)
        return plan

    def validate(self, plan_name: str) -> Plan:
        plan = self.prepare(ProvisionRequest(plan=plan_name))
        logger.info("✅ Plan '%s' is valid: %d stage(s) on %d host(s)",
                    plan.plan_id, len(plan), len(plan.lanes))
        return plan

    def dry_run(self, request: ProvisionRequest) -> List[Stage]:
        """Print the stages that would run and in which order."""
        plan = self.prepare(request)
        if self.config.orchestrator.console_format == "json":
            print(json.dumps({"plan_id": plan.plan_id, "stages": plan.describe()}, ensure_ascii=False), file=self.stream)
            return plan.execution_order()

        order = plan.execution_order()
        print(f"🧪 Dry run: plan '{plan.plan_id}' ({len(order)} stage(s))", file=self.stream)
        for i, stage in enumerate(order, 1):
            deps = f"  after: {', '.join(sorted(stage.depends_on))}" if stage.depends_on else ""
            flags = []
            if stage.eventually_consistent:
                flags.append("eventually-consistent")
            if request.force:
                flags.append("forced")
            flag_text = f" [{', '.join(flags)}]" if flags else ""
            print(f"{i:>3}. [{stage.host}] {stage.id} -> {stage.action.ref}{flag_text}{deps}", file=self.stream)
            if stage.description:
                print(f"       {stage.description}", file=self.stream)
        return order

    def run(self, request: ProvisionRequest) -> RunSummary:
        plan = self.prepare(request)
        orchestrator_config = self.config.orchestrator
        log_dir = get_logs_dir(orchestrator_config.log_dir)

        def reporter_factory(run_id: str, plan_id: str) -> StatusReporter:
            return StatusReporter(
                run_id,
                plan_id,
                log_dir=log_dir,
                console_format=orchestrator_config.console_format,
                stream=self.stream,
            )

        driver = OrchestrationDriver(
            self.plan_file.registry,
            self.connection_factory,
            reporter_factory=reporter_factory,
            concurrency=request.concurrency or orchestrator_config.concurrency,
            force=request.force,
            action_timeout=orchestrator_config.action_timeout,
            probe_timeout=orchestrator_config.probe_timeout,
            retry_sleep=self.retry_sleep,
        )
        self._driver = driver
        if self._cancel_requested:
            driver.cancel()

        driver.run(plan)
        assert driver.summary is not None
        return driver.summary

    def cancel(self) -> None:
        self._cancel_requested = True
        if self._driver is not None:
            self._driver.cancel()
