"""Orchestrator module for stage-based lab provisioning.

This module provides the provisioning core:
- OrchestrationDriver: Schedules per-host lanes over a bounded worker pool
- StageExecutor: Runs one Stage through precondition / action / postcondition
- Checker: Tri-state precondition and postcondition probes
- RetryExecutor: Bounded exponential back-off for eventually-consistent state
- StatusReporter/RunSummary: Structured transition log and final summary
- Plan: Validated DAG of Stages across hosts
"""

from .errors import (
    ProvisioningError,
    TransientSystemFailure,
    PreconditionIndeterminate,
    ActionFailure,
    PostconditionMismatch,
    PlanValidationError,
    PlanFileError,
)
from .models import (
    EXIT_OK,
    EXIT_FAILED,
    EXIT_INVALID_PLAN,
    EXIT_ABORTED,
    ProbeResult,
    Verdict,
    StageState,
    RetryPolicy,
    ActionCall,
    Stage,
    OutcomeKind,
    Outcome,
    RunStatus,
    Run,
    TransitionRecord,
)
from .retry import RetryExecutor, RetryResult, Success, RetryableFailure, FatalFailure
from .checker import Checker, ProbeCheck
from .plan import Plan
from .reporter import StatusReporter, RunSummary
from .stage_executor import StageExecutor
from .orchestrator import OrchestrationDriver

__all__ = [
    "ProvisioningError",
    "TransientSystemFailure",
    "PreconditionIndeterminate",
    "ActionFailure",
    "PostconditionMismatch",
    "PlanValidationError",
    "PlanFileError",
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
    "RetryExecutor",
    "RetryResult",
    "Success",
    "RetryableFailure",
    "FatalFailure",
    "Checker",
    "ProbeCheck",
    "Plan",
    "StatusReporter",
    "RunSummary",
    "StageExecutor",
    "OrchestrationDriver",
]
