"""Status reporter: structured, append-only record of every stage transition."""

from __future__ import annotations

import json
import logging
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import IO, Any, Callable, Dict, List, Optional

from .models import Outcome, OutcomeKind, Run, RunStatus, Stage, StageState, TransitionRecord

logger = logging.getLogger(__name__)

CONSOLE_FORMATS = ("text", "json")

_STATE_ICONS = {
    StageState.PENDING: "⏳",
    StageState.CHECKING_PRECONDITION: "🔍",
    StageState.EXECUTING: "⚙️ ",
    StageState.CHECKING_POSTCONDITION: "🔎",
    StageState.SKIPPED: "⏭️ ",
    StageState.SUCCEEDED: "✅",
    StageState.FAILED: "❌",
    StageState.INDETERMINATE: "❓",
}


@dataclass
class SummaryEntry:
    host: str
    stage_id: str
    kind: str
    attempts: int
    reason: str = ""
    last_output: str = ""
    annotations: List[str] = field(default_factory=list)
    error_kind: Optional[str] = None

    @classmethod
    def from_outcome(cls, stage: Stage, outcome: Outcome) -> "SummaryEntry":
        return cls(
            host=stage.host,
            stage_id=stage.id,
            kind=outcome.kind.value,
            attempts=outcome.attempts,
            reason=outcome.reason,
            last_output=outcome.last_output,
            annotations=list(outcome.annotations),
            error_kind=outcome.error_kind,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "stage_id": self.stage_id,
            "kind": self.kind,
            "attempts": self.attempts,
            "reason": self.reason,
            "last_output": self.last_output,
            "annotations": self.annotations,
            "error_kind": self.error_kind,
        }


@dataclass
class RunSummary:
    """Final partition of a Run's stages by how they ended."""

    plan_id: str
    run_id: str
    status: RunStatus
    succeeded: List[SummaryEntry] = field(default_factory=list)
    skipped: List[SummaryEntry] = field(default_factory=list)
    failed: List[SummaryEntry] = field(default_factory=list)
    blocked: List[SummaryEntry] = field(default_factory=list)
    warned: List[SummaryEntry] = field(default_factory=list)
    cancelled: List[SummaryEntry] = field(default_factory=list)
    log_file: Optional[Path] = None
    duration: float = 0.0

    @property
    def exit_code(self) -> int:
        return self.status.exit_code

    @classmethod
    def from_run(cls, run: Run, log_file: Optional[Path] = None) -> "RunSummary":
        summary = cls(
            plan_id=run.plan_id,
            run_id=run.run_id,
            status=run.status or run.compute_status(),
            log_file=log_file,
        )
        if run.finished_at is not None:
            summary.duration = (run.finished_at - run.started_at).total_seconds()
        for stage, outcome in run.results:
            entry = SummaryEntry.from_outcome(stage, outcome)
            if outcome.kind is OutcomeKind.SKIPPED:
                summary.skipped.append(entry)
            elif outcome.is_success:
                summary.succeeded.append(entry)
            elif outcome.blocked:
                summary.blocked.append(entry)
            elif outcome.cancelled:
                summary.cancelled.append(entry)
            elif outcome.warning:
                summary.warned.append(entry)
            else:
                summary.failed.append(entry)
        return summary

    def _sections(self):
        return (
            ("Succeeded", "✅", self.succeeded),
            ("Skipped", "⏭️ ", self.skipped),
            ("Failed", "❌", self.failed),
            ("Blocked", "🚫", self.blocked),
            ("Warned", "⚠️ ", self.warned),
            ("Cancelled", "🛑", self.cancelled),
        )

    def render(self) -> str:
        lines = [
            "=" * 60,
            f"📋 Run {self.run_id} (plan: {self.plan_id})",
            f"   Status: {self.status.value}  exit code: {self.exit_code}",
            "=" * 60,
        ]
        for title, icon, entries in self._sections():
            if not entries:
                continue
            lines.append(f"{icon} {title} ({len(entries)})")
            for entry in entries:
                extra = f" x{entry.attempts}" if entry.attempts > 1 else ""
                notes = f" [{', '.join(entry.annotations)}]" if entry.annotations else ""
                lines.append(f"   - {entry.host}/{entry.stage_id} {entry.kind}{extra}{notes}")
                if entry.reason and title not in ("Succeeded", "Skipped"):
                    lines.append(f"       {entry.reason}")
                if entry.last_output and title in ("Failed", "Warned"):
                    for line in entry.last_output.splitlines()[-5:]:
                        lines.append(f"       │ {line[:160]}")
        if self.log_file is not None:
            lines.append(f"📄 Log: {self.log_file}")
        lines.append("=" * 60)
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": "summary",
            "plan_id": self.plan_id,
            "run_id": self.run_id,
            "status": self.status.value,
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration, 3),
            **{title.lower(): [e.to_dict() for e in entries] for title, _, entries in self._sections()},
        }


class StatusReporter:
    """
    Serializes transitions from all lanes into one ordered stream.

    Each record goes to an in-memory list, a JSONL file that is never
    overwritten, and the console. Order is the order the calls were observed.
    """

    def __init__(
        self,
        run_id: str,
        plan_id: str,
        *,
        log_dir: Optional[Path] = None,
        console_format: str = "text",
        stream: Optional[IO[str]] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        if console_format not in CONSOLE_FORMATS:
            raise ValueError(f"console_format must be one of {CONSOLE_FORMATS}, got '{console_format}'")
        self.run_id = run_id
        self.plan_id = plan_id
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self.console_format = console_format
        self.stream = stream if stream is not None else sys.stdout
        self._clock = clock
        self._lock = threading.Lock()
        self._records: List[TransitionRecord] = []
        self._seq = 0
        self._file: Optional[IO[str]] = None
        self.log_file: Optional[Path] = None

    @property
    def records(self) -> List[TransitionRecord]:
        with self._lock:
            return list(self._records)

    def open(self) -> Optional[Path]:
        if self.log_dir is None or self._file is not None:
            return self.log_file
        self.log_dir.mkdir(parents=True, exist_ok=True)
        timestamp = self._clock().strftime("%Y%m%d_%H%M%S")
        base = f"run_{_safe_name(self.plan_id)}_{timestamp}"
        suffix = 0
        while True:
            name = f"{base}.jsonl" if suffix == 0 else f"{base}_{suffix}.jsonl"
            candidate = self.log_dir / name
            try:
                self._file = open(candidate, "x", encoding="utf-8")
            except FileExistsError:
                suffix += 1
                continue
            self.log_file = candidate
            break
        logger.info("📝 Logging to: %s", self.log_file)
        return self.log_file

    def record_transition(
        self,
        host: str,
        stage_id: str,
        from_state: StageState,
        to_state: StageState,
        *,
        attempt: int = 0,
        detail: str = "",
    ) -> TransitionRecord:
        with self._lock:
            self._seq += 1
            record = TransitionRecord(
                seq=self._seq,
                timestamp=self._clock().isoformat(),
                run_id=self.run_id,
                host=host,
                stage_id=stage_id,
                from_state=from_state,
                to_state=to_state,
                attempt=attempt,
                detail=detail,
            )
            self._records.append(record)
            self._write(record.to_dict())
            self._echo(record)
        return record

    def close(self, run: Run) -> RunSummary:
        summary = RunSummary.from_run(run, log_file=self.log_file)
        with self._lock:
            self._write(summary.to_dict())
            if self._file is not None:
                self._file.close()
                self._file = None
            if self.console_format == "json":
                print(json.dumps(summary.to_dict(), ensure_ascii=False), file=self.stream)
            else:
                print(summary.render(), file=self.stream)
        return summary

    def _write(self, payload: Dict[str, Any]) -> None:
        if self._file is None:
            return
        self._file.write(json.dumps(payload, ensure_ascii=False) + "\n")
        self._file.flush()

    def _echo(self, record: TransitionRecord) -> None:
        if self.console_format == "json":
            print(json.dumps(record.to_dict(), ensure_ascii=False), file=self.stream)
            return
        icon = _STATE_ICONS.get(record.to_state, "•")
        attempt = f" #{record.attempt}" if record.attempt > 1 else ""
        detail = f" - {record.detail}" if record.detail else ""
        print(
            f"{icon} [{record.host}] {record.stage_id}: "
            f"{record.from_state.value} -> {record.to_state.value}{attempt}{detail}",
            file=self.stream,
        )


def _safe_name(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "_" for c in name) or "plan"
