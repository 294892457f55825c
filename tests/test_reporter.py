import io
import json
import threading
from datetime import datetime

import pytest

from lab_provisioner.orchestrator import (
    ActionCall,
    Outcome,
    Run,
    RunStatus,
    Stage,
    StageState,
    StatusReporter,
)

FIXED = datetime(2024, 5, 1, 12, 30, 0)


def _reporter(tmp_path, **kwargs):
    kwargs.setdefault("stream", io.StringIO())
    return StatusReporter("run-1", "lab", log_dir=tmp_path, clock=lambda: FIXED, **kwargs)


def _stage(stage_id, host="dc01"):
    return Stage(id=stage_id, host=host, action=ActionCall(ref="make.x"))


def test_records_are_sequenced_and_written_as_jsonl(tmp_path):
    reporter = _reporter(tmp_path)
    path = reporter.open()
    reporter.record_transition("dc01", "a", StageState.PENDING, StageState.CHECKING_PRECONDITION)
    reporter.record_transition("dc01", "a", StageState.CHECKING_PRECONDITION, StageState.SKIPPED,
                               detail="precondition already satisfied")

    run = Run(plan_id="lab", run_id="run-1")
    run.record(_stage("a"), Outcome.skipped())
    run.seal(run.compute_status())
    summary = reporter.close(run)

    assert path.name == "run_lab_20240501_123000.jsonl"
    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [line["seq"] for line in lines[:2]] == [1, 2]
    assert lines[1]["to_state"] == "skipped"
    assert lines[-1]["event"] == "summary"
    assert lines[-1]["exit_code"] == 0
    assert summary.status is RunStatus.ALL_SUCCEEDED
    assert [e.stage_id for e in summary.skipped] == ["a"]


def test_existing_log_file_is_never_overwritten(tmp_path):
    existing = tmp_path / "run_lab_20240501_123000.jsonl"
    existing.write_text("keep me\n", encoding="utf-8")

    path = _reporter(tmp_path).open()

    assert path.name == "run_lab_20240501_123000_1.jsonl"
    assert existing.read_text(encoding="utf-8") == "keep me\n"


def test_concurrent_writers_get_unique_ordered_seq(tmp_path):
    reporter = _reporter(tmp_path)
    reporter.open()

    def worker(host):
        for i in range(50):
            reporter.record_transition(host, f"s{i}", StageState.EXECUTING, StageState.EXECUTING, attempt=i)

    threads = [threading.Thread(target=worker, args=(f"h{n}",)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    seqs = [r.seq for r in reporter.records]
    assert seqs == list(range(1, 201))
    run = Run(plan_id="lab", run_id="run-1")
    run.seal(RunStatus.ALL_SUCCEEDED)
    reporter.close(run)
    written = [json.loads(line)["seq"] for line in reporter.log_file.read_text().splitlines()[:-1]]
    assert written == seqs


def test_json_console_format(tmp_path):
    stream = io.StringIO()
    reporter = _reporter(tmp_path, console_format="json", stream=stream)
    reporter.record_transition("dc01", "a", StageState.PENDING, StageState.INDETERMINATE, detail="cancelled")

    record = json.loads(stream.getvalue().splitlines()[0])
    assert record["detail"] == "cancelled"
    assert record["run_id"] == "run-1"


def test_unknown_console_format_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        _reporter(tmp_path, console_format="xml")


def test_summary_partitions_and_renders_failures(tmp_path):
    reporter = _reporter(tmp_path)
    run = Run(plan_id="lab", run_id="run-1")
    run.record(_stage("ok"), Outcome.succeeded(attempts=3, annotations=("reboot required",)))
    run.record(_stage("bad"), Outcome.failed("action failed", "Access is denied.", error_kind="ActionFailure"))
    run.record(_stage("child", "srv01"), Outcome.blocked_by("bad"))
    run.record(_stage("soft", "srv01"), Outcome.indeterminate("mismatch", warning=True))
    run.seal(run.compute_status())

    summary = reporter.close(run)
    text = summary.render()

    assert summary.exit_code == 1
    assert [e.stage_id for e in summary.succeeded] == ["ok"]
    assert [e.stage_id for e in summary.failed] == ["bad"]
    assert [e.stage_id for e in summary.blocked] == ["child"]
    assert [e.stage_id for e in summary.warned] == ["soft"]
    assert "Access is denied." in text
    assert "reboot required" in text
