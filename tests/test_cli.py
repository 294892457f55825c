import json
import sys

import pytest

from lab_provisioner.cli import build_parser, run_cli

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses POSIX shell commands")


def _write_plan(path, stages, **extra):
    payload = {
        "hosts": {"box": {"transport": "local", "options": {"working_dir": str(path.parent)}}},
        "actions": {
            "touch": {"command": "touch {{file}}"},
            "fail": {"command": "echo 'disk full' >&2; exit 4"},
        },
        "probes": {
            "has.marker": {"command": "test -f marker"},
            "has.second": {"command": "test -f second"},
        },
        "plans": {"p": {"description": "local smoke plan", "stages": stages}},
    }
    payload.update(extra)
    path.write_text(json.dumps(payload), encoding="utf-8")
    return str(path)


MARKER_STAGES = [
    {"id": "marker", "host": "box", "precondition": "has.marker",
     "action": {"ref": "touch", "params": {"file": "marker"}}},
    {"id": "second", "host": "box", "precondition": "has.second", "depends_on": ["marker"],
     "action": {"ref": "touch", "params": {"file": "second"}}},
]


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_parser_accepts_run_options():
    args = build_parser().parse_args(
        ["run", "--plan", "full", "--host", "dc01", "--host", "sccm01", "--dry-run", "--force", "--concurrency", "2"]
    )
    assert args.hosts == ["dc01", "sccm01"]
    assert args.dry_run and args.force
    assert args.concurrency == 2


def test_run_then_rerun_is_idempotent(workdir, capsys):
    plan_file = _write_plan(workdir / "plan.json", MARKER_STAGES)

    assert run_cli(["--plan-file", plan_file, "run", "--plan", "p"]) == 0
    assert (workdir / "marker").exists()
    assert (workdir / "second").exists()

    assert run_cli(["--plan-file", plan_file, "run", "--plan", "p"]) == 0
    out = capsys.readouterr().out
    assert "Skipped (2)" in out

    logs = sorted((workdir / "provision_logs").glob("run_p_*.jsonl"))
    assert len(logs) == 2
    last = json.loads(logs[-1].read_text(encoding="utf-8").splitlines()[-1])
    assert last["event"] == "summary"
    assert [e["stage_id"] for e in last["skipped"]] == ["marker", "second"]


def test_failed_stage_exits_1_and_blocks_dependent(workdir, capsys):
    stages = [
        {"id": "broken", "host": "box", "action": "fail"},
        {"id": "after", "host": "box", "precondition": "has.marker", "depends_on": ["broken"],
         "action": {"ref": "touch", "params": {"file": "marker"}}},
    ]
    plan_file = _write_plan(workdir / "plan.json", stages)

    assert run_cli(["--plan-file", plan_file, "run", "--plan", "p"]) == 1
    out = capsys.readouterr().out
    assert "disk full" in out
    assert "Blocked (1)" in out
    assert not (workdir / "marker").exists()


def test_cycle_exits_2_before_touching_anything(workdir, capsys):
    stages = [
        {"id": "a", "host": "box", "depends_on": ["b"], "action": {"ref": "touch", "params": {"file": "marker"}}},
        {"id": "b", "host": "box", "depends_on": ["a"], "action": {"ref": "touch", "params": {"file": "second"}}},
    ]
    plan_file = _write_plan(workdir / "plan.json", stages)

    assert run_cli(["--plan-file", plan_file, "run", "--plan", "p"]) == 2
    assert "cycle" in capsys.readouterr().out
    assert not (workdir / "marker").exists()
    assert not (workdir / "provision_logs").exists()


def test_duplicate_stage_id_exits_2(workdir, capsys):
    plan_file = _write_plan(workdir / "plan.json", MARKER_STAGES + [MARKER_STAGES[0]])

    assert run_cli(["--plan-file", plan_file, "run", "--plan", "p"]) == 2
    assert "duplicate stage id 'marker'" in capsys.readouterr().out
    assert not (workdir / "marker").exists()


def test_unknown_plan_and_malformed_file_exit_2(workdir):
    plan_file = _write_plan(workdir / "plan.json", MARKER_STAGES)
    assert run_cli(["--plan-file", plan_file, "run", "--plan", "nope"]) == 2

    broken = workdir / "broken.json"
    broken.write_text("{", encoding="utf-8")
    assert run_cli(["--plan-file", str(broken), "validate", "--plan", "p"]) == 2


def test_dry_run_prints_order_without_side_effects(workdir, capsys):
    plan_file = _write_plan(workdir / "plan.json", MARKER_STAGES)

    assert run_cli(["--plan-file", plan_file, "run", "--plan", "p", "--dry-run"]) == 0

    out = capsys.readouterr().out
    assert out.index("marker -> touch") < out.index("second -> touch")
    assert not (workdir / "marker").exists()
    assert not (workdir / "provision_logs").exists()


def test_dry_run_json_describes_stages_in_order(workdir, capsys):
    plan_file = _write_plan(workdir / "plan.json", MARKER_STAGES)
    config = workdir / "config.json"
    config.write_text(json.dumps({"orchestrator": {"console_format": "json"}}), encoding="utf-8")

    assert run_cli(["--config", str(config), "--plan-file", plan_file, "run", "--plan", "p", "--dry-run"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["plan_id"] == "p"
    assert [(s["order"], s["id"]) for s in payload["stages"]] == [(1, "marker"), (2, "second")]
    assert payload["stages"][1]["depends_on"] == ["marker"]
    assert payload["stages"][0]["action"] == {"ref": "touch", "params": {"file": "marker"}}


def test_validate_and_plans_commands(workdir, capsys):
    plan_file = _write_plan(workdir / "plan.json", MARKER_STAGES)

    assert run_cli(["--plan-file", plan_file, "validate", "--plan", "p"]) == 0
    assert run_cli(["--plan-file", plan_file, "plans"]) == 0
    out = capsys.readouterr().out
    assert "is valid" in out
    assert "local smoke plan" in out


def test_logs_command_reads_run_logs(workdir, capsys):
    plan_file = _write_plan(workdir / "plan.json", MARKER_STAGES)
    run_cli(["--plan-file", plan_file, "run", "--plan", "p"])
    capsys.readouterr()

    assert run_cli(["logs", "--list"]) == 0
    assert "all_succeeded" in capsys.readouterr().out

    assert run_cli(["logs", "--latest"]) == 0
    out = capsys.readouterr().out
    assert "pending -> checking_precondition" in out
    assert "Succeeded (2)" in out

    assert run_cli(["logs", "--file", "missing.jsonl"]) == 1


def test_missing_config_file_exits_2(workdir):
    assert run_cli(["--config", "nope.json", "plans"]) == 2


@pytest.mark.parametrize("content", ["{not json", '{"orchestrator": {"workers": 2}}'])
def test_malformed_config_file_exits_2(workdir, capsys, content):
    config = workdir / "config.json"
    config.write_text(content, encoding="utf-8")

    assert run_cli(["--config", str(config), "plans"]) == 2
    assert "configuration file" in capsys.readouterr().out
