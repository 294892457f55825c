import pytest

from lab_provisioner.orchestrator import (
    Outcome,
    OutcomeKind,
    Plan,
    PlanValidationError,
    Run,
    RunStatus,
    StageState,
)


def _kinds(run):
    return {stage.id: outcome.kind for stage, outcome in run.results}


def _lab_plan(lab, **overrides):
    return Plan("lab", [
        lab.stage("dc-promote", "dc01", "forest"),
        lab.stage("dc-accounts", "dc01", "accounts"),
        lab.stage("srv-join", "srv01", "joined", depends_on={"dc-accounts"}),
        lab.stage("srv-sql", "srv01", "sql"),
        lab.stage("cli-dns", "cli01", "dns"),
    ])


FACTS = ("forest", "accounts", "joined", "sql", "dns")


def test_second_run_is_all_skipped(lab):
    registry = lab.registry(*FACTS)
    plan = _lab_plan(lab)

    first = lab.driver(registry).run(plan)
    assert first.status is RunStatus.ALL_SUCCEEDED
    made = len(lab.commands(prefix="make"))

    second = lab.driver(registry).run(plan)
    assert second.status is RunStatus.ALL_SUCCEEDED
    assert set(_kinds(second).values()) == {OutcomeKind.SKIPPED}
    assert len(lab.commands(prefix="make")) == made


def test_cross_host_dependency_orders_execution(lab):
    registry = lab.registry(*FACTS)
    lab.driver(registry, concurrency=3).run(_lab_plan(lab))

    makes = lab.commands(prefix="make")
    assert makes.index("make accounts") < makes.index("make joined")
    assert makes.index("make forest") < makes.index("make accounts")


def test_failed_dependency_blocks_dependents_only(lab):
    registry = lab.registry(*FACTS)
    lab.action_codes["accounts"] = [1]
    driver = lab.driver(registry)

    run = driver.run(_lab_plan(lab))

    kinds = _kinds(run)
    assert kinds["dc-accounts"] is OutcomeKind.FAILED
    assert kinds["srv-join"] is OutcomeKind.INDETERMINATE
    assert run.outcome_for("srv-join").blocked
    assert "make joined" not in lab.commands()
    # 同一 lane 中没有依赖边的后续阶段照常执行
    assert kinds["srv-sql"] is OutcomeKind.SUCCEEDED
    assert kinds["cli-dns"] is OutcomeKind.SUCCEEDED
    assert run.status is RunStatus.PARTIAL_FAILURE
    assert run.status.exit_code == 1

    blocked = [r for r in driver.reporter.records if r.stage_id == "srv-join"]
    assert [(r.from_state, r.to_state) for r in blocked] == [(StageState.PENDING, StageState.INDETERMINATE)]
    assert blocked[0].detail == "blocked by dc-accounts"


def test_blocking_is_transitive(lab):
    registry = lab.registry("a", "b", "c")
    lab.action_codes["a"] = [1]
    plan = Plan("p", [
        lab.stage("a", "h1", "a"),
        lab.stage("b", "h2", "b", depends_on={"a"}),
        lab.stage("c", "h3", "c", depends_on={"b"}),
    ])

    run = lab.driver(registry).run(plan)

    assert run.outcome_for("b").blocked
    assert run.outcome_for("c").blocked
    assert lab.commands(prefix="make") == ["make a"]


def test_warning_does_not_block_but_run_is_not_clean(lab):
    registry = lab.registry("a", "b")
    lab.phantom.add("a")
    plan = Plan("p", [
        lab.stage("a", "h1", "a", on_mismatch="warn"),
        lab.stage("b", "h2", "b", depends_on={"a"}),
    ])

    run = lab.driver(registry).run(plan)

    assert run.outcome_for("a").warning
    assert run.outcome_for("b").kind is OutcomeKind.SUCCEEDED
    assert run.status is RunStatus.PARTIAL_FAILURE


def test_no_two_stages_overlap_on_one_host(lab):
    facts = [f"f{i}" for i in range(6)]
    registry = lab.registry(*facts)
    lab.action_delay = 0.02
    plan = Plan("p", [
        lab.stage(f"s{i}", "h1" if i % 2 else "h2", fact)
        for i, fact in enumerate(facts)
    ])

    run = lab.driver(registry, concurrency=4).run(plan)
    assert run.status is RunStatus.ALL_SUCCEEDED

    for host in ("h1", "h2"):
        spans = sorted((start, end) for h, cmd, start, end in lab.intervals if h == host and cmd.startswith("make"))
        for (_, prev_end), (next_start, _) in zip(spans, spans[1:]):
            assert next_start >= prev_end

    order = {host: [s.id for s, _ in run.results if s.host == host] for host in ("h1", "h2")}
    assert order == {"h1": ["s1", "s3", "s5"], "h2": ["s0", "s2", "s4"]}


def test_cycle_is_rejected_before_any_side_effect(lab):
    registry = lab.registry("a", "b")
    plan = Plan("p", [
        lab.stage("a", "h1", "a", depends_on={"b"}),
        lab.stage("b", "h2", "b", depends_on={"a"}),
    ])

    with pytest.raises(PlanValidationError):
        lab.driver(registry).run(plan)
    assert lab.calls == []


def test_cancel_before_start_aborts_everything(lab):
    registry = lab.registry(*FACTS)
    driver = lab.driver(registry)
    driver.cancel()

    run = driver.run(_lab_plan(lab))

    assert run.status is RunStatus.ABORTED
    assert run.status.exit_code == 3
    assert lab.calls == []
    assert all(outcome.cancelled for _, outcome in run.results)
    assert {r.detail for r in driver.reporter.records} == {"cancelled"}


def test_cancel_during_backoff_stops_new_stages(lab, fast_policy):
    registry = lab.registry("a", "b")
    lab.lag["a"] = 5
    driver = lab.driver(registry, retry_sleep=lambda seconds: driver.cancel())
    plan = Plan("p", [
        lab.stage("a", "h1", "a", eventually_consistent=True, retry_policy=fast_policy),
        lab.stage("b", "h1", "b"),
    ])

    run = driver.run(plan)

    assert run.status is RunStatus.ABORTED
    assert run.outcome_for("a").cancelled
    assert run.outcome_for("b").cancelled
    assert "make b" not in lab.commands()


def test_unreachable_host_fails_its_lane_and_spares_others(lab):
    registry = lab.registry("a", "b")
    lab.unreachable.add("h1")
    plan = Plan("p", [lab.stage("a", "h1", "a"), lab.stage("b", "h2", "b")])

    run = lab.driver(registry).run(plan)

    assert run.outcome_for("a").error_kind == "PreconditionIndeterminate"
    assert run.outcome_for("b").kind is OutcomeKind.SUCCEEDED


def test_host_filter_runs_selected_lanes_only(lab):
    registry = lab.registry(*FACTS)
    plan = _lab_plan(lab).restrict_to_hosts(["srv01"])

    run = lab.driver(registry).run(plan)

    assert {stage.host for stage, _ in run.results} == {"srv01"}
    assert run.status is RunStatus.ALL_SUCCEEDED


def test_summary_lists_every_stage(lab):
    registry = lab.registry(*FACTS)
    lab.action_codes["forest"] = [9]
    driver = lab.driver(registry)

    driver.run(_lab_plan(lab))

    summary = driver.summary
    assert summary.exit_code == 1
    listed = summary.succeeded + summary.skipped + summary.failed + summary.blocked + summary.warned + summary.cancelled
    assert sorted(e.stage_id for e in listed) == sorted(s.id for s in _lab_plan(lab).stages)
    assert [e.stage_id for e in summary.failed] == ["dc-promote"]
    assert "make forest failed with 9" in summary.failed[0].last_output


def test_run_is_immutable_once_sealed(lab):
    stage = lab.stage("a", "h1", "a")
    run = Run(plan_id="p", run_id="r")
    run.record(stage, Outcome.skipped())
    with pytest.raises(RuntimeError):
        run.record(stage, Outcome.skipped())
    run.seal(run.compute_status())
    assert run.status is RunStatus.ALL_SUCCEEDED
    with pytest.raises(RuntimeError):
        run.record(lab.stage("b", "h1", "b"), Outcome.skipped())
