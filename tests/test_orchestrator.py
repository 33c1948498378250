import math
from pathlib import Path

import pandas as pd
import pytest

import nuisance_breakdown.orchestrator as orchestrator
from nuisance_breakdown.errors import ConfigurationError, GroupNotFound, NonConvergence
from nuisance_breakdown.model import ModelConfig, Parameter, Workspace
from nuisance_breakdown.orchestrator import (
    POST_FIT_SNAPSHOT,
    BreakdownOrchestrator,
    BreakdownTask,
    run_breakdown,
)
from nuisance_breakdown.reporting import RESULT_COLUMNS, STATUS_ERROR


def _prepared(config, workspace=None) -> BreakdownOrchestrator:
    orch = BreakdownOrchestrator(config, workspace=workspace)
    orch.load_model()
    orch.global_fit()
    return orch


def test_total_reproduces_full_uncertainty(make_config):
    records = run_breakdown(make_config(group="total"))

    assert len(records) == 1
    record = records[0]
    assert record.ok
    assert record.group == "total"
    assert record.poi == "mu"
    assert record.hat == pytest.approx(1.0, abs=1e-3)
    assert record.up == pytest.approx(0.10, abs=5e-3)
    assert record.down == pytest.approx(0.10, abs=5e-3)


def test_additive_group_is_smaller_than_total(make_config):
    orch = _prepared(make_config(group="syst_a"))
    total = orch.evaluate(BreakdownTask(group="total", tree=orch.tree))[0]
    syst_a = orch.evaluate(BreakdownTask(group="syst_a", tree=orch.tree))[0]

    assert syst_a.up < total.up
    assert syst_a.down < total.down
    # statistical (p1) and syst_a (p2) float: sqrt(3) * 0.05
    assert syst_a.up == pytest.approx(math.sqrt(0.0075), abs=5e-3)
    assert syst_a.hat == pytest.approx(1.0, abs=1e-3)


def test_subtractive_group_fixes_members(make_config):
    orch = _prepared(make_config(group="syst_a", technique="sub"))
    record = orch.evaluate(BreakdownTask(group="syst_a", tree=orch.tree))[0]

    assert record.ok
    assert orch.workspace.var("p2").constant
    assert not orch.workspace.var("p1").constant
    assert record.up == pytest.approx(math.sqrt(0.0075), abs=5e-3)


def test_evaluation_is_repeatable(make_config):
    orch = _prepared(make_config(group="syst_a"))
    task = BreakdownTask(group="syst_a", tree=orch.tree)
    first = orch.evaluate(task)[0]
    second = orch.evaluate(task)[0]

    assert second.hat == pytest.approx(first.hat, abs=1e-9)
    assert second.up == pytest.approx(first.up, abs=1e-9)
    assert second.down == pytest.approx(first.down, abs=1e-9)


def test_evaluation_starts_from_post_fit_state(make_config):
    orch = _prepared(make_config(group="syst_a"))
    post_fit = orch.workspace.parameters.values()

    orch.evaluate(BreakdownTask(group="syst_a", tree=orch.tree))
    orch.workspace.load_snapshot(POST_FIT_SNAPSHOT)

    assert orch.workspace.parameters.values() == post_fit


def test_unknown_group_writes_nothing(make_config, tmp_path: Path):
    with pytest.raises(GroupNotFound):
        run_breakdown(make_config(group="syst_c"))
    assert not (tmp_path / "output").exists()


def test_breakdown_target_evaluates_each_member(make_config):
    config = make_config(group="syst_b")
    records = run_breakdown(config)

    assert [r.group for r in records] == ["syst_b", "p3"]
    assert all(r.ok for r in records)
    assert (config.output_path / "groups" / "tmp_p3.xml").exists()
    assert (config.output_path / "syst_b.csv").exists()
    assert (config.output_path / "p3.csv").exists()


def test_failed_sigma_search_is_recorded(make_config, monkeypatch):
    real_find_sigma = orchestrator.find_sigma
    calls = {"n": 0}

    def flaky_find_sigma(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise NonConvergence("Sigma search for mu did not converge", "mu")
        return real_find_sigma(*args, **kwargs)

    monkeypatch.setattr(orchestrator, "find_sigma", flaky_find_sigma)
    config = make_config(group="syst_b")
    records = run_breakdown(config)

    assert [r.group for r in records] == ["syst_b", "p3"]
    assert records[0].status == STATUS_ERROR
    assert math.isnan(records[0].up)
    assert "did not converge" in records[0].message
    assert records[1].ok

    summary = pd.read_csv(config.output_path / "summary.csv")
    assert list(summary["status"]) == ["ERROR", "OK"]


def test_global_fit_failure_is_fatal(make_config, monkeypatch):
    def failing_minimize(*args, **kwargs):
        raise NonConvergence("global fit: minimization failed", "global fit")

    monkeypatch.setattr("nuisance_breakdown.model.minimize_nll", failing_minimize)
    with pytest.raises(NonConvergence):
        run_breakdown(make_config(group="total"))


def test_result_tables_written(make_config):
    config = make_config(group="syst_a")
    run_breakdown(config)

    table = pd.read_csv(config.output_path / "syst_a.csv")
    assert list(table.columns) == RESULT_COLUMNS
    assert list(table["group"]) == ["syst_a"]

    summary_md = (config.output_path / "summary.md").read_text(encoding="utf-8")
    assert "| syst_a | mu |" in summary_md


def test_nominal_state_restored_after_run(toy_workspace, make_config):
    before = toy_workspace.parameters.values()
    run_breakdown(make_config(group="syst_a"), workspace=toy_workspace)
    assert toy_workspace.parameters.values() == before


def test_missing_nuisance_set(toy_workspace, make_config):
    mc = toy_workspace.model_config("ModelConfig")
    toy_workspace.add_model_config(ModelConfig(
        name="ModelConfig", nll_function=mc.nll_function, pois=mc.pois,
        nuisances=None, global_observables=mc.global_observables,
    ))
    with pytest.raises(ConfigurationError):
        run_breakdown(make_config(), workspace=toy_workspace)


def test_missing_poi(toy_workspace, make_config):
    mc = toy_workspace.model_config("ModelConfig")
    toy_workspace.add_model_config(ModelConfig(
        name="ModelConfig", nll_function=mc.nll_function, pois=("sigma_missing",),
        nuisances=mc.nuisances, global_observables=mc.global_observables,
    ))
    with pytest.raises(ConfigurationError):
        run_breakdown(make_config(), workspace=toy_workspace)


def test_unknown_member_parameter(make_config, tmp_path: Path):
    doc = tmp_path / "bad_groups.xml"
    doc.write_text('<breakdown><syst_x><systematic name="alpha_missing"/></syst_x></breakdown>',
                   encoding="utf-8")
    with pytest.raises(ConfigurationError):
        run_breakdown(make_config(group="syst_x", group_file=str(doc)))


def test_total_bounds_every_group(make_config):
    orch = _prepared(make_config())
    total = orch.evaluate(BreakdownTask(group="total", tree=orch.tree))[0]
    for group in ("statistical", "syst_a", "syst_b"):
        record = orch.evaluate(BreakdownTask(group=group, tree=orch.tree))[0]
        assert record.ok
        assert record.up <= total.up
        assert record.down <= total.down


def _two_poi_nll(values, data):
    nll = 0.5 * ((data["x_a"] - values["a"] - 0.1 * values["p_a"]) / 0.1) ** 2
    nll += 0.5 * ((data["x_b"] - values["b"] - 0.1 * values["p_b"]) / 0.2) ** 2
    nll += 0.5 * (values["p_a"] - values["glob_p_a"]) ** 2
    nll += 0.5 * (values["p_b"] - values["glob_p_b"]) ** 2
    return nll


def _two_poi_workspace() -> Workspace:
    parameters = [
        Parameter("a", 1.0, -10.0, 10.0),
        Parameter("b", 1.0, -10.0, 10.0),
        Parameter("p_a", 0.0, -5.0, 5.0),
        Parameter("p_b", 0.0, -5.0, 5.0),
        Parameter("glob_p_a", 0.0, -5.0, 5.0, constant=True),
        Parameter("glob_p_b", 0.0, -5.0, 5.0, constant=True),
    ]
    ws = Workspace("combined", parameters, datasets={"obsData": {"x_a": 1.0, "x_b": 2.0}})
    ws.add_model_config(ModelConfig(
        name="ModelConfig",
        nll_function=_two_poi_nll,
        pois=("a", "b"),
        nuisances=("p_a", "p_b"),
        global_observables=("glob_p_a", "glob_p_b"),
    ))
    return ws


def test_every_poi_gets_its_own_interval(make_config):
    config = make_config(group="total")
    records = run_breakdown(config, workspace=_two_poi_workspace())

    assert [(r.group, r.poi) for r in records] == [("total", "a"), ("total", "b")]
    a, b = records
    assert a.hat == pytest.approx(1.0, abs=1e-3)
    assert b.hat == pytest.approx(2.0, abs=1e-3)
    assert a.up == pytest.approx(math.sqrt(0.02), abs=5e-3)
    assert a.down == pytest.approx(math.sqrt(0.02), abs=5e-3)
    assert b.up == pytest.approx(math.sqrt(0.05), abs=5e-3)
    assert b.down == pytest.approx(math.sqrt(0.05), abs=5e-3)

    table = pd.read_csv(config.output_path / "total.csv")
    assert list(table["poi"]) == ["a", "b"]


def test_correlation_cutoff_prunes_nuisances_in_run(make_config):
    # |corr(mu, p_i)| is 0.5 for every nuisance parameter of the toy model
    kept = run_breakdown(make_config(group="total", corr_cutoff=0.4, folder="kept"))[0]
    pruned = run_breakdown(make_config(group="total", corr_cutoff=0.6, folder="pruned"))[0]

    assert kept.up == pytest.approx(0.10, abs=5e-3)
    # Only the statistical resolution remains once p1..p3 are fixed
    assert pruned.up == pytest.approx(0.05, abs=5e-3)
    assert pruned.down == pytest.approx(0.05, abs=5e-3)


def test_dataset_snapshot_qualifier(toy_workspace, make_config):
    toy_workspace.set_value("glob_p1", 0.5)
    toy_workspace.save_snapshot("shifted_globs", names=("glob_p1",))
    toy_workspace.set_value("glob_p1", 0.0)

    records = run_breakdown(make_config(group="total", data_name="obsData,shifted_globs"),
                            workspace=toy_workspace)

    # p1 is pulled to 0.5, so mu moves by -0.05 * 0.5
    assert records[0].hat == pytest.approx(0.975, abs=1e-3)
    assert records[0].up == pytest.approx(0.10, abs=5e-3)


def test_dataset_snapshot_qualifier_missing_snapshot(toy_workspace, make_config, tmp_path: Path):
    with pytest.raises(ConfigurationError) as excinfo:
        run_breakdown(make_config(data_name="obsData,missing"), workspace=toy_workspace)
    assert excinfo.value.entity == "missing"
    assert not (tmp_path / "output").exists()


def test_missing_dataset(toy_workspace, make_config):
    with pytest.raises(ConfigurationError) as excinfo:
        run_breakdown(make_config(data_name="asimovData"), workspace=toy_workspace)
    assert excinfo.value.entity == "asimovData"


def test_missing_global_observables(toy_workspace, make_config):
    mc = toy_workspace.model_config("ModelConfig")
    toy_workspace.add_model_config(ModelConfig(
        name="ModelConfig", nll_function=mc.nll_function, pois=mc.pois,
        nuisances=mc.nuisances, global_observables=None,
    ))
    with pytest.raises(ConfigurationError):
        run_breakdown(make_config(), workspace=toy_workspace)
