import numpy as np

from nuisance_breakdown.freezer import apply_freeze, freeze_decisions
from nuisance_breakdown.model import FitResult
from nuisance_breakdown.techniques import ADDITIVE, SUBTRACTIVE

NUISANCES = ("p1", "p2", "p3")


def _fit_result(corr_p1=-0.5, corr_p2=-0.2, corr_p3=-0.05) -> FitResult:
    floating = ("mu",) + NUISANCES
    corr = np.eye(4)
    for i, value in enumerate((corr_p1, corr_p2, corr_p3), start=1):
        corr[0, i] = value
        corr[i, 0] = value
    return FitResult(
        nll=0.0,
        values={name: 0.0 for name in floating},
        errors={name: 1.0 for name in floating},
        floating=floating,
        correlation_matrix=corr,
    )


def test_add_floats_only_members():
    decisions = freeze_decisions(NUISANCES, ADDITIVE, ["p2"], _fit_result(), "mu")
    assert decisions == {"p1": True, "p2": False, "p3": True}


def test_sub_fixes_only_members():
    decisions = freeze_decisions(NUISANCES, SUBTRACTIVE, ["p2"], _fit_result(), "mu")
    assert decisions == {"p1": False, "p2": True, "p3": False}


def test_add_and_sub_are_complements_without_pruning():
    result = _fit_result()
    for members in ([], ["p1"], ["p1", "p3"], list(NUISANCES)):
        add = freeze_decisions(NUISANCES, ADDITIVE, members, result, "mu")
        sub = freeze_decisions(NUISANCES, SUBTRACTIVE, members, result, "mu")
        assert all(add[name] != sub[name] for name in NUISANCES)


def test_correlation_pruning_overrides_membership():
    decisions = freeze_decisions(NUISANCES, SUBTRACTIVE, [], _fit_result(), "mu", corr_cutoff=0.1)
    assert decisions == {"p1": False, "p2": False, "p3": True}

    # Pruning also fixes members
    decisions = freeze_decisions(NUISANCES, ADDITIVE, ["p3"], _fit_result(), "mu", corr_cutoff=0.1)
    assert decisions["p3"] is True


def test_raising_cutoff_never_floats_more():
    result = _fit_result()
    previous = None
    for cutoff in (0.0, 0.01, 0.1, 0.3, 0.6, 1.0):
        decisions = freeze_decisions(NUISANCES, SUBTRACTIVE, [], result, "mu", corr_cutoff=cutoff)
        floating = {name for name, constant in decisions.items() if not constant}
        if previous is not None:
            assert floating <= previous
        previous = floating
    assert previous == set()


def test_parameter_fixed_in_global_fit_has_zero_correlation():
    result = FitResult(
        nll=0.0,
        values={"mu": 1.0, "p1": 0.0},
        errors={"mu": 0.1, "p1": 1.0},
        floating=("mu", "p1"),
        correlation_matrix=np.array([[1.0, -0.5], [-0.5, 1.0]]),
    )
    decisions = freeze_decisions(("p1", "p2"), SUBTRACTIVE, [], result, "mu", corr_cutoff=0.01)
    assert decisions == {"p1": False, "p2": True}


def test_apply_freeze_leaves_values_untouched(toy_workspace):
    toy_workspace.set_value("p1", 0.3)
    toy_workspace.set_value("p2", -0.7)
    before = toy_workspace.parameters.values()

    apply_freeze(toy_workspace, {"p1": True, "p2": False, "p3": True})

    assert toy_workspace.parameters.values() == before
    assert toy_workspace.var("p1").constant
    assert not toy_workspace.var("p2").constant
    assert toy_workspace.var("p3").constant
