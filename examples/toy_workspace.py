"""
Toy counting measurement with three constrained nuisance parameters.

The measured value x = 1.0 has a statistical resolution of 0.05 and each
nuisance parameter shifts the prediction by 0.05 per unit. With every
parameter floating the POI uncertainty is sqrt(4 * 0.05**2) = 0.10.

    python -m nuisance_breakdown -w examples/toy_workspace.py -x config/breakdown.xml -g total
"""

import math

from nuisance_breakdown.model import ModelConfig, Parameter, Workspace

STAT_RESOLUTION = 0.05
IMPACTS = {
    "p1": 0.05,
    "p2": 0.05,
    "p3": 0.05,
}


def toy_nll(values, data):
    """Gaussian measurement of mu plus unit-Gaussian constraints on the nuisance parameters."""
    prediction = values["mu"] + sum(impact * values[name] for name, impact in IMPACTS.items())
    nll = 0.5 * ((data["x"] - prediction) / STAT_RESOLUTION) ** 2
    for name in IMPACTS:
        nll += 0.5 * (values[name] - values[f"glob_{name}"]) ** 2
    return nll + 0.5 * math.log(2 * math.pi)


def combined():
    parameters = [Parameter("mu", 1.0, -10.0, 10.0)]
    for name in IMPACTS:
        parameters.append(Parameter(name, 0.0, -5.0, 5.0))
    for name in IMPACTS:
        parameters.append(Parameter(f"glob_{name}", 0.0, -5.0, 5.0, constant=True))

    ws = Workspace("combined", parameters, datasets={"obsData": {"x": 1.0}})
    ws.add_model_config(ModelConfig(
        name="ModelConfig",
        nll_function=toy_nll,
        pois=("mu",),
        nuisances=tuple(IMPACTS),
        global_observables=tuple(f"glob_{name}" for name in IMPACTS),
    ))
    ws.save_snapshot("nominalNuis", names=tuple(IMPACTS))
    return ws
