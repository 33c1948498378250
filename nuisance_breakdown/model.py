"""
Parameter workspace, snapshots and likelihood.

A Workspace owns the parameters of a statistical model together with its
datasets, model configurations and named snapshots. A Likelihood binds a
ModelConfig to a dataset; it reads and writes parameter state through the
workspace and is the only object that runs fits.
"""

import logging
import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

import numpy as np

from .errors import ConfigurationError
from .optimizer import minimize_nll

logger = logging.getLogger(__name__)


@dataclass
class Parameter:
    """A model parameter with its allowed range and constancy flag."""
    name: str
    value: float
    lo: float = -math.inf
    hi: float = math.inf
    constant: bool = False
    error: float = 0.0


class ParameterSet:
    """Ordered name -> Parameter mapping."""

    def __init__(self, parameters: Iterable[Parameter] = ()):
        self._params: "OrderedDict[str, Parameter]" = OrderedDict()
        for param in parameters:
            self.add(param)

    def add(self, param: Parameter):
        if param.name in self._params:
            raise ConfigurationError(f"Duplicate parameter: {param.name}", param.name)
        if not param.lo < param.hi:
            raise ConfigurationError(
                f"Parameter {param.name} has empty range ({param.lo}, {param.hi})", param.name
            )
        self._params[param.name] = param

    def __contains__(self, name: str) -> bool:
        return name in self._params

    def __getitem__(self, name: str) -> Parameter:
        try:
            return self._params[name]
        except KeyError:
            raise ConfigurationError(f"Parameter: {name} doesn't exist!", name) from None

    def __iter__(self) -> Iterator[Parameter]:
        return iter(self._params.values())

    def __len__(self) -> int:
        return len(self._params)

    def names(self) -> Tuple[str, ...]:
        return tuple(self._params)

    def values(self) -> Dict[str, float]:
        """Current values of all parameters."""
        return {name: p.value for name, p in self._params.items()}

    def floating(self) -> List[str]:
        """Names of non-constant parameters, in insertion order."""
        return [name for name, p in self._params.items() if not p.constant]


@dataclass(frozen=True)
class FitSnapshot:
    """Named capture of parameter values, ranges and constancy."""
    name: str
    entries: Tuple[Tuple[str, float, float, float, bool], ...]

    @classmethod
    def capture(cls, name: str, params: ParameterSet,
                names: Optional[Iterable[str]] = None) -> "FitSnapshot":
        selected = params.names() if names is None else tuple(names)
        entries = tuple(
            (n, params[n].value, params[n].lo, params[n].hi, params[n].constant)
            for n in selected
        )
        return cls(name=name, entries=entries)

    def restore(self, params: ParameterSet):
        for name, value, lo, hi, constant in self.entries:
            param = params[name]
            param.value = value
            param.lo = lo
            param.hi = hi
            param.constant = constant

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(entry[0] for entry in self.entries)


@dataclass(frozen=True)
class FitResult:
    """
    Result of a minimization.

    correlation_matrix is indexed by `floating`. Parameters held constant
    during the fit have zero correlation with everything else.
    """
    nll: float
    values: Dict[str, float]
    errors: Dict[str, float]
    floating: Tuple[str, ...]
    correlation_matrix: np.ndarray

    def correlation(self, name_a: str, name_b: str) -> float:
        if name_a not in self.floating or name_b not in self.floating:
            return 0.0
        if name_a == name_b:
            return 1.0
        i = self.floating.index(name_a)
        j = self.floating.index(name_b)
        return float(self.correlation_matrix[i, j])


@dataclass
class ModelConfig:
    """
    Statistical model description.

    nll_function receives the current values of all workspace parameters
    and the dataset, and returns the negative log-likelihood including its
    constraint terms. A missing nuisance or global-observable set is None.
    """
    name: str
    nll_function: Callable[[Dict[str, float], Any], float]
    pois: Tuple[str, ...] = ()
    nuisances: Optional[Tuple[str, ...]] = None
    global_observables: Optional[Tuple[str, ...]] = None


class Workspace:
    """
    Container for parameters, datasets, model configurations and snapshots.

    All parameter mutation made by the breakdown goes through the methods of
    this class.
    """

    def __init__(self, name: str, parameters: Iterable[Parameter] = (),
                 datasets: Optional[Dict[str, Any]] = None,
                 model_configs: Iterable[ModelConfig] = ()):
        self.name = name
        self.parameters = ParameterSet(parameters)
        self._datasets: Dict[str, Any] = dict(datasets or {})
        self._model_configs: Dict[str, ModelConfig] = {}
        self._snapshots: Dict[str, FitSnapshot] = {}
        for mc in model_configs:
            self.add_model_config(mc)

    def add_model_config(self, mc: ModelConfig):
        self._model_configs[mc.name] = mc

    def model_config(self, name: str) -> ModelConfig:
        if name not in self._model_configs:
            raise ConfigurationError(f"ModelConfig: {name} doesn't exist!", name)
        return self._model_configs[name]

    def data(self, name: str) -> Any:
        if name not in self._datasets:
            raise ConfigurationError(f"Dataset: {name} doesn't exist!", name)
        return self._datasets[name]

    # -------------------------------------------------------------------------
    # Parameter access
    # -------------------------------------------------------------------------

    def var(self, name: str) -> Parameter:
        return self.parameters[name]

    def set_constant(self, name: str, constant: bool = True):
        self.parameters[name].constant = bool(constant)

    def set_value(self, name: str, value: float):
        """Set a value, clipped to the parameter range."""
        param = self.parameters[name]
        param.value = float(min(max(value, param.lo), param.hi))

    def set_range(self, name: str, lo: float, hi: float):
        if not lo < hi:
            raise ConfigurationError(f"Empty range ({lo}, {hi}) for {name}", name)
        param = self.parameters[name]
        param.lo = float(lo)
        param.hi = float(hi)
        param.value = float(min(max(param.value, param.lo), param.hi))

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def save_snapshot(self, name: str, names: Optional[Iterable[str]] = None) -> FitSnapshot:
        snapshot = FitSnapshot.capture(name, self.parameters, names)
        self._snapshots[name] = snapshot
        logger.debug(f"Saved snapshot {name} ({len(snapshot.entries)} parameters)")
        return snapshot

    def has_snapshot(self, name: str) -> bool:
        return name in self._snapshots

    def load_snapshot(self, name: str):
        if name not in self._snapshots:
            raise ConfigurationError(f"Snapshot: {name} doesn't exist!", name)
        self._snapshots[name].restore(self.parameters)

    # -------------------------------------------------------------------------
    # Likelihood
    # -------------------------------------------------------------------------

    def create_nll(self, mc: ModelConfig, dataset: Any, offset: bool = True) -> "Likelihood":
        return Likelihood(self, mc, dataset, offset=offset)


class Likelihood:
    """
    Negative log-likelihood of a model config on a dataset.

    With offset=True the value at construction time is subtracted, which
    keeps NLL differences well away from the float precision limit.
    """

    def __init__(self, workspace: Workspace, mc: ModelConfig, dataset: Any, offset: bool = True):
        self.workspace = workspace
        self.model_config = mc
        self.dataset = dataset
        self.offset = 0.0
        if offset:
            initial = self._raw(workspace.parameters.values())
            if not np.isfinite(initial):
                raise ConfigurationError(
                    f"NLL of {mc.name} is not finite at the starting point", mc.name
                )
            self.offset = initial

    def _raw(self, values: Dict[str, float]) -> float:
        return float(self.model_config.nll_function(values, self.dataset))

    def evaluate(self) -> float:
        return self._raw(self.workspace.parameters.values()) - self.offset

    def minimize(self, hesse: bool = True, label: str = "fit") -> FitResult:
        """
        Minimize over all non-constant parameters and write the best-fit
        values back into the workspace.

        Raises:
            NonConvergence: if the optimizer fails
        """
        params = self.workspace.parameters
        floating = params.floating()
        base = params.values()

        if not floating:
            nll = self.evaluate()
            return FitResult(nll=nll, values=base, errors={}, floating=(),
                             correlation_matrix=np.zeros((0, 0)))

        def objective(x: np.ndarray) -> float:
            values = dict(base)
            values.update(zip(floating, x))
            return self._raw(values) - self.offset

        x0 = [params[n].value for n in floating]
        bounds = [(params[n].lo, params[n].hi) for n in floating]
        result = minimize_nll(objective, x0, bounds, hesse=hesse, label=label)

        errors: Dict[str, float] = {}
        for i, name in enumerate(floating):
            params[name].value = float(result.x[i])
            if result.errors is not None:
                params[name].error = float(result.errors[i])
                errors[name] = float(result.errors[i])

        if result.correlation is not None:
            corr = result.correlation
        else:
            corr = np.eye(len(floating))

        return FitResult(
            nll=result.fun,
            values=params.values(),
            errors=errors,
            floating=tuple(floating),
            correlation_matrix=corr,
        )
