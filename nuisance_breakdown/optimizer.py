"""
Local minimization of negative log-likelihoods.

Runs L-BFGS-B first and polishes with Powell from the L-BFGS-B end point when
L-BFGS-B does not report success. Parabolic errors and correlations come from
a central-difference Hessian at the minimum.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from .errors import NonConvergence

logger = logging.getLogger(__name__)

# =============================================================================
# OPTIMIZER SETTINGS
# =============================================================================
LBFGSB_OPTIONS = {'maxiter': 5000, 'ftol': 1e-13, 'gtol': 1e-8}
POWELL_OPTIONS = {'maxiter': 20000, 'xtol': 1e-9, 'ftol': 1e-13}
HESSIAN_STEP = 1e-4  # Relative step for finite differences


@dataclass
class OptimizerResult:
    """Outcome of a single minimization."""
    x: np.ndarray
    fun: float
    errors: Optional[np.ndarray] = None
    correlation: Optional[np.ndarray] = None


class _CountingObjective:
    """Wraps an objective and counts calls."""

    def __init__(self, func: Callable[[np.ndarray], float]):
        self.func = func
        self.n_calls = 0

    def __call__(self, x: np.ndarray) -> float:
        self.n_calls += 1
        return float(self.func(x))


def numerical_hessian(func: Callable[[np.ndarray], float], x: np.ndarray,
                      step: float = HESSIAN_STEP) -> np.ndarray:
    """Central-difference Hessian of func at x."""
    x = np.asarray(x, dtype=float)
    n = len(x)
    h = step * np.maximum(1.0, np.abs(x))
    hess = np.zeros((n, n))
    f0 = func(x)

    for i in range(n):
        xp = x.copy()
        xm = x.copy()
        xp[i] += h[i]
        xm[i] -= h[i]
        hess[i, i] = (func(xp) - 2.0 * f0 + func(xm)) / h[i] ** 2

        for j in range(i + 1, n):
            xpp = x.copy()
            xpm = x.copy()
            xmp = x.copy()
            xmm = x.copy()
            xpp[i] += h[i]
            xpp[j] += h[j]
            xpm[i] += h[i]
            xpm[j] -= h[j]
            xmp[i] -= h[i]
            xmp[j] += h[j]
            xmm[i] -= h[i]
            xmm[j] -= h[j]
            value = (func(xpp) - func(xpm) - func(xmp) + func(xmm)) / (4.0 * h[i] * h[j])
            hess[i, j] = value
            hess[j, i] = value

    return hess


def covariance_from_hessian(hess: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Invert the Hessian of an NLL.

    Returns: (covariance, errors, correlation). Entries that cannot be
    determined are NaN for errors and 0 for correlations.
    """
    n = hess.shape[0]
    if n == 0:
        empty = np.zeros((0, 0))
        return empty, np.zeros(0), empty

    if not np.all(np.isfinite(hess)):
        logger.warning("Hessian has non-finite entries, errors are undefined")
        return np.full((n, n), np.nan), np.full(n, np.nan), np.eye(n)

    try:
        cov = np.linalg.inv(hess)
    except np.linalg.LinAlgError:
        logger.warning("Hessian is singular, using pseudo-inverse")
        cov = np.linalg.pinv(hess)

    diag = np.diag(cov)
    if np.any(diag <= 0):
        logger.warning("Covariance matrix is not positive definite")
    errors = np.where(diag > 0, np.sqrt(np.abs(diag)), np.nan)

    corr = np.eye(n)
    for i in range(n):
        for j in range(n):
            if i != j and np.isfinite(errors[i]) and np.isfinite(errors[j]):
                corr[i, j] = np.clip(cov[i, j] / (errors[i] * errors[j]), -1.0, 1.0)
    return cov, errors, corr


def minimize_nll(objective: Callable[[np.ndarray], float], x0: Sequence[float],
                 bounds: List[Tuple[float, float]], hesse: bool = True,
                 label: str = "fit") -> OptimizerResult:
    """
    Minimize an NLL over the floating parameters.

    Args:
        objective: NLL as a function of the floating parameter vector
        x0: Starting point
        bounds: (lo, hi) per parameter, infinite bounds allowed
        hesse: Compute parabolic errors and correlations at the minimum
        label: Name used in log messages

    Raises:
        NonConvergence: if neither L-BFGS-B nor the Powell polish converges
    """
    counted = _CountingObjective(objective)
    x0 = np.clip(np.asarray(x0, dtype=float),
                 [b[0] for b in bounds], [b[1] for b in bounds])

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        result = minimize(counted, x0, method='L-BFGS-B', bounds=bounds,
                          options=LBFGSB_OPTIONS)
        method = 'L-BFGS-B'

        if not result.success or not np.isfinite(result.fun):
            logger.debug(f"{label}: L-BFGS-B did not converge ({result.message}), polishing with Powell")
            start = result.x if np.all(np.isfinite(result.x)) else x0
            result = minimize(counted, start, method='Powell', bounds=bounds,
                              options=POWELL_OPTIONS)
            method = 'Powell'

    if not result.success or not np.isfinite(result.fun):
        raise NonConvergence(
            f"{label}: minimization failed after {counted.n_calls} calls ({result.message})",
            label,
        )

    x_best = np.clip(result.x, [b[0] for b in bounds], [b[1] for b in bounds])
    fun = counted(x_best)

    logger.debug(f"{label}: {method} converged, nll = {fun:.6f}, {counted.n_calls} calls")

    out = OptimizerResult(x=x_best, fun=fun)
    if hesse:
        hess = numerical_hessian(counted, x_best)
        _, out.errors, out.correlation = covariance_from_hessian(hess)
    return out
