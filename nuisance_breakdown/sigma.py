"""
Profile-likelihood interval search.

Finds the POI displacement at which the profiled NLL rises by 0.5 above its
minimum, which is the 68% CL boundary for one parameter. Every trial point
starts from the same named snapshot, so the up and down searches do not see
each other's leftover parameter state.
"""

import logging
import math
from typing import Optional

from .errors import NonConvergence
from .model import Likelihood, Workspace

logger = logging.getLogger(__name__)

TARGET_DNLL = 0.5
DEFAULT_PRECISION = 0.005
DEFAULT_MAX_ITER = 100
DEFAULT_SNAPSHOT = "tmp_shot"


def profile_dnll(workspace: Workspace, nll: Likelihood, nll_baseline: float,
                 poi: str, value: float, snapshot: str = DEFAULT_SNAPSHOT) -> float:
    """NLL at poi = value, profiled over the floating parameters, minus the baseline."""
    workspace.load_snapshot(snapshot)
    workspace.set_value(poi, value)
    workspace.set_constant(poi, True)

    if workspace.parameters.floating():
        nll_val = nll.minimize(hesse=False, label=f"{poi}={value:.6g}").nll
    else:
        nll_val = nll.evaluate()
    return nll_val - nll_baseline


def _initial_step(workspace: Workspace, poi: str, initial_step: Optional[float]) -> float:
    if initial_step is not None and math.isfinite(initial_step) and initial_step > 0:
        return float(initial_step)
    param = workspace.var(poi)
    if math.isfinite(param.hi - param.lo):
        return 0.1 * (param.hi - param.lo)
    return 1.0


def find_sigma(workspace: Workspace, nll: Likelihood, nll_baseline: float,
               poi: str, poi_hat: float, direction: int,
               snapshot: str = DEFAULT_SNAPSHOT,
               precision: float = DEFAULT_PRECISION,
               initial_step: Optional[float] = None,
               max_iter: int = DEFAULT_MAX_ITER) -> float:
    """
    Signed displacement of poi from poi_hat where the profiled NLL is
    nll_baseline + 0.5.

    Args:
        workspace: Parameter owner; restored from snapshot before every trial
        nll: Likelihood to re-minimize at each trial point
        nll_baseline: NLL at the minimum (same offset as nll)
        poi: Parameter of interest
        poi_hat: Best-fit value of poi
        direction: +1 for the upper, -1 for the lower interval boundary
        snapshot: Snapshot holding the minimum and the group's constancy flags
        precision: Accepted |dNLL - 0.5|
        initial_step: First trial displacement (default: 10% of the poi range)
        max_iter: Maximum number of trial fits

    Raises:
        NonConvergence: if max_iter trials are exhausted, a trial fit fails,
                        or the boundary lies outside the poi range
    """
    if direction not in (1, -1):
        raise ValueError(f"direction must be +1 or -1, got {direction}")

    workspace.load_snapshot(snapshot)
    param = workspace.var(poi)
    limit = (param.hi - poi_hat) if direction > 0 else (poi_hat - param.lo)
    step = _initial_step(workspace, poi, initial_step)
    n_trials = 0

    def trial(delta: float) -> float:
        nonlocal n_trials
        n_trials += 1
        if n_trials > max_iter:
            raise NonConvergence(
                f"Sigma search for {poi} (direction {direction:+d}) did not converge in {max_iter} trials",
                poi,
            )
        dnll = profile_dnll(workspace, nll, nll_baseline, poi, poi_hat + direction * delta, snapshot)
        if dnll < 0:
            logger.warning(f"{poi}: found a lower minimum at delta = {direction * delta:+.6g} "
                           f"(dNLL = {dnll:.6g})")
            dnll = 0.0
        logger.debug(f"{poi}: delta = {direction * delta:+.6g}, dNLL = {dnll:.6f}")
        return dnll

    def converged(dnll: float) -> bool:
        return abs(dnll - TARGET_DNLL) <= precision

    try:
        # Bracket: [inner, outer] with dNLL(inner) < 0.5 <= dNLL(outer)
        inner, f_inner = 0.0, 0.0
        outer = min(step, limit)
        f_outer = trial(outer)
        while f_outer < TARGET_DNLL:
            if converged(f_outer):
                return direction * outer
            if outer >= limit:
                raise NonConvergence(
                    f"Sigma search for {poi} (direction {direction:+d}) reached the parameter "
                    f"boundary at {poi_hat + direction * limit:.6g} with dNLL = {f_outer:.4f}",
                    poi,
                )
            inner, f_inner = outer, f_outer
            outer = min(2.0 * outer, limit)
            f_outer = trial(outer)

        if converged(f_outer):
            return direction * outer

        # Interpolate on sqrt(2 dNLL) - 1, which is linear in delta for a parabolic NLL
        last_side = None
        repeats = 0
        while True:
            g_inner = math.sqrt(2.0 * f_inner) - 1.0
            g_outer = math.sqrt(2.0 * f_outer) - 1.0
            candidate = inner - g_inner * (outer - inner) / (g_outer - g_inner)
            if repeats >= 2 or not inner < candidate < outer:
                candidate = 0.5 * (inner + outer)
                repeats = 0

            f_candidate = trial(candidate)
            if converged(f_candidate):
                return direction * candidate

            side = "inner" if f_candidate < TARGET_DNLL else "outer"
            if side == "inner":
                inner, f_inner = candidate, f_candidate
            else:
                outer, f_outer = candidate, f_candidate
            repeats = repeats + 1 if side == last_side else 0
            last_side = side
    finally:
        workspace.load_snapshot(snapshot)
