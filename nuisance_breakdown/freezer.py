"""
Decide which nuisance parameters float in a group's fit.

Decisions are computed over an immutable tuple of names first and applied to
the workspace as one batch afterwards.
"""

import logging
from typing import Dict, Iterable

from .model import FitResult, Workspace
from .techniques import Technique

logger = logging.getLogger(__name__)


def freeze_decisions(nuisance_names: Iterable[str], technique: Technique,
                     members: Iterable[str], fit_result: FitResult,
                     poi: str, corr_cutoff: float = 0.0) -> Dict[str, bool]:
    """
    Constancy per nuisance parameter (True = held constant).

    Args:
        nuisance_names: All nuisance parameters of the model
        technique: Sets the constancy of non-members; members get the opposite
        members: Parameters of the evaluated group
        fit_result: Unconditional fit providing correlations with the POI
        poi: Parameter of interest used for correlation pruning
        corr_cutoff: Parameters with |corr(p, poi)| below this are held
                     constant regardless of group membership; 0 disables

    Returns:
        Dict name -> constant, in nuisance order
    """
    names = tuple(nuisance_names)
    member_set = frozenset(members)
    decisions: Dict[str, bool] = {}

    for name in names:
        constant = technique.baseline_constant
        if name in member_set:
            logger.debug(f"Found {name}")
            constant = not constant

        correlation = fit_result.correlation(name, poi)
        logger.debug(f"Correlation between poi and {name} is {correlation:.4f}")

        if abs(correlation) < corr_cutoff:
            logger.debug(f"Setting {name} constant because it's not correlated to the POI.")
            constant = True

        logger.debug(f"{name} is constant -> {constant}")
        decisions[name] = constant

    return decisions


def apply_freeze(workspace: Workspace, decisions: Dict[str, bool]):
    """Set constancy flags. Values are not touched."""
    for name, constant in decisions.items():
        workspace.set_constant(name, constant)

    n_float = sum(1 for c in decisions.values() if not c)
    logger.info(f"Floating {n_float} of {len(decisions)} nuisance parameters")
