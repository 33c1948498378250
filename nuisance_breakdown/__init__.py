"""
Nuisance Breakdown - Uncertainty decomposition by groups of nuisance parameters.

This package provides tools for:
- Reading group documents (XML or YAML) that name groups of nuisance parameters
- Fixing or floating each group in turn ("sub" / "add" techniques)
- Profile-likelihood interval searches for every parameter of interest
- Writing one result table per evaluated group

Usage:
    python -m nuisance_breakdown -w workspace.py -x config/breakdown.xml -g total
    python -m nuisance_breakdown -w workspace.py -t add -g detector
"""

__version__ = "0.1.0"

from .config import BreakdownConfig, load_config
from .errors import BreakdownError, ConfigurationError, GroupNotFound, NonConvergence
from .groups import Group, GroupExpander, GroupTree, load_group_document
from .model import FitResult, FitSnapshot, ModelConfig, Parameter, Workspace
from .orchestrator import BreakdownOrchestrator, run_breakdown
from .reporting import BreakdownRecord
from .sigma import find_sigma

__all__ = [
    "BreakdownConfig",
    "load_config",
    "BreakdownError",
    "ConfigurationError",
    "GroupNotFound",
    "NonConvergence",
    "Group",
    "GroupExpander",
    "GroupTree",
    "load_group_document",
    "FitResult",
    "FitSnapshot",
    "ModelConfig",
    "Parameter",
    "Workspace",
    "BreakdownOrchestrator",
    "run_breakdown",
    "BreakdownRecord",
    "find_sigma",
]
