"""
Breakdown techniques.

A technique decides which side of the fit a group's members land on:
"add" floats exactly the group (plus the statistical group), "sub" fixes
exactly the group and floats everything else.
"""

from dataclasses import dataclass
from typing import Dict

from .errors import ConfigurationError


@dataclass(frozen=True)
class Technique:
    """Freeze policy for a breakdown run."""
    name: str
    floats_members: bool  # members float, everything else starts fixed
    includes_statistical: bool  # statistical group joins every other group

    @property
    def baseline_constant(self) -> bool:
        """Constancy of a parameter that is not a group member."""
        return self.floats_members


ADDITIVE = Technique(name="add", floats_members=True, includes_statistical=True)
SUBTRACTIVE = Technique(name="sub", floats_members=False, includes_statistical=False)

TECHNIQUES: Dict[str, Technique] = {
    "add": ADDITIVE,
    "additive": ADDITIVE,
    "sub": SUBTRACTIVE,
    "subtractive": SUBTRACTIVE,
}


def get_technique(name: str) -> Technique:
    """Look up a technique by name (case-insensitive)."""
    key = name.strip().lower()
    if key not in TECHNIQUES:
        raise ConfigurationError(
            f"Unknown technique: {name!r} (expected one of {', '.join(sorted(TECHNIQUES))})",
            name,
        )
    return TECHNIQUES[key]
