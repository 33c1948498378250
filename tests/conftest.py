from pathlib import Path

import pytest

from nuisance_breakdown.config import BreakdownConfig
from nuisance_breakdown.workspace_loader import load_workspace

REPO_ROOT = Path(__file__).resolve().parents[1]
TOY_WORKSPACE = REPO_ROOT / "examples" / "toy_workspace.py"

GROUPS_XML = """<?xml version="1.0" encoding="utf-8"?>
<breakdown description="test groups">
  <statistical description="statistical uncertainties" breakdown="no">
    <systematic name="p1"/>
  </statistical>
  <syst_a description="first group" breakdown="no">
    <systematic name="p2"/>
  </syst_a>
  <syst_b description="second group" breakdown="yes" aliases="b,second">
    <systematic name="p3"/>
  </syst_b>
  <total description="everything" breakdown="no"/>
</breakdown>
"""

GROUPS_YAML = """description: test groups
groups:
  statistical:
    members: [p1]
  syst_a:
    breakdown: no
    members: [p2]
  syst_b:
    breakdown: yes
    aliases: [b, second]
    members: [p3]
  total:
    members: []
"""


@pytest.fixture
def toy_workspace_path() -> Path:
    return TOY_WORKSPACE


@pytest.fixture
def toy_workspace():
    return load_workspace(str(TOY_WORKSPACE), "combined")


@pytest.fixture
def groups_xml(tmp_path: Path) -> Path:
    path = tmp_path / "breakdown.xml"
    path.write_text(GROUPS_XML, encoding="utf-8")
    return path


@pytest.fixture
def groups_yaml(tmp_path: Path) -> Path:
    path = tmp_path / "breakdown.yaml"
    path.write_text(GROUPS_YAML, encoding="utf-8")
    return path


@pytest.fixture
def make_config(tmp_path: Path, groups_xml: Path):
    def _make(**overrides) -> BreakdownConfig:
        base = BreakdownConfig(
            workspace_file=str(TOY_WORKSPACE),
            group_file=str(groups_xml),
            output_dir=str(tmp_path / "output"),
            folder="test",
        )
        return base.updated(**overrides)
    return _make
