"""
Group documents and group expansion.

A group document names groups of nuisance parameters. Two formats are read:

XML:
    <breakdown description="...">
      <statistical description="..." breakdown="no">
        <systematic name="gamma_stat_bin1"/>
      </statistical>
      <detector breakdown="yes" aliases="det">
        <systematic name="alpha_JES"/>
      </detector>
      <group name="2017_lumi">
        <systematic name="2017_lumi"/>
      </group>
    </breakdown>

YAML:
    description: ...
    groups:
      statistical:
        members: [gamma_stat_bin1]
      detector:
        breakdown: yes
        aliases: [det]
        members: [alpha_JES]

Expanding a group yields its flat member list and, for breakdown targets,
one synthesized single-member document per member to be evaluated on its own.
"""

import logging
import re
import xml.etree.ElementTree as ET
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import yaml

from .errors import ConfigurationError, GroupNotFound
from .techniques import Technique

logger = logging.getLogger(__name__)

STATISTICAL_GROUP = "statistical"
TOTAL_GROUP = "total"

# Group names usable as element tags; anything else is written as <group name="...">
_XML_NAME = re.compile(r"^[A-Za-z_][\w.\-]*$")


@dataclass(frozen=True)
class Group:
    """A named group of parameters."""
    name: str
    members: Tuple[str, ...] = ()
    is_breakdown_target: bool = False
    aliases: Tuple[str, ...] = ()
    description: str = ""

    def matches(self, name: str) -> bool:
        return name == self.name or name in self.aliases


@dataclass(frozen=True)
class GroupTree:
    """Top-level groups of one document, in document order."""
    groups: Tuple[Group, ...]
    description: str = ""
    source: Optional[Path] = None

    def names(self) -> Tuple[str, ...]:
        return tuple(g.name for g in self.groups)

    def find(self, name: str) -> Group:
        """Exact lookup by name or alias."""
        matches = [g for g in self.groups if g.matches(name)]
        if not matches:
            raise GroupNotFound(
                f"Group {name!r} not found in {self.source or 'group document'} "
                f"(available: {', '.join(self.names()) or 'none'})",
                name,
            )
        if len(matches) > 1:
            raise GroupNotFound(
                f"Group {name!r} is ambiguous: matches {', '.join(g.name for g in matches)}",
                name,
            )
        return matches[0]

    def get(self, name: str) -> Optional[Group]:
        for g in self.groups:
            if g.name == name:
                return g
        return None


@dataclass
class ExpandedGroup:
    """Flat member list of a group and the evaluations it spawns."""
    name: str
    members: Tuple[str, ...]
    subtasks: List[GroupTree] = field(default_factory=list)


# ============================================================================
# PARSING
# ============================================================================

def _is_yes(value) -> bool:
    if isinstance(value, bool):
        return value
    return "yes" in str(value).lower() or str(value).lower() == "true"


def _split_aliases(value) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = [str(v) for v in value]
    return tuple(a.strip() for a in items if a.strip())


def _check_unique(groups: List[Group], source: Path):
    seen = set()
    for g in groups:
        for key in (g.name,) + g.aliases:
            if key in seen:
                raise ConfigurationError(f"Duplicate group name or alias {key!r} in {source}", key)
            seen.add(key)


def parse_xml_document(path: Path) -> GroupTree:
    """Parse an XML group document."""
    try:
        root = ET.parse(str(path)).getroot()
    except ET.ParseError as e:
        raise ConfigurationError(f"XML {path} is malformed: {e}", str(path)) from e

    groups = []
    for category in root:
        members = []
        for systematic in category:
            # Every attribute value of a member element is a parameter name
            members.extend(v.strip() for v in systematic.attrib.values() if v.strip())
        groups.append(Group(
            name=category.get("name", category.tag),
            members=tuple(members),
            is_breakdown_target=_is_yes(category.get("breakdown", "no")),
            aliases=_split_aliases(category.get("aliases")),
            description=category.get("description", ""),
        ))

    _check_unique(groups, path)
    return GroupTree(groups=tuple(groups), description=root.get("description", ""), source=path)


def parse_yaml_document(path: Path) -> GroupTree:
    """Parse a YAML group document."""
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"YAML {path} is malformed: {e}", str(path)) from e

    if not isinstance(data, dict) or not isinstance(data.get("groups"), dict):
        raise ConfigurationError(f"YAML {path} must contain a 'groups' mapping", str(path))

    groups = []
    for name, spec in data["groups"].items():
        spec = spec or {}
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Group {name!r} in {path} must be a mapping", str(name))
        members = spec.get("members") or []
        if not isinstance(members, list):
            raise ConfigurationError(f"Group {name!r}: members must be a list", str(name))
        groups.append(Group(
            name=str(name),
            members=tuple(str(m) for m in members),
            is_breakdown_target=_is_yes(spec.get("breakdown", False)),
            aliases=_split_aliases(spec.get("aliases")),
            description=str(spec.get("description", "")),
        ))

    _check_unique(groups, path)
    return GroupTree(groups=tuple(groups), description=str(data.get("description", "")), source=path)


def load_group_document(path) -> GroupTree:
    """Load a group document, choosing the parser from the file suffix."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Group document {path} doesn't exist!", str(path))

    suffix = path.suffix.lower()
    if suffix == ".xml":
        tree = parse_xml_document(path)
    elif suffix in (".yaml", ".yml"):
        tree = parse_yaml_document(path)
    else:
        raise ConfigurationError(f"Unsupported group document format: {path}", str(path))

    logger.debug(f"Loaded {len(tree.groups)} groups from {path}: {', '.join(tree.names())}")
    return tree


def single_member_document(member: str, parent: GroupTree) -> GroupTree:
    """
    Document for evaluating one parameter on its own: the parameter as its
    only group, plus the parent's statistical group.
    """
    stat = parent.get(STATISTICAL_GROUP)
    return GroupTree(
        groups=(
            Group(name=member, members=(member,), description=member),
            Group(name=STATISTICAL_GROUP,
                  members=stat.members if stat else (),
                  description="statistical uncertainties"),
        ),
        description="map of tmp uncertainties",
    )


def write_group_document(tree: GroupTree, path) -> Path:
    """Write a group tree as an XML group document."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    root = ET.Element("breakdown", {"description": tree.description})
    for group in tree.groups:
        attrs = {
            "description": group.description,
            "breakdown": "yes" if group.is_breakdown_target else "no",
        }
        if group.aliases:
            attrs["aliases"] = ",".join(group.aliases)
        if _XML_NAME.match(group.name):
            node = ET.SubElement(root, group.name, attrs)
        else:
            node = ET.SubElement(root, "group", dict(attrs, name=group.name))
        for member in group.members:
            ET.SubElement(node, "systematic", {"name": member})

    ET.ElementTree(root).write(str(path), encoding="utf-8", xml_declaration=True)
    return path


# ============================================================================
# EXPANSION
# ============================================================================

class GroupExpander:
    """Resolves group names into parameter lists for one technique."""

    def __init__(self, tree: GroupTree, technique: Technique):
        self.tree = tree
        self.technique = technique

    def _statistical_members(self) -> Tuple[str, ...]:
        stat = self.tree.get(STATISTICAL_GROUP)
        if stat is None:
            logger.debug("No statistical group in document, nothing to add")
            return ()
        return stat.members

    def expand(self, group_name: str) -> ExpandedGroup:
        """
        Flat member list for group_name.

        Raises:
            GroupNotFound: if the group is unknown, ambiguous or has no members
        """
        group = self.tree.find(group_name)

        members: "OrderedDict[str, None]" = OrderedDict()
        if self.technique.includes_statistical and group.name != STATISTICAL_GROUP:
            logger.debug("Adding statistical parameters")
            for m in self._statistical_members():
                members[m] = None

        subtasks = []
        scheduled = set()
        for m in group.members:
            members[m] = None
            if group.is_breakdown_target and m not in scheduled:
                logger.info(f"Doing breakdown: {m}")
                subtasks.append(single_member_document(m, self.tree))
                scheduled.add(m)

        if not members:
            raise GroupNotFound(f"Group {group.name!r} has no parameters", group.name)

        return ExpandedGroup(name=group.name, members=tuple(members), subtasks=subtasks)


def check_members_exist(names: Iterable[str], known: Iterable[str], source: str = "group document"):
    """Raise ConfigurationError for the first name not in known."""
    known = set(known)
    for name in names:
        if name not in known:
            raise ConfigurationError(
                f"Parameter {name!r} referenced in {source} is not a nuisance parameter of the model",
                name,
            )
