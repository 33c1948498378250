"""
Uncertainty breakdown driver.

Runs the unconditional fit once, then evaluates each requested group:
freeze or float its parameters, re-fit, and search the profile likelihood
for the +1 and -1 sigma boundaries of every POI. Groups marked as breakdown
targets spawn one evaluation per member parameter.

Steps:
    LOAD_MODEL   - Resolve workspace, model config, dataset and group document
    GLOBAL_FIT   - Unconditional fit, source of best-fit values and correlations
    FREEZE       - Set constancy for the group being evaluated
    REFIT        - Re-fit with the group's constancy (skipped for "total")
    SIGMA_UP     - Upper interval boundary per POI
    SIGMA_DOWN   - Lower interval boundary per POI
    RECORD       - Store one BreakdownRecord per POI
    WRITE_OUTPUT - Write per-group tables and the run summary
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Deque, Dict, List, Optional, Tuple

from .config import BreakdownConfig
from .errors import ConfigurationError, NonConvergence
from .freezer import apply_freeze, freeze_decisions
from .groups import (
    TOTAL_GROUP,
    ExpandedGroup,
    GroupExpander,
    GroupTree,
    check_members_exist,
    load_group_document,
    write_group_document,
)
from .model import FitResult, Likelihood, ModelConfig, Workspace
from .reporting import BreakdownRecord, ResultWriter, safe_filename
from .sigma import find_sigma
from .techniques import get_technique
from .workspace_loader import load_workspace

logger = logging.getLogger(__name__)

NOMINAL_SNAPSHOT = "nominal"
POST_FIT_SNAPSHOT = "post_global_fit"
GROUP_SNAPSHOT = "tmp_shot"
NOMINAL_NUIS_SNAPSHOT = "nominalNuis"


class BreakdownStep(Enum):
    """Orchestrator states in order."""
    LOAD_MODEL = "load_model"
    GLOBAL_FIT = "global_fit"
    FREEZE = "freeze"
    REFIT = "refit"
    SIGMA_UP = "sigma_up"
    SIGMA_DOWN = "sigma_down"
    RECORD = "record"
    WRITE_OUTPUT = "write_output"


@dataclass
class BreakdownTask:
    """One group evaluation, resolved against its own group document."""
    group: str
    tree: GroupTree
    expanded: Optional[ExpandedGroup] = None


class BreakdownOrchestrator:
    """
    Drives one breakdown run.

    The workspace is shared mutable state: every group evaluation starts from
    the post-fit snapshot and every sigma trial from the group snapshot.
    """

    def __init__(self, config: BreakdownConfig, workspace: Optional[Workspace] = None):
        self.config = config
        self.technique = get_technique(config.technique)
        self.workspace = workspace
        self.writer = ResultWriter(config.output_path)
        self.step: Optional[BreakdownStep] = None

        self.model_config: Optional[ModelConfig] = None
        self.dataset = None
        self.pois: Tuple[str, ...] = ()
        self.nuisances: Tuple[str, ...] = ()
        self.corr_poi = ""
        self.tree: Optional[GroupTree] = None

        self.nll: Optional[Likelihood] = None
        self.fit_result: Optional[FitResult] = None
        self.poi_hats: Dict[str, float] = {}

        self.records: List[BreakdownRecord] = []
        self.written: List[Path] = []

    def _enter(self, step: BreakdownStep):
        self.step = step
        logger.debug(f"Step: {step.value}")

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def load_model(self):
        """Resolve every input of the run. Any missing object is fatal."""
        self._enter(BreakdownStep.LOAD_MODEL)
        config = self.config

        if self.workspace is None:
            self.workspace = load_workspace(config.workspace_file, config.workspace_name)
        ws = self.workspace

        self.model_config = ws.model_config(config.model_config_name)

        data_name, _, snapshot = config.data_name.partition(",")
        if snapshot.strip():
            ws.load_snapshot(snapshot.strip())
        self.dataset = ws.data(data_name.strip())

        mc = self.model_config
        if not mc.pois:
            raise ConfigurationError("POI: doesn't exist!", config.model_config_name)
        for name in mc.pois:
            ws.var(name)
        self.pois = tuple(mc.pois)

        if mc.nuisances is None:
            raise ConfigurationError("Nuisance parameter set doesn't exist!", config.model_config_name)
        for name in mc.nuisances:
            ws.var(name)
        self.nuisances = tuple(mc.nuisances)

        if mc.global_observables is None:
            raise ConfigurationError("Global observables don't exist!", config.model_config_name)
        for name in mc.global_observables:
            ws.var(name)

        self.corr_poi = config.poi_name or self.pois[0]
        if self.corr_poi not in self.pois:
            raise ConfigurationError(
                f"POI: {self.corr_poi} is not a parameter of interest of {mc.name}", self.corr_poi
            )

        if ws.has_snapshot(NOMINAL_NUIS_SNAPSHOT):
            ws.load_snapshot(NOMINAL_NUIS_SNAPSHOT)
        else:
            logger.debug(f"No {NOMINAL_NUIS_SNAPSHOT} snapshot, using current parameter values")

        group_file = Path(config.group_file)
        if config.group == TOTAL_GROUP and not group_file.exists():
            logger.warning(f"Group document {group_file} not found, evaluating total only")
            self.tree = GroupTree(groups=())
        else:
            self.tree = load_group_document(group_file)

        logger.info(f"POIs: {', '.join(self.pois)}; {len(self.nuisances)} nuisance parameters")

    def expand(self, task: BreakdownTask) -> ExpandedGroup:
        """
        Members of the task's group under the run's technique. "total"
        covers every nuisance parameter regardless of the document.
        """
        if task.group == TOTAL_GROUP:
            members = self.nuisances if self.technique.floats_members else ()
            return ExpandedGroup(name=TOTAL_GROUP, members=tuple(members))

        expanded = GroupExpander(task.tree, self.technique).expand(task.group)
        source = str(task.tree.source) if task.tree.source else f"document for {task.group}"
        check_members_exist(expanded.members, self.nuisances, source)
        return expanded

    def global_fit(self) -> FitResult:
        """
        Unconditional fit with all POIs floating.

        Raises:
            NonConvergence: if the fit fails; the run cannot continue
        """
        self._enter(BreakdownStep.GLOBAL_FIT)
        ws = self.workspace
        config = self.config

        ws.save_snapshot(NOMINAL_SNAPSHOT)

        for name in self.model_config.global_observables:
            ws.set_constant(name, True)
        for poi in self.pois:
            ws.set_range(poi, -config.poi_range, config.poi_range)
            ws.set_constant(poi, False)
            ws.set_value(poi, config.poi_kick)  # kick off the nominal value

        self.nll = ws.create_nll(self.model_config, self.dataset, offset=True)
        result = self.nll.minimize(hesse=True, label="global fit")

        ws.save_snapshot(POST_FIT_SNAPSHOT)
        self.fit_result = result
        self.poi_hats = {poi: ws.var(poi).value for poi in self.pois}

        for poi in self.pois:
            logger.info(f"Global fit: {poi} = {self.poi_hats[poi]:.4f} +/- {result.errors.get(poi, float('nan')):.4f}")
        return result

    # -------------------------------------------------------------------------
    # Group evaluation
    # -------------------------------------------------------------------------

    def evaluate(self, task: BreakdownTask) -> List[BreakdownRecord]:
        """Uncertainty of every POI for one group. Fit failures become ERROR records."""
        ws = self.workspace
        config = self.config
        expanded = task.expanded or self.expand(task)
        start = time.perf_counter()

        ws.load_snapshot(POST_FIT_SNAPSHOT)

        self._enter(BreakdownStep.FREEZE)
        decisions = freeze_decisions(
            self.nuisances, self.technique, expanded.members,
            self.fit_result, self.corr_poi, config.corr_cutoff,
        )
        apply_freeze(ws, decisions)

        nll_baseline = self.fit_result.nll
        hats = dict(self.poi_hats)
        try:
            if task.group != TOTAL_GROUP:
                self._enter(BreakdownStep.REFIT)
                refit = self.nll.minimize(hesse=False, label=f"refit {task.group}")
                nll_baseline = refit.nll
                hats = {poi: ws.var(poi).value for poi in self.pois}
            ws.save_snapshot(GROUP_SNAPSHOT)
        except NonConvergence as e:
            logger.error(f"{task.group}: {e}")
            return [BreakdownRecord.failed(task.group, poi, hats[poi], str(e)) for poi in self.pois]

        records = []
        for poi in self.pois:
            try:
                self._enter(BreakdownStep.SIGMA_UP)
                up = find_sigma(ws, self.nll, nll_baseline, poi, hats[poi], +1,
                                snapshot=GROUP_SNAPSHOT, precision=config.precision,
                                initial_step=self.fit_result.errors.get(poi),
                                max_iter=config.max_iter)
                self._enter(BreakdownStep.SIGMA_DOWN)
                down = find_sigma(ws, self.nll, nll_baseline, poi, hats[poi], -1,
                                  snapshot=GROUP_SNAPSHOT, precision=config.precision,
                                  initial_step=self.fit_result.errors.get(poi),
                                  max_iter=config.max_iter)
                record = BreakdownRecord(group=task.group, poi=poi, hat=hats[poi],
                                         up=abs(up), down=abs(down))
                logger.info(f"{task.group} gives {poi} = {record.hat:.4f} "
                            f"+{record.up:.4f} / -{record.down:.4f}")
            except NonConvergence as e:
                logger.error(f"{task.group}: {e}")
                record = BreakdownRecord.failed(task.group, poi, hats[poi], str(e))

            self._enter(BreakdownStep.RECORD)
            records.append(record)

        logger.info(f"Evaluated {task.group} in {time.perf_counter() - start:.1f} s")
        return records

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self) -> List[BreakdownRecord]:
        """
        Evaluate the configured group and every breakdown it spawns.

        The requested group is resolved before any fit, so an unknown group
        fails without writing anything.
        """
        start = time.perf_counter()
        self.load_model()

        root = BreakdownTask(group=self.config.group, tree=self.tree)
        root.expanded = self.expand(root)

        self.global_fit()

        queue: Deque[BreakdownTask] = deque([root])
        while queue:
            task = queue.popleft()
            if task.expanded is None:
                task.expanded = self.expand(task)

            # Member breakdowns run right after their parent, in member order
            for sub_tree in reversed(task.expanded.subtasks):
                name = sub_tree.groups[0].name
                doc_path = self.writer.output_path / "groups" / f"tmp_{safe_filename(name)}.xml"
                write_group_document(sub_tree, doc_path)
                queue.appendleft(BreakdownTask(group=name, tree=sub_tree))

            records = self.evaluate(task)
            self.records.extend(records)
            self.written.append(self.writer.write_group(task.group, records))

        self._enter(BreakdownStep.WRITE_OUTPUT)
        self.written.extend(self.writer.write_summary(self.records, self.technique.name))

        self.workspace.load_snapshot(NOMINAL_SNAPSHOT)
        logger.info(f"Breakdown finished in {time.perf_counter() - start:.1f} s, "
                    f"results in {self.writer.output_path}")
        return self.records


def run_breakdown(config: BreakdownConfig, workspace: Optional[Workspace] = None) -> List[BreakdownRecord]:
    """
    Run a breakdown and persist its result tables.

    Args:
        config: Run settings
        workspace: Already loaded workspace; config.workspace_file is
                   ignored when given

    Raises:
        ConfigurationError: for missing or invalid inputs
        GroupNotFound: if the requested group cannot be resolved
        NonConvergence: if the unconditional fit fails
    """
    if workspace is not None and not config.workspace_file:
        config = config.updated(workspace_file=f"<{workspace.name}>")
    config.validate()
    return BreakdownOrchestrator(config, workspace=workspace).run()
