"""
Command-line interface for the uncertainty breakdown.

Usage:
    python -m nuisance_breakdown -w workspace.py -x config/breakdown.xml -g total
    python -m nuisance_breakdown -c run.yaml --technique sub --group detector
"""

import argparse
import logging
import sys

from .config import BreakdownConfig, load_config
from .errors import BreakdownError, ConfigurationError, GroupNotFound, NonConvergence
from .orchestrator import run_breakdown


def setup_logging(level: str = "INFO"):
    """Configure logging for the package; third-party loggers stay at WARNING."""
    noisy_loggers = [
        'numexpr',
        'numexpr.utils',
    ]
    for logger_name in noisy_loggers:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger("nuisance_breakdown").setLevel(numeric)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nuisance_breakdown",
        description="Break down the uncertainty on the parameters of interest by groups of nuisance parameters",
    )
    parser.add_argument(
        "-c", "--config",
        type=str,
        help="YAML run configuration; flags below override it",
    )
    parser.add_argument(
        "-w", "--workspace",
        dest="workspace_file",
        type=str,
        help="Python file or module providing the workspace",
    )
    parser.add_argument(
        "--workspace-name",
        dest="workspace_name",
        type=str,
        help="Name of the workspace in the module (default: combined)",
    )
    parser.add_argument(
        "--model-config",
        dest="model_config_name",
        type=str,
        help="Name of the model config (default: ModelConfig)",
    )
    parser.add_argument(
        "-d", "--data",
        dest="data_name",
        type=str,
        help="Dataset name, optionally 'name,snapshot' (default: obsData)",
    )
    parser.add_argument(
        "-p", "--poi",
        dest="poi_name",
        type=str,
        help="POI used for correlation pruning (default: first POI)",
    )
    parser.add_argument(
        "-x", "--groups",
        dest="group_file",
        type=str,
        help="Group document, XML or YAML (default: config/breakdown.xml)",
    )
    parser.add_argument(
        "-t", "--technique",
        type=str,
        help="Float only the group ('add') or fix only the group ('sub'), case-insensitive",
    )
    parser.add_argument(
        "-g", "--group",
        type=str,
        help="Group to evaluate (default: total)",
    )
    parser.add_argument(
        "--precision",
        type=float,
        help="Accepted deviation of dNLL from 0.5 (default: 0.005)",
    )
    parser.add_argument(
        "--corr-cutoff",
        dest="corr_cutoff",
        type=float,
        help="Fix nuisance parameters with |corr| to the POI below this (default: 0)",
    )
    parser.add_argument(
        "-o", "--output-dir",
        dest="output_dir",
        type=str,
        help="Output directory (default: output)",
    )
    parser.add_argument(
        "-f", "--folder",
        type=str,
        help="Sub-folder of the output directory for this run",
    )
    parser.add_argument(
        "--poi-range",
        dest="poi_range",
        type=float,
        help="POIs float in [-range, range] (default: 10)",
    )
    parser.add_argument(
        "--poi-kick",
        dest="poi_kick",
        type=float,
        help="Starting value of the POIs in the global fit (default: 1.1)",
    )
    parser.add_argument(
        "--max-iter",
        dest="max_iter",
        type=int,
        help="Maximum number of trial fits per interval search",
    )
    parser.add_argument(
        "-l", "--loglevel",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser


OVERRIDE_KEYS = (
    "workspace_file",
    "workspace_name",
    "model_config_name",
    "data_name",
    "poi_name",
    "group_file",
    "technique",
    "group",
    "precision",
    "corr_cutoff",
    "output_dir",
    "folder",
    "poi_range",
    "poi_kick",
    "max_iter",
    "loglevel",
)


def resolve_config(args) -> BreakdownConfig:
    """Merge the YAML config (if any) with command-line overrides."""
    config = load_config(args.config) if args.config else BreakdownConfig()
    overrides = {key: getattr(args, key) for key in OVERRIDE_KEYS}
    return config.updated(**overrides)


def main(argv=None) -> int:
    """Main CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_config(args)
    except ConfigurationError as e:
        setup_logging()
        logging.getLogger(__name__).error(str(e))
        return 1

    setup_logging(config.loglevel)
    logger = logging.getLogger(__name__)

    try:
        records = run_breakdown(config)
    except GroupNotFound as e:
        logger.error(f"Group not found: {e}")
        return 1
    except NonConvergence as e:
        logger.error(f"Global fit failed: {e}")
        return 1
    except BreakdownError as e:
        logger.error(str(e))
        return 1

    n_failed = sum(1 for r in records if not r.ok)
    if n_failed:
        logger.warning(f"{n_failed} of {len(records)} results failed, see the result tables")
    return 0


if __name__ == "__main__":
    sys.exit(main())
