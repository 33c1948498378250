"""
Breakdown records and their persistence.

One CSV table per evaluated group, plus a run summary in CSV and Markdown.
"""

import math
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Sequence

import pandas as pd

RESULT_COLUMNS = [
    "group",
    "poi",
    "hat",
    "up",
    "down",
    "status",
    "message",
]

STATUS_OK = "OK"
STATUS_ERROR = "ERROR"


@dataclass(frozen=True)
class BreakdownRecord:
    """Uncertainty on one POI from one group. up and down are magnitudes."""
    group: str
    poi: str
    hat: float
    up: float
    down: float
    status: str = STATUS_OK
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK

    @classmethod
    def failed(cls, group: str, poi: str, hat: float, message: str) -> "BreakdownRecord":
        return cls(group=group, poi=poi, hat=hat, up=math.nan, down=math.nan,
                   status=STATUS_ERROR, message=message)

    def to_dict(self) -> Dict:
        return asdict(self)


def safe_filename(name: str) -> str:
    return re.sub(r"[^\w.\-]", "_", name)


def records_frame(records: Sequence[BreakdownRecord]) -> pd.DataFrame:
    return pd.DataFrame([r.to_dict() for r in records], columns=RESULT_COLUMNS)


class ResultWriter:
    """Writes result tables below one output directory."""

    def __init__(self, output_path: Path):
        self.output_path = Path(output_path)

    def group_path(self, group: str) -> Path:
        return self.output_path / f"{safe_filename(group)}.csv"

    def write_group(self, group: str, records: Sequence[BreakdownRecord]) -> Path:
        """Write the table of one evaluated group, replacing any previous one."""
        self.output_path.mkdir(parents=True, exist_ok=True)
        path = self.group_path(group)
        records_frame(records).to_csv(path, index=False)
        return path

    def write_summary(self, records: Sequence[BreakdownRecord], technique: str) -> List[Path]:
        """Write summary.csv and summary.md for the whole run."""
        self.output_path.mkdir(parents=True, exist_ok=True)
        csv_path = self.output_path / "summary.csv"
        md_path = self.output_path / "summary.md"

        frame = records_frame(records)
        frame.to_csv(csv_path, index=False)
        _write_summary_md(md_path, frame, technique)
        return [csv_path, md_path]


def _fmt(value: float) -> str:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "-"
    return f"{value:.4f}"


def _write_summary_md(md_path: Path, frame: pd.DataFrame, technique: str):
    lines = []
    lines.append(f"# Uncertainty breakdown ({technique})")
    lines.append("")
    lines.append(f"Generated: {datetime.now(timezone.utc).isoformat()}")
    lines.append("")

    n_error = int((frame["status"] == STATUS_ERROR).sum()) if len(frame) else 0
    lines.append(f"- Groups evaluated: {frame['group'].nunique() if len(frame) else 0}")
    lines.append(f"- Failed evaluations: {n_error}")
    lines.append("")

    lines.append("| Group | POI | Best fit | +σ | −σ | Status |")
    lines.append("|-------|-----|----------|----|----|--------|")
    for row in frame.itertuples(index=False):
        status = row.status if row.status == STATUS_OK else f"{row.status}: {row.message}"
        lines.append(
            f"| {row.group} | {row.poi} | {_fmt(row.hat)} | {_fmt(row.up)} | {_fmt(row.down)} | {status} |"
        )
    lines.append("")

    md_path.write_text("\n".join(lines), encoding="utf-8")
