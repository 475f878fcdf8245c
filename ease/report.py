"""Report generation from encode and quality results.

Two report files are written for downstream tooling: a JSON document
with the full plan result, and a flat CSV summary with one row per
encode whose columns are the :class:`~ease.store.Record` fields.
"""

import dataclasses
import json
from pathlib import Path
from typing import Any

import pandas as pd

from ease.encoder import RunResult
from ease.plan import PlanResult
from ease.quality import AggregateMetric
from ease.store import MetricStore, Record

DEFAULT_REPORT_FILE = "report.csv"
DEFAULT_JSON_REPORT_FILE = "report.json"


def record_from_run_result(result: RunResult) -> Record:
    """Create a store record holding the encoding side of *result*."""
    return Record(
        name=result.job.name,
        source_file=result.job.source_file,
        compressed_file=result.job.compressed_file,
        cmd=result.job.cmd,
        h_stime=result.stats.h_stime,
        h_utime=result.stats.h_utime,
        h_elapsed=result.stats.h_elapsed,
        stime=result.stats.stime,
        utime=result.stats.utime,
        elapsed=result.stats.elapsed,
        max_rss=result.stats.max_rss,
        video_duration=result.video_duration,
        avg_encoding_speed=result.avg_encoding_speed,
    )


def apply_metrics(record: Record, metrics: AggregateMetric, result_file: str) -> Record:
    """Return a copy of *record* with quality aggregates filled in."""
    updates: dict[str, Any] = {"vqm_result_file": result_file}
    for metric_name in ("psnr", "ms_ssim", "vmaf"):
        metric = getattr(metrics, metric_name)
        for stat in ("min", "max", "mean", "harmonic_mean", "stdev", "variance"):
            updates[f"{metric_name}_{stat}"] = getattr(metric, stat)
    return dataclasses.replace(record, **updates)


def store_records(store: MetricStore) -> list[Record]:
    """All records currently in *store*, ordered by id."""
    return [store.get(record_id) for record_id in sorted(store.get_ids())]


def records_dataframe(records: list[Record]) -> pd.DataFrame:
    """Flatten records into a DataFrame, one row per encode."""
    columns = [f.name for f in dataclasses.fields(Record)]
    return pd.DataFrame([dataclasses.asdict(r) for r in records], columns=columns)


def save_csv_report(records: list[Record], path: Path) -> None:
    """Write the tabular summary CSV.

    Args:
        records: Records to write, one row each
        path: Path where the CSV file will be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    records_dataframe(records).to_csv(path, index=False)


def load_csv_report(path: Path) -> pd.DataFrame:
    """Read a CSV summary written by :func:`save_csv_report`."""
    return pd.read_csv(path, keep_default_na=False)


def run_result_to_dict(result: RunResult) -> dict[str, Any]:
    """Convert a RunResult to a JSON-serializable dictionary."""
    return {
        **dataclasses.asdict(result.job),
        "errors": [str(e) for e in result.errors],
        "exit_code": result.exit_code,
        "stats": {
            "stime": result.stats.stime,
            "utime": result.stats.utime,
            "elapsed": result.stats.elapsed,
            "max_rss": result.stats.max_rss,
            "h_stime": result.stats.h_stime,
            "h_utime": result.stats.h_utime,
            "h_elapsed": result.stats.h_elapsed,
        },
        "video_duration": result.video_duration,
        "avg_encoding_speed": result.avg_encoding_speed,
        "output_truncated": result.output_truncated,
    }


def plan_result_to_dict(result: PlanResult) -> dict[str, Any]:
    """Convert a PlanResult to a JSON-serializable dictionary."""
    return {
        "start_time": result.start_time.isoformat(),
        "end_time": result.end_time.isoformat() if result.end_time else None,
        "ok": result.ok,
        "run_results": [run_result_to_dict(r) for r in result.run_results],
    }


def save_json_report(result: PlanResult, path: Path) -> None:
    """Save the plan result to a JSON file.

    Args:
        result: Plan execution result
        path: Path where the JSON file will be written
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(plan_result_to_dict(result), f, indent=2)
