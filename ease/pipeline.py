"""End-to-end encode and measure pipeline.

Stages:

1. run the encoding plan (sequential, one job at a time);
2. store one :class:`~ease.store.Record` per encode;
3. measure VMAF/PSNR/MS-SSIM for every successful encode and update its
   record. Measurements are independent of each other, so this stage can
   use a bounded thread pool; results go straight into the thread-safe
   metric store;
4. write the JSON and CSV reports.

A failing encode or measurement is logged and reported in the
:class:`PipelineResult` but does not stop the other encodes.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

from ease.errors import EaseError
from ease.log import get_logger
from ease.metadata import MetadataExtractor
from ease.plan import Plan, PlanResult
from ease.quality import FfmpegVMAF, VMAFConfig
from ease.report import (
    DEFAULT_JSON_REPORT_FILE,
    DEFAULT_REPORT_FILE,
    apply_metrics,
    record_from_run_result,
    save_csv_report,
    save_json_report,
    store_records,
)
from ease.store import MetricStore


def vqm_result_file(compressed_file: str) -> str:
    """Path of the libvmaf log for a compressed file."""
    return f"{os.path.splitext(compressed_file)[0]}_vqm.json"


def frames_file(compressed_file: str) -> str:
    """Path of the flat per-frame metrics file for a compressed file."""
    return f"{os.path.splitext(compressed_file)[0]}_frames.json"


@dataclass
class PipelineResult:
    """Outcome of a pipeline run."""

    plan_result: PlanResult
    record_ids: list[int] = field(default_factory=list)
    vqm_failures: dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.plan_result.ok and not self.vqm_failures


class EncodePipeline:
    """Runs a plan, measures its encodes and collects everything in a store."""

    def __init__(
        self,
        plan: Plan,
        vmaf_config: VMAFConfig,
        metadata: MetadataExtractor,
        store: MetricStore | None = None,
        workers: int = 1,
        check_frame_count: bool = True,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            plan: Encoding plan to run
            vmaf_config: ffmpeg/libvmaf paths and command template
            metadata: Metadata collaborator shared by all stages
            store: Metric store, a new one is created if not given
            workers: Number of concurrent quality measurements
            check_frame_count: Refuse to measure encodes whose frame count
                differs from the source
            logger: Logger to use instead of the module logger
        """
        if workers < 1:
            msg = f"workers must be at least 1, got {workers}"
            raise ValueError(msg)
        self.plan = plan
        self.vmaf_config = vmaf_config
        self.metadata = metadata
        self.store = store if store is not None else MetricStore()
        self.workers = workers
        self.check_frame_count = check_frame_count
        self.logger = get_logger(logger, __name__)

    def encode(self) -> tuple[PlanResult, list[int]]:
        """Run the plan and store one record per job.

        Returns:
            The plan result and the ids of records whose encode succeeded
        """
        plan_result = self.plan.run()

        measurable: list[int] = []
        for run_result in plan_result.run_results:
            record_id = self.store.insert(record_from_run_result(run_result))
            self.logger.debug("Storing record (id=%d) with encoding metrics", record_id)
            if run_result.ok:
                measurable.append(record_id)
            else:
                self.logger.info(
                    "Skipping quality measurement for %s, encoding had errors",
                    run_result.job.compressed_file,
                )
        return plan_result, measurable

    def measure(self, record_id: int) -> None:
        """Measure quality of one stored encode and update its record.

        Raises:
            EaseError: If any step of the measurement fails
            OSError: If the flat frame metrics file cannot be written
        """
        record = self.store.get(record_id)
        result_file = vqm_result_file(record.compressed_file)

        tool = FfmpegVMAF(
            self.vmaf_config,
            compressed_file=record.compressed_file,
            source_file=record.source_file,
            result_file=result_file,
            metadata=self.metadata if self.check_frame_count else None,
            logger=self.logger,
        )

        self.logger.info("Start measuring VQMs for %s", record.compressed_file)
        tool.measure()
        frames = tool.frame_metrics()
        frames.save(Path(frames_file(record.compressed_file)))
        metrics = tool.get_metrics()

        self.store.update(record_id, apply_metrics(record, metrics, result_file))
        self.logger.debug("Updating record (id=%d) with VQ metrics", record_id)
        self.logger.info("Done measuring VQMs for %s", record.compressed_file)

    def measure_all(self, record_ids: list[int]) -> dict[int, str]:
        """Measure all given records, at most ``workers`` at a time.

        Returns:
            Failure message per record id that could not be measured
        """
        failures: dict[int, str] = {}
        with ThreadPoolExecutor(max_workers=self.workers) as executor:
            futures = {executor.submit(self.measure, rid): rid for rid in record_ids}
            for future in as_completed(futures):
                rid = futures[future]
                try:
                    future.result()
                except (EaseError, OSError) as e:
                    self.logger.info("Failed to calculate VQM (id=%d): %s", rid, e)
                    failures[rid] = str(e)
        return failures

    def run(self, report_dir: Path | None = None) -> PipelineResult:
        """Run all stages.

        Args:
            report_dir: Where to write ``report.json`` and ``report.csv``;
                defaults to the plan's output directory

        Returns:
            PipelineResult with the plan result and measurement failures
        """
        plan_result, measurable = self.encode()
        failures = self.measure_all(measurable)
        if failures:
            self.logger.info("VQM calculations had errors for %d encode(s)", len(failures))

        report_dir = report_dir if report_dir is not None else self.plan.out_dir
        save_json_report(plan_result, report_dir / DEFAULT_JSON_REPORT_FILE)
        save_csv_report(store_records(self.store), report_dir / DEFAULT_REPORT_FILE)
        self.logger.info("Reports written to %s", report_dir)

        return PipelineResult(
            plan_result=plan_result,
            record_ids=sorted(self.store.get_ids()),
            vqm_failures=failures,
        )
