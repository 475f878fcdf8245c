"""Video quality measurement with ffmpeg and libvmaf.

:class:`FfmpegVMAF` wraps one comparison of a compressed video against
its source. The instance follows a strict lifecycle: it is created with a
rendered ffmpeg command line, :meth:`FfmpegVMAF.measure` runs ffmpeg
exactly once, and only then :meth:`FfmpegVMAF.get_metrics` can read the
libvmaf report and aggregate the per-frame scores.

Aggregates are computed here from the full per-frame samples rather
than taken from libvmaf's pooled numbers; :meth:`FfmpegVMAF.pooled_metrics`
exposes the latter so both can be compared.
"""

import enum
import json
import logging
import math
import os
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np
from jinja2 import StrictUndefined, Template, TemplateError

from ease.errors import (
    FrameCountMismatchError,
    MeasurementStateError,
    MetadataError,
    QualityReportError,
    QualityToolError,
)
from ease.frames import METRIC_ALIASES, FrameMetrics, resolve_aliases
from ease.log import get_logger
from ease.metadata import MetadataExtractor

DEFAULT_FFMPEG_VMAF_TEMPLATE = (
    "-hide_banner -i {{ compressed_file }} -i {{ source_file }} "
    "-lavfi libvmaf=n_subsample=1:log_path={{ result_file }}:feature=name=psnr:"
    "log_fmt=json:model=path={{ model_path }}:n_threads={{ n_threads }} -f null -"
)

# ffmpeg was seen deadlocking during VMAF calculation on a 128 thread machine.
MAX_THREADS: int = 32


def vmaf_threads() -> int:
    """Number of libvmaf threads to use: CPU count capped at MAX_THREADS."""
    return min(os.cpu_count() or 1, MAX_THREADS)


@dataclass
class VMAFConfig:
    """Parameters for FfmpegVMAF creation.

    Paths must already be resolved; finding ffmpeg and the libvmaf model
    is up to the caller.
    """

    ffmpeg_path: str = "ffmpeg"
    model_path: str = ""
    template: str = DEFAULT_FFMPEG_VMAF_TEMPLATE


@dataclass
class Metric:
    """Summary statistics of one metric over all frames."""

    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    harmonic_mean: float = 0.0
    stdev: float = 0.0
    variance: float = 0.0


@dataclass
class AggregateMetric:
    """Summary statistics for every metric libvmaf reports."""

    vmaf: Metric = field(default_factory=Metric)
    psnr: Metric = field(default_factory=Metric)
    ms_ssim: Metric = field(default_factory=Metric)


@dataclass
class PooledMetric:
    """libvmaf's own pooled numbers for one metric."""

    min: float = 0.0
    max: float = 0.0
    mean: float = 0.0
    harmonic_mean: float = 0.0


def compute_metric(values: list[float]) -> Metric:
    """Aggregate per-frame samples of one metric.

    Variance and standard deviation are sample statistics (``ddof=1``)
    and are 0 for a single sample. The harmonic mean is 0 when any
    sample is 0.

    Raises:
        QualityReportError: If there are no samples
    """
    arr = np.asarray(values, dtype=np.float64)
    if arr.size == 0:
        msg = "no frame samples to aggregate"
        raise QualityReportError(msg)

    variance = float(arr.var(ddof=1)) if arr.size > 1 else 0.0
    if np.any(arr == 0):
        harmonic_mean = 0.0
    else:
        harmonic_mean = float(arr.size / np.sum(1.0 / arr))

    return Metric(
        min=float(arr.min()),
        max=float(arr.max()),
        mean=float(arr.mean()),
        harmonic_mean=harmonic_mean,
        stdev=math.sqrt(variance),
        variance=variance,
    )


def aggregate(frames: FrameMetrics) -> AggregateMetric:
    """Compute :class:`AggregateMetric` over a full frame sequence."""
    return AggregateMetric(
        vmaf=compute_metric(frames.values("vmaf")),
        psnr=compute_metric(frames.values("psnr")),
        ms_ssim=compute_metric(frames.values("ms_ssim")),
    )


class MeasureState(enum.Enum):
    CREATED = "created"
    MEASURING = "measuring"
    MEASURED = "measured"
    FAILED = "failed"


class FfmpegVMAF:
    """VMAF/PSNR/MS-SSIM measurement of one compressed video."""

    def __init__(
        self,
        config: VMAFConfig,
        compressed_file: str,
        source_file: str,
        result_file: str,
        metadata: MetadataExtractor | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Render the ffmpeg command line.

        Args:
            config: ffmpeg path, libvmaf model path and command template
            compressed_file: Encoded video to score
            source_file: Reference video
            result_file: Where libvmaf writes its JSON log
            metadata: When given, frame counts of both videos are compared
                before measuring
            logger: Logger to use instead of the module logger

        Raises:
            QualityToolError: If the template cannot be rendered or split
        """
        self.exe_path = config.ffmpeg_path
        self.source_file = source_file
        self.compressed_file = compressed_file
        self.result_file = result_file
        self.metadata = metadata
        self.logger = get_logger(logger, __name__)
        self.n_threads = vmaf_threads()
        self.output = b""
        self.state = MeasureState.CREATED

        try:
            rendered = Template(config.template, undefined=StrictUndefined).render(
                source_file=source_file,
                compressed_file=compressed_file,
                result_file=result_file,
                model_path=config.model_path,
                n_threads=self.n_threads,
            )
        except TemplateError as e:
            msg = f"rendering ffmpeg VMAF template: {e}"
            raise QualityToolError(msg) from e

        try:
            self.args = shlex.split(rendered)
        except ValueError as e:
            msg = f"preparing ffmpeg VMAF command: {e}"
            raise QualityToolError(msg) from e

    @property
    def cmd(self) -> list[str]:
        return [self.exe_path, *self.args]

    def _check_frame_counts(self, metadata: MetadataExtractor) -> None:
        try:
            src_meta = metadata.extract(self.source_file)
        except MetadataError as e:
            msg = f"source file metadata: {e}"
            raise MetadataError(msg) from e
        try:
            compressed_meta = metadata.extract(self.compressed_file)
        except MetadataError as e:
            msg = f"compressed file metadata: {e}"
            raise MetadataError(msg) from e

        # 0 means the container does not tell, nothing to compare then.
        if src_meta.frame_count == 0 or compressed_meta.frame_count == 0:
            self.logger.debug(
                "Frame count unknown for %s or %s, skipping check",
                self.source_file,
                self.compressed_file,
            )
            return
        if src_meta.frame_count != compressed_meta.frame_count:
            raise FrameCountMismatchError(src_meta.frame_count, compressed_meta.frame_count)

    def measure(self) -> None:
        """Run ffmpeg/libvmaf. Can only be called once per instance.

        Raises:
            MeasurementStateError: If called a second time
            FrameCountMismatchError: If source and compressed frame counts differ
            MetadataError: If either video cannot be probed
            QualityToolError: If ffmpeg cannot be run or fails
        """
        if self.state is not MeasureState.CREATED:
            msg = "measure() already executed"
            raise MeasurementStateError(msg)
        self.state = MeasureState.MEASURING

        try:
            if self.metadata is not None:
                self._check_frame_counts(self.metadata)

            self.logger.debug("VQM tool command: %s", self.cmd)
            try:
                result = subprocess.run(
                    self.cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
            except OSError as e:
                msg = f"VQM calculation error: {e}"
                raise QualityToolError(msg) from e

            self.output = result.stdout
            if result.returncode != 0:
                self.logger.info("VQM tool execution failure:\n%s", shlex.join(self.cmd))
                self.logger.info("VQM tool output:\n%s", self.output_text())
                msg = f"VQM calculation error: exit status {result.returncode}"
                raise QualityToolError(msg)
        except Exception:
            self.state = MeasureState.FAILED
            raise

        self.state = MeasureState.MEASURED

    def output_text(self) -> str:
        """Combined ffmpeg output, kept for diagnostics only."""
        return self.output.decode("utf-8", "replace")

    def _read_report(self) -> bytes:
        if self.state is not MeasureState.MEASURED:
            msg = "get_metrics() depends on measure() called first"
            raise MeasurementStateError(msg)
        try:
            return Path(self.result_file).read_bytes()
        except OSError as e:
            msg = f"opening file: {e}"
            raise QualityReportError(msg) from e

    def frame_metrics(self) -> FrameMetrics:
        """Per-frame metrics from the libvmaf report.

        Raises:
            MeasurementStateError: If measure() has not completed
            QualityReportError: If the report file cannot be read
            FrameMetricsDecodeError: If the report cannot be decoded
        """
        return FrameMetrics.from_ffmpeg_vmaf(self._read_report())

    def get_metrics(self) -> AggregateMetric:
        """Aggregate statistics recomputed from all frames.

        Raises:
            MeasurementStateError: If measure() has not completed
            QualityReportError: If the report is missing or has no frames
            FrameMetricsDecodeError: If the report cannot be decoded
        """
        return aggregate(self.frame_metrics())

    def pooled_metrics(self) -> dict[str, PooledMetric]:
        """libvmaf's ``pooled_metrics`` section, keyed by canonical name."""
        try:
            doc = json.loads(self._read_report())
        except ValueError as e:
            msg = f"parsing JSON: {e}"
            raise QualityReportError(msg) from e
        raw = doc.get("pooled_metrics") if isinstance(doc, dict) else None
        if raw is not None and not isinstance(raw, dict):
            msg = f"pooled_metrics is not an object: {raw!r}"
            raise QualityReportError(msg)
        resolved = resolve_aliases(raw, default=None)

        pooled: dict[str, PooledMetric] = {}
        for name in METRIC_ALIASES:
            values = resolved[name] if resolved[name] is not None else {}
            if not isinstance(values, dict):
                msg = f"pooled metric {name} is not an object: {values!r}"
                raise QualityReportError(msg)
            pooled[name] = PooledMetric(
                min=_pooled_value(values, name, "min"),
                max=_pooled_value(values, name, "max"),
                mean=_pooled_value(values, name, "mean"),
                harmonic_mean=_pooled_value(values, name, "harmonic_mean"),
            )
        return pooled


def _pooled_value(values: dict, name: str, stat: str) -> float:
    value = values.get(stat)
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError) as e:
        msg = f"pooled metric {name}.{stat} is not a number: {value!r}"
        raise QualityReportError(msg) from e
