"""Encoding plan definition and execution.

A plan is a list of source videos and a list of encoding schemes. Each
scheme is a named encoder command template with ``%INPUT%``, ``%OUTPUT%``
and ``%LOGFILE%`` placeholders; expanding a scheme against the source
files yields one :class:`~ease.encoder.EncoderJob` per source. The plan
runs all jobs sequentially and reports per-job results.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ease.encoder import OUTPUT_BUFFER_SIZE, EncoderJob, ProcessRunner, RunResult
from ease.errors import PlanConfigError
from ease.log import get_logger
from ease.metadata import MetadataExtractor

INPUT_PLACEHOLDER = "%INPUT%"
OUTPUT_PLACEHOLDER = "%OUTPUT%"
LOGFILE_PLACEHOLDER = "%LOGFILE%"

_EXT_MATCHER = re.compile(re.escape(OUTPUT_PLACEHOLDER) + r"(\.\w+)*")


def _normalize(value: str) -> str:
    """Make a filename fragment shell friendly (no spaces)."""
    return value.replace(" ", "_")


def output_file_base(source_file: str, out_dir: str | Path, name: str) -> str:
    """Build the extension-less output path shared by all files of a job.

    Args:
        source_file: Source video path
        out_dir: Output directory
        name: Scheme name

    Returns:
        ``<out_dir>/<source stem>_<name>`` with spaces replaced by underscores
    """
    stem = os.path.splitext(os.path.basename(source_file))[0]
    return os.path.join(str(out_dir), f"{_normalize(stem)}_{_normalize(name)}")


def compressed_file_ext(command_tpl: str) -> str:
    """Return the extension following ``%OUTPUT%`` in a template, or ``""``."""
    match = _EXT_MATCHER.search(command_tpl)
    if match is None or match.group(1) is None:
        return ""
    return match.group(1)


@dataclass(frozen=True)
class Scheme:
    """A named encoder command template.

    The name becomes part of every output filename, so treat it as part
    of a naming scheme.
    """

    name: str
    command_tpl: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Scheme":
        """Create a Scheme from a plan definition entry.

        ``CommandTpl`` may be a single string or a list of strings; list
        items are concatenated without a separator so long commands can be
        split over several lines in JSON.
        """
        name = data.get("Name", data.get("name"))
        tpl = data.get("CommandTpl", data.get("command_tpl"))
        if name is None or tpl is None:
            msg = "Scheme must have 'Name' and 'CommandTpl' fields"
            raise PlanConfigError(msg)
        if isinstance(tpl, list):
            tpl = "".join(tpl)
        return cls(name=name, command_tpl=tpl)

    def expand(self, source_files: list[str], out_dir: str | Path) -> list[EncoderJob]:
        """Render one job per source file.

        Placeholders are replaced textually wherever they occur; a template
        without some placeholder is not an error.

        Args:
            source_files: Source video paths, in order
            out_dir: Directory for compressed, output and log files

        Returns:
            Jobs in the same order as *source_files*
        """
        ext = compressed_file_ext(self.command_tpl)
        work_dir = os.getcwd()

        jobs: list[EncoderJob] = []
        for src in source_files:
            base = output_file_base(src, out_dir, self.name)
            log_file = f"{base}.log"

            cmd = self.command_tpl.replace(INPUT_PLACEHOLDER, src)
            cmd = cmd.replace(OUTPUT_PLACEHOLDER, base)
            cmd = cmd.replace(LOGFILE_PLACEHOLDER, log_file)

            jobs.append(
                EncoderJob(
                    name=self.name,
                    source_file=src,
                    compressed_file=f"{base}{ext}",
                    output_file=f"{base}.out",
                    log_file=log_file,
                    work_dir=work_dir,
                    cmd=cmd,
                )
            )
        return jobs


@dataclass
class PlanConfig:
    """Plan definition: source videos and encoding schemes."""

    inputs: list[str]
    schemes: list[Scheme]

    @classmethod
    def from_file(cls, config_path: Path) -> "PlanConfig":
        """Load a plan definition from a JSON file.

        Raises:
            FileNotFoundError: If the file does not exist
            PlanConfigError: If the file content is not a plan definition
        """
        if not config_path.exists():
            msg = f"Plan config not found: {config_path}"
            raise FileNotFoundError(msg)

        with open(config_path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                msg = f"Plan config is not valid JSON: {config_path}"
                raise PlanConfigError(msg) from e

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PlanConfig":
        """Create PlanConfig from a dictionary.

        Both the ``Inputs``/``Schemes`` spelling and lower-case keys are
        accepted. Missing keys produce empty lists; use :meth:`validate`
        to reject them.
        """
        if not isinstance(data, dict):
            msg = "Plan config must be a JSON object"
            raise PlanConfigError(msg)

        inputs = data.get("Inputs", data.get("inputs")) or []
        schemes = data.get("Schemes", data.get("schemes")) or []
        return cls(
            inputs=list(inputs),
            schemes=[Scheme.from_dict(s) for s in schemes],
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the plan definition JSON shape."""
        return {
            "Inputs": list(self.inputs),
            "Schemes": [{"Name": s.name, "CommandTpl": [s.command_tpl]} for s in self.schemes],
        }

    def validate(self) -> None:
        """Check the plan definition, collecting every failure.

        Raises:
            PlanConfigError: With one reason per failed check
        """
        reasons: list[str] = []
        if not self.inputs:
            reasons.append("Inputs missing")
        if len(set(self.inputs)) != len(self.inputs):
            reasons.append("Duplicate inputs detected")
        if not self.schemes:
            reasons.append("Schemes missing")
        for src in self.inputs:
            if not Path(src).exists():
                reasons.append(f"Input not found: {src}")

        if reasons:
            raise PlanConfigError("validation error", reasons)


@dataclass
class PlanResult:
    """Plan execution result.

    ``run_results[i]`` always belongs to ``Plan.jobs[i]``.
    """

    start_time: datetime
    end_time: datetime | None = None
    run_results: list[RunResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.run_results)

    def errors(self) -> list[tuple[str, Exception]]:
        """All job errors as ``(job name, error)`` pairs, in job order."""
        return [(r.name, e) for r in self.run_results for e in r.errors]

    def unroll_errors(self) -> str:
        """Render all job errors as one multi-line string."""
        return "".join(f"{name}:\n\t{err}\n" for name, err in self.errors())


class Plan:
    """An ordered list of encoder jobs writing into one output directory."""

    def __init__(
        self,
        jobs: list[EncoderJob],
        out_dir: str | Path,
        metadata: MetadataExtractor,
        runner: ProcessRunner | None = None,
        buffer_size: int = OUTPUT_BUFFER_SIZE,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the plan.

        Args:
            jobs: Jobs to run, in order
            out_dir: Output directory, created on first run
            metadata: Collaborator used to probe compressed files
            runner: Process runner passed on to every job
            buffer_size: Cap for the in-memory copy of each job's output
            logger: Logger to use instead of the module logger
        """
        self.jobs = list(jobs)
        self.out_dir = Path(out_dir)
        self.metadata = metadata
        self.runner = runner
        self.buffer_size = buffer_size
        self.logger = get_logger(logger, __name__)
        self._out_dir_created = False

    @classmethod
    def from_config(
        cls,
        config: PlanConfig,
        out_dir: str | Path,
        metadata: MetadataExtractor,
        **kwargs: Any,
    ) -> "Plan":
        """Expand every scheme of *config* against all of its inputs."""
        jobs: list[EncoderJob] = []
        for scheme in config.schemes:
            jobs.extend(scheme.expand(config.inputs, out_dir))
        return cls(jobs, out_dir, metadata, **kwargs)

    def _ensure_out_dir(self) -> None:
        if self._out_dir_created:
            return
        self.logger.debug("Creating output directory: %s", self.out_dir)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self._out_dir_created = True

    def run(self) -> PlanResult:
        """Run all jobs one after another.

        A failing job does not stop the remaining ones; inspect
        ``PlanResult.ok`` and the per-job results afterwards.

        Raises:
            OSError: If the output directory cannot be created
        """
        result = PlanResult(start_time=datetime.now(tz=UTC))
        self._ensure_out_dir()

        for job in self.jobs:
            self.logger.info("Start encoding %s -> %s", job.source_file, job.compressed_file)
            run_result = job.run(
                self.metadata,
                runner=self.runner,
                buffer_size=self.buffer_size,
                logger=self.logger,
            )
            result.run_results.append(run_result)
            self.logger.info("Done encoding %s -> %s", job.source_file, job.compressed_file)

        result.end_time = datetime.now(tz=UTC)
        if not result.ok:
            self.logger.info("Run had following ERRORS:\n%s", result.unroll_errors())
        return result
