"""Encoder job execution.

An :class:`EncoderJob` is one concrete encoder invocation: a shell
command rendered from a scheme template for one source file. Running a
job spawns the command through ``sh -c``, tees the encoder's diagnostic
output (stderr) into the job's output file and into a size-capped
in-memory buffer, collects OS resource usage of the child process and
finally probes the compressed file to derive encoding speed.

Errors never escape :meth:`EncoderJob.run`; they are collected on the
returned :class:`RunResult` so one broken job does not stop a plan.
"""

import logging
import os
import subprocess
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import BinaryIO, Protocol

from ease.errors import BufferOverflowError, EncoderExecutionError, MetadataError
from ease.log import get_logger
from ease.metadata import MetadataExtractor

# 5 MiB for the in-memory copy of encoder output
OUTPUT_BUFFER_SIZE: int = 5 * 1024 * 1024

_READ_CHUNK_SIZE = 64 * 1024


class LimitedBuffer:
    """In-memory byte buffer that refuses writes beyond a fixed capacity.

    A write that does not fit into the remaining capacity is rejected as a
    whole with :class:`BufferOverflowError`; smaller writes after that
    still succeed while capacity remains.
    """

    def __init__(self, limit: int) -> None:
        if limit < 0:
            msg = f"limit must not be negative: {limit}"
            raise ValueError(msg)
        self._buf = bytearray()
        self.remaining = limit

    def write(self, data: bytes) -> int:
        if len(data) > self.remaining:
            msg = f"LimitedBuffer overflow: {len(data)} bytes, {self.remaining} remaining"
            raise BufferOverflowError(msg)
        self._buf.extend(data)
        self.remaining -= len(data)
        return len(data)

    def getvalue(self) -> bytes:
        return bytes(self._buf)


class OutputSink(Protocol):
    """Receiver of subprocess diagnostic output chunks."""

    def write(self, data: bytes) -> None: ...


@dataclass
class ProcessOutcome:
    """What the process runner reports back about a finished process.

    ``output_error`` is the first failure writing diagnostic output to the
    sink; the process still ran to completion and was accounted for.
    """

    exit_code: int
    stime: float
    utime: float
    max_rss: int
    output_error: OSError | None = None


class ProcessRunner(Protocol):
    """Capability to spawn a shell command and report its resource usage."""

    def run(self, cmd: str, cwd: str | None, sink: OutputSink) -> ProcessOutcome: ...


class PosixProcessRunner:
    """Process runner based on ``sh -c`` and ``os.wait4``.

    ``os.wait4`` reaps exactly the spawned child and returns its rusage,
    which is not mixed up with other children of this process.
    """

    shell = "/bin/sh"

    def run(self, cmd: str, cwd: str | None, sink: OutputSink) -> ProcessOutcome:
        # Encoder commands may be pipelines, so they go through the shell.
        # The command comes from the user's own plan and is trusted.
        proc = subprocess.Popen(  # noqa: S602
            [self.shell, "-c", cmd],
            cwd=cwd,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
        output_error: OSError | None = None
        try:
            if proc.stderr is not None:
                output_error = _drain(proc.stderr, sink)
        finally:
            _, status, rusage = os.wait4(proc.pid, 0)
            proc.returncode = os.waitstatus_to_exitcode(status)

        return ProcessOutcome(
            exit_code=proc.returncode,
            stime=rusage.ru_stime,
            utime=rusage.ru_utime,
            max_rss=rusage.ru_maxrss,
            output_error=output_error,
        )


def _drain(stream: BinaryIO, sink: OutputSink) -> OSError | None:
    """Copy *stream* into *sink* until EOF.

    After the first failed sink write the remaining output is read and
    discarded, so the child never blocks on a full pipe.

    Returns:
        The sink's first write error, or None
    """
    error: OSError | None = None
    with stream:
        for chunk in iter(lambda: stream.read1(_READ_CHUNK_SIZE), b""):
            if error is not None:
                continue
            try:
                sink.write(chunk)
            except OSError as e:
                error = e
    return error


def _human_duration(seconds: float) -> str:
    """Render seconds like ``0:01:02.345000``."""
    return str(timedelta(seconds=seconds))


@dataclass
class UsageStat:
    """Process resource usage stats.

    Times are seconds; ``max_rss`` is KiB as reported by the OS.
    """

    stime: float = 0.0
    utime: float = 0.0
    elapsed: float = 0.0
    max_rss: int = 0

    @property
    def h_stime(self) -> str:
        return _human_duration(self.stime)

    @property
    def h_utime(self) -> str:
        return _human_duration(self.utime)

    @property
    def h_elapsed(self) -> str:
        return _human_duration(self.elapsed)

    def cpu_percent(self) -> float:
        """CPU usage in percent of wall time."""
        if self.elapsed <= 0:
            return 0.0
        return (self.stime + self.utime) / self.elapsed * 100


@dataclass(frozen=True)
class EncoderJob:
    """A single concrete encoding command expanded from a scheme."""

    name: str
    source_file: str
    compressed_file: str
    output_file: str
    log_file: str
    work_dir: str
    cmd: str

    def run(
        self,
        metadata: MetadataExtractor,
        runner: ProcessRunner | None = None,
        buffer_size: int = OUTPUT_BUFFER_SIZE,
        logger: logging.Logger | None = None,
    ) -> "RunResult":
        """Run the encoder command and collect its result.

        Args:
            metadata: Collaborator used to probe the compressed file
            runner: Process runner, defaults to :class:`PosixProcessRunner`
            buffer_size: Cap for the in-memory copy of encoder output
            logger: Logger to use instead of the module logger

        Returns:
            RunResult; check ``ok`` / ``errors`` for failures
        """
        log = get_logger(logger, __name__)
        runner = runner or PosixProcessRunner()
        result = RunResult(job=self)
        buffer = LimitedBuffer(buffer_size)

        try:
            out_fh = open(self.output_file, "wb")  # noqa: SIM115
        except OSError as e:
            log.info("Unable to redirect output to file: %s", e)
            result.add_error(e)
            return result
        log.info("Output redirected to file: %s", self.output_file)

        tee = _Tee(out_fh, buffer, result, log)
        start = time.monotonic()
        outcome: ProcessOutcome | None = None
        try:
            outcome = runner.run(self.cmd, self.work_dir or None, tee)
        except OSError as e:
            log.info("Run error for %s: %s", self.name, e)
            result.add_error(EncoderExecutionError(self.name, str(e)))
        elapsed = time.monotonic() - start
        try:
            out_fh.close()
        except OSError as e:
            log.info("Unable to close output file %s: %s", self.output_file, e)
            result.add_error(e)

        if outcome is not None:
            result.exit_code = outcome.exit_code
            result.stats = UsageStat(
                stime=outcome.stime,
                utime=outcome.utime,
                elapsed=elapsed,
                max_rss=outcome.max_rss,
            )
            if outcome.output_error is not None:
                log.info(
                    "Unable to write output file %s: %s", self.output_file, outcome.output_error
                )
                result.add_error(outcome.output_error)
            if outcome.exit_code != 0:
                log.info("Run error for %s: exit status %d", self.name, outcome.exit_code)
                log.debug("Command: %s", self.cmd)
                log.debug("Stderr: %s", buffer.getvalue().decode("utf-8", "replace"))
                result.add_error(
                    EncoderExecutionError(
                        self.name,
                        f"exit status {outcome.exit_code}",
                        exit_code=outcome.exit_code,
                    )
                )
        else:
            result.stats = UsageStat(elapsed=elapsed)

        try:
            vmeta = metadata.extract(self.compressed_file)
        except MetadataError as e:
            log.info("Unable to query compressed video metadata: %s", e)
            result.add_error(e)
        else:
            result.video_duration = vmeta.duration
            if result.stats.elapsed > 0:
                result.avg_encoding_speed = vmeta.duration / result.stats.elapsed

        result.output = buffer.getvalue()
        return result


class _Tee:
    """Writes every chunk to the output file and, until it overflows, the capped buffer."""

    def __init__(
        self,
        fh: BinaryIO,
        buffer: LimitedBuffer,
        result: "RunResult",
        logger: logging.Logger,
    ) -> None:
        self.fh = fh
        self.buffer = buffer
        self.result = result
        self.logger = logger

    def write(self, data: bytes) -> None:
        self.fh.write(data)
        # The in-memory copy stays a contiguous prefix of the output.
        if self.result.output_truncated:
            return
        try:
            self.buffer.write(data)
        except BufferOverflowError as e:
            # Only the in-memory copy is cut short, the output file stays complete.
            self.logger.debug("%s: %s", self.result.job.name, e)
            self.result.output_truncated = True


@dataclass
class RunResult:
    """Result of a single encoding run.

    ``errors`` holds every failure in the order it happened; a run is
    successful only when the list is empty. Resource stats are filled in
    even when the encoder exits with an error.
    """

    job: EncoderJob
    errors: list[Exception] = field(default_factory=list)
    stats: UsageStat = field(default_factory=UsageStat)
    video_duration: float = 0.0
    avg_encoding_speed: float = 0.0
    exit_code: int | None = None
    output: bytes = b""
    output_truncated: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def name(self) -> str:
        return self.job.name

    def add_error(self, error: Exception) -> None:
        self.errors.append(error)

    def output_text(self) -> str:
        """Captured encoder diagnostics (stderr) as text."""
        return self.output.decode("utf-8", "replace")
