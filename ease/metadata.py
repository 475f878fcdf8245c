"""Video metadata probing.

The encoding and measurement stages only need a small, stable subset of
container/stream metadata (duration, frame count, codec, resolution, bit
rate). Anything that can produce a :class:`VideoMetadata` for a file can
be used as the metadata collaborator; :class:`FfprobeExtractor` is the
implementation backed by ``ffprobe``.
"""

import json
import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from ease.errors import MetadataError
from ease.log import get_logger


@dataclass(frozen=True)
class VideoMetadata:
    """Useful video stream metadata."""

    codec_name: str = ""
    frame_rate: str = ""
    duration: float = 0.0
    width: int = 0
    height: int = 0
    bit_rate: int = 0
    frame_count: int = 0


class MetadataExtractor(Protocol):
    """Anything able to query metadata of a video file."""

    def extract(self, video_file: str | Path) -> VideoMetadata: ...


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_ffprobe_output(data: dict[str, Any]) -> VideoMetadata:
    """Build VideoMetadata from ``ffprobe -of json`` output.

    The first video stream is used. For containers that do not report a
    per-stream duration (e.g. Matroska) the format-level duration is used
    instead.

    Args:
        data: Decoded ffprobe JSON document

    Returns:
        VideoMetadata instance

    Raises:
        MetadataError: If the document has no video stream
    """
    streams = data.get("streams") or []
    if not streams:
        msg = "ffprobe output contains no video stream"
        raise MetadataError(msg)

    stream = streams[0]
    fmt = data.get("format") or {}

    return VideoMetadata(
        codec_name=stream.get("codec_name", ""),
        frame_rate=stream.get("r_frame_rate", ""),
        duration=max(_to_float(stream.get("duration")), _to_float(fmt.get("duration"))),
        width=_to_int(stream.get("width")),
        height=_to_int(stream.get("height")),
        bit_rate=_to_int(stream.get("bit_rate")),
        frame_count=_to_int(stream.get("nb_frames")),
    )


class FfprobeExtractor:
    """Metadata extractor that shells out to ffprobe."""

    def __init__(self, ffprobe_path: str = "ffprobe", logger: logging.Logger | None = None) -> None:
        """Initialize the extractor.

        Args:
            ffprobe_path: Resolved path to the ffprobe executable
            logger: Logger to use instead of the module logger
        """
        self.ffprobe_path = ffprobe_path
        self.logger = get_logger(logger, __name__)

    def extract(self, video_file: str | Path) -> VideoMetadata:
        """Query metadata of *video_file*.

        Raises:
            MetadataError: If the file is missing or ffprobe fails
        """
        video_file = Path(video_file)
        if not video_file.exists():
            msg = f"video file not found: {video_file}"
            raise MetadataError(msg)

        cmd = [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-select_streams",
            "v",
            "-of",
            "json",
            "-show_format",
            "-show_streams",
            str(video_file),
        ]
        self.logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, check=True)
        except FileNotFoundError as e:
            msg = f"ffprobe not found: {self.ffprobe_path}"
            raise MetadataError(msg) from e
        except subprocess.CalledProcessError as e:
            msg = f"ffprobe failed for {video_file} (exit code {e.returncode})"
            raise MetadataError(msg) from e

        try:
            data = json.loads(result.stdout.decode("utf-8", "replace"))
        except json.JSONDecodeError as e:
            msg = f"ffprobe returned invalid JSON for {video_file}: {e}"
            raise MetadataError(msg) from e

        meta = parse_ffprobe_output(data)
        self.logger.debug("%s %s", video_file, meta)
        return meta
