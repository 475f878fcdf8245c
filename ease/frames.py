"""Per-frame video quality metrics.

Two JSON shapes decode into :class:`FrameMetrics`:

- libvmaf's native report, ``{"frames": [{"frameNum": n, "metrics":
  {...}}], "pooled_metrics": {...}}``. libvmaf renames metric fields
  between releases (``psnr`` vs ``psnr_y``, ``ms_ssim`` vs
  ``float_ms_ssim``), so metric objects are read as plain field maps and
  resolved through :data:`METRIC_ALIASES`.
- a flat array of frame objects, the format this package writes itself
  (see :meth:`FrameMetrics.to_json`).
"""

import json
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, overload

from ease.errors import FrameMetricsDecodeError

# Canonical metric name -> keys libvmaf has used for it
METRIC_ALIASES: dict[str, tuple[str, ...]] = {
    "vmaf": ("vmaf",),
    "psnr": ("psnr", "psnr_y"),
    "ms_ssim": ("ms_ssim", "float_ms_ssim"),
}

# Flat format field names
_FLAT_KEYS = {
    "frame_num": "FrameNum",
    "vmaf": "VMAF",
    "psnr": "PSNR",
    "ms_ssim": "MS_SSIM",
}


def resolve_aliases(raw: Mapping[str, Any] | None, default: Any = 0.0) -> dict[str, Any]:
    """Map a raw metric field map onto canonical metric names.

    Unknown keys are ignored and canonical names without any matching key
    get *default*.

    Args:
        raw: Field map as found in the report, ``None`` is treated as empty
        default: Value for metrics missing from *raw*

    Returns:
        Dict with exactly the keys of :data:`METRIC_ALIASES`
    """
    raw = raw or {}
    resolved: dict[str, Any] = {}
    for canonical, keys in METRIC_ALIASES.items():
        resolved[canonical] = default
        for key in keys:
            if key in raw:
                resolved[canonical] = raw[key]
                break
    return resolved


@dataclass(frozen=True)
class FrameMetric:
    """Quality metrics of a single frame."""

    frame_num: int = 0
    vmaf: float = 0.0
    psnr: float = 0.0
    ms_ssim: float = 0.0


def _load(data: bytes | str) -> Any:
    if len(data) == 0:
        msg = "cannot decode frame metrics from empty input"
        raise FrameMetricsDecodeError(msg)
    # ValueError covers JSONDecodeError and UnicodeDecodeError for bytes input
    try:
        return json.loads(data)
    except ValueError as e:
        msg = f"invalid JSON: {e}"
        raise FrameMetricsDecodeError(msg) from e


def _as_float(value: Any, field_name: str) -> float:
    if value is None:
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError) as e:
        msg = f"metric {field_name} is not a number: {value!r}"
        raise FrameMetricsDecodeError(msg) from e


def _as_int(value: Any, field_name: str) -> int:
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        msg = f"{field_name} is not an integer: {value!r}"
        raise FrameMetricsDecodeError(msg)
    try:
        return int(value)
    except (ValueError, OverflowError) as e:
        msg = f"{field_name} is not an integer: {value!r}"
        raise FrameMetricsDecodeError(msg) from e


class FrameMetrics:
    """Immutable, ordered sequence of :class:`FrameMetric`."""

    def __init__(self, frames: Iterable[FrameMetric] = ()) -> None:
        self._frames = tuple(frames)

    def __len__(self) -> int:
        return len(self._frames)

    def __iter__(self) -> Iterator[FrameMetric]:
        return iter(self._frames)

    @overload
    def __getitem__(self, index: int) -> FrameMetric: ...

    @overload
    def __getitem__(self, index: slice) -> "FrameMetrics": ...

    def __getitem__(self, index: int | slice) -> "FrameMetric | FrameMetrics":
        if isinstance(index, slice):
            return FrameMetrics(self._frames[index])
        return self._frames[index]

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FrameMetrics):
            return NotImplemented
        return self._frames == other._frames

    def __hash__(self) -> int:
        return hash(self._frames)

    def __repr__(self) -> str:
        return f"FrameMetrics({list(self._frames)!r})"

    def values(self, metric: str) -> list[float]:
        """All samples of one metric (``vmaf``, ``psnr`` or ``ms_ssim``)."""
        if metric not in METRIC_ALIASES:
            msg = f"unknown metric: {metric}"
            raise ValueError(msg)
        return [getattr(f, metric) for f in self._frames]

    @classmethod
    def from_ffmpeg_vmaf(cls, data: bytes | str) -> "FrameMetrics":
        """Decode libvmaf's JSON log.

        Raises:
            FrameMetricsDecodeError: On empty input, invalid JSON or an
                unexpected document shape
        """
        doc = _load(data)
        if not isinstance(doc, dict):
            msg = "libvmaf report must be a JSON object"
            raise FrameMetricsDecodeError(msg)

        raw_frames = doc.get("frames") or []
        if not isinstance(raw_frames, list):
            msg = "libvmaf report 'frames' must be an array"
            raise FrameMetricsDecodeError(msg)

        frames: list[FrameMetric] = []
        for raw in raw_frames:
            if not isinstance(raw, dict):
                msg = f"unexpected frame entry: {raw!r}"
                raise FrameMetricsDecodeError(msg)
            metrics = raw.get("metrics")
            if metrics is not None and not isinstance(metrics, dict):
                msg = f"unexpected metrics entry: {metrics!r}"
                raise FrameMetricsDecodeError(msg)
            resolved = resolve_aliases(metrics)
            frames.append(
                FrameMetric(
                    frame_num=_as_int(raw.get("frameNum"), "frameNum"),
                    vmaf=_as_float(resolved["vmaf"], "vmaf"),
                    psnr=_as_float(resolved["psnr"], "psnr"),
                    ms_ssim=_as_float(resolved["ms_ssim"], "ms_ssim"),
                )
            )
        return cls(frames)

    @classmethod
    def from_json(cls, data: bytes | str) -> "FrameMetrics":
        """Decode the flat array format written by :meth:`to_json`.

        ``[]`` decodes to an empty sequence; empty input is an error.
        """
        doc = _load(data)
        if not isinstance(doc, list):
            msg = "frame metrics must be a JSON array"
            raise FrameMetricsDecodeError(msg)

        frames: list[FrameMetric] = []
        for raw in doc:
            if not isinstance(raw, dict):
                msg = f"unexpected frame entry: {raw!r}"
                raise FrameMetricsDecodeError(msg)
            frames.append(
                FrameMetric(
                    frame_num=_as_int(raw.get(_FLAT_KEYS["frame_num"]), "FrameNum"),
                    vmaf=_as_float(raw.get(_FLAT_KEYS["vmaf"]), "VMAF"),
                    psnr=_as_float(raw.get(_FLAT_KEYS["psnr"]), "PSNR"),
                    ms_ssim=_as_float(raw.get(_FLAT_KEYS["ms_ssim"]), "MS_SSIM"),
                )
            )
        return cls(frames)

    def to_list(self) -> list[dict[str, Any]]:
        return [
            {
                _FLAT_KEYS["frame_num"]: f.frame_num,
                _FLAT_KEYS["vmaf"]: f.vmaf,
                _FLAT_KEYS["psnr"]: f.psnr,
                _FLAT_KEYS["ms_ssim"]: f.ms_ssim,
            }
            for f in self._frames
        ]

    def to_json(self) -> str:
        """Encode to the flat array format."""
        return json.dumps(self.to_list())

    @classmethod
    def load(cls, path: Path) -> "FrameMetrics":
        """Read a flat frame metrics file."""
        return cls.from_json(path.read_bytes())

    def save(self, path: Path) -> None:
        """Write the flat array format to *path*."""
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_list(), f, indent=2)
