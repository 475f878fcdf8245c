"""Shared test fixtures and helpers.

Provides common fixtures used across multiple test modules to eliminate
duplication. Each test module can still define its own specialised
fixtures when needed.
"""

import json
import os
import shutil
from pathlib import Path

import pytest

from ease.errors import MetadataError
from ease.metadata import VideoMetadata
from ease.quality import VMAFConfig

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def tool_available(name: str) -> bool:
    """Check whether a CLI tool is available on PATH."""
    return shutil.which(name) is not None


class FakeMetadata:
    """Metadata collaborator that never runs ffprobe.

    Existing files get ``default`` unless their basename is listed in
    ``overrides``; missing files raise MetadataError like a real probe.
    """

    def __init__(
        self,
        default: VideoMetadata | None = None,
        overrides: dict[str, VideoMetadata] | None = None,
    ) -> None:
        self.default = default or VideoMetadata(duration=2.0, frame_count=3)
        self.overrides = overrides or {}
        self.calls: list[str] = []

    def extract(self, video_file: str | Path) -> VideoMetadata:
        self.calls.append(str(video_file))
        if not Path(video_file).exists():
            msg = f"video file not found: {video_file}"
            raise MetadataError(msg)
        return self.overrides.get(os.path.basename(str(video_file)), self.default)


def fake_vmaf_config(report: Path, exit_code: int = 0) -> VMAFConfig:
    """VMAFConfig whose "ffmpeg" is sh copying *report* to the result file."""
    return VMAFConfig(
        ffmpeg_path="/bin/sh",
        template=f'-c "cp {report} {{{{ result_file }}}} && exit {exit_code}"',
    )


def failing_vmaf_config(exit_code: int = 2) -> VMAFConfig:
    """VMAFConfig whose "ffmpeg" prints something and fails."""
    return VMAFConfig(
        ffmpeg_path="/bin/sh",
        template=f'-c "echo libvmaf exploded; exit {exit_code}"',
    )


# ---------------------------------------------------------------------------
# libvmaf report fixtures
# ---------------------------------------------------------------------------


def make_vmaf_report(psnr_key: str = "psnr_y", ms_ssim_key: str = "float_ms_ssim") -> dict:
    """Three-frame libvmaf JSON log using the given metric key spellings."""
    samples = [
        (0, 90.0, 40.0, 0.98),
        (1, 95.0, 42.0, 0.99),
        (2, 85.0, 38.0, 0.97),
    ]
    return {
        "version": "2.3.1",
        "fps": 25.0,
        "frames": [
            {
                "frameNum": n,
                "metrics": {
                    "integer_adm2": 0.99,
                    psnr_key: psnr,
                    ms_ssim_key: ms_ssim,
                    "vmaf": vmaf,
                },
            }
            for n, vmaf, psnr, ms_ssim in samples
        ],
        "pooled_metrics": {
            psnr_key: {"min": 38.0, "max": 42.0, "mean": 40.0, "harmonic_mean": 39.9},
            ms_ssim_key: {"min": 0.97, "max": 0.99, "mean": 0.98, "harmonic_mean": 0.98},
            "vmaf": {"min": 85.0, "max": 95.0, "mean": 90.0, "harmonic_mean": 89.8},
        },
        "aggregate_metrics": {},
    }


@pytest.fixture
def vmaf_report() -> dict:
    """libvmaf log with the newer ``psnr_y`` / ``float_ms_ssim`` keys."""
    return make_vmaf_report()


@pytest.fixture
def vmaf_report_file(tmp_path: Path, vmaf_report: dict) -> Path:
    """Write vmaf_report to a JSON file and return its path."""
    path = tmp_path / "fixture_vqm.json"
    with open(path, "w") as f:
        json.dump(vmaf_report, f)
    return path


@pytest.fixture
def fake_metadata() -> FakeMetadata:
    """Metadata collaborator reporting 2 s / 3 frames for every existing file."""
    return FakeMetadata()


@pytest.fixture
def source_files(tmp_path: Path) -> list[str]:
    """Two small placeholder source videos."""
    paths = []
    for name in ("a.mp4", "b.mp4"):
        path = tmp_path / "src" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"source")
        paths.append(str(path))
    return paths
