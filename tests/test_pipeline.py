"""Tests for the end-to-end encode and measure pipeline."""

import json
from pathlib import Path

import pytest
from conftest import FakeMetadata, failing_vmaf_config, fake_vmaf_config

from ease.frames import FrameMetrics
from ease.metadata import VideoMetadata
from ease.pipeline import EncodePipeline, frames_file, vqm_result_file
from ease.plan import Plan, PlanConfig, Scheme
from ease.report import load_csv_report
from ease.store import MetricStore


def make_plan(
    source_files: list[str],
    out_dir: Path,
    metadata: FakeMetadata,
    schemes: list[Scheme] | None = None,
) -> Plan:
    schemes = schemes or [
        Scheme("good", "cp %INPUT% %OUTPUT%.mp4"),
        Scheme("bad", "echo no encoder >&2; exit 4"),
    ]
    return Plan.from_config(PlanConfig(inputs=source_files, schemes=schemes), out_dir, metadata)


class TestResultFilePaths:
    """Tests for the derived per-encode file names."""

    def test_vqm_result_file(self) -> None:
        assert vqm_result_file("out/a_enc.mp4") == "out/a_enc_vqm.json"

    def test_frames_file(self) -> None:
        assert frames_file("out/a_enc.mp4") == "out/a_enc_frames.json"

    def test_no_extension(self) -> None:
        assert vqm_result_file("out/a_enc") == "out/a_enc_vqm.json"


class TestEncodePipeline:
    """Tests for EncodePipeline.run()."""

    def test_end_to_end(
        self, tmp_path: Path, source_files: list[str], vmaf_report_file: Path
    ) -> None:
        out_dir = tmp_path / "out"
        metadata = FakeMetadata()
        pipeline = EncodePipeline(
            make_plan(source_files, out_dir, metadata),
            fake_vmaf_config(vmaf_report_file),
            metadata,
        )

        result = pipeline.run()

        # One failing scheme, but every measurement of good encodes passed
        assert not result.plan_result.ok
        assert result.vqm_failures == {}
        assert result.record_ids == [0, 1, 2, 3]

        good = pipeline.store.get(0)
        assert good.name == "good"
        assert good.compressed_file == str(out_dir / "a_good.mp4")
        assert good.vqm_result_file == str(out_dir / "a_good_vqm.json")
        assert good.vmaf_mean == pytest.approx(90.0)
        assert good.psnr_stdev == pytest.approx(2.0)
        assert good.video_duration == 2.0
        assert Path(good.vqm_result_file).exists()

        frames = FrameMetrics.load(out_dir / "a_good_frames.json")
        assert frames.values("vmaf") == [90.0, 95.0, 85.0]

        bad = pipeline.store.get(2)
        assert bad.name == "bad"
        assert bad.vqm_result_file == ""
        assert bad.vmaf_mean == 0.0

    def test_reports_written(
        self, tmp_path: Path, source_files: list[str], vmaf_report_file: Path
    ) -> None:
        out_dir = tmp_path / "out"
        metadata = FakeMetadata()
        pipeline = EncodePipeline(
            make_plan(source_files, out_dir, metadata),
            fake_vmaf_config(vmaf_report_file),
            metadata,
        )

        pipeline.run()

        df = load_csv_report(out_dir / "report.csv")
        assert list(df["name"]) == ["good", "good", "bad", "bad"]
        assert df.loc[0, "vmaf_mean"] == pytest.approx(90.0)
        with open(out_dir / "report.json") as f:
            doc = json.load(f)
        assert doc["ok"] is False
        assert len(doc["run_results"]) == 4

    def test_report_dir(
        self, tmp_path: Path, source_files: list[str], vmaf_report_file: Path
    ) -> None:
        metadata = FakeMetadata()
        pipeline = EncodePipeline(
            make_plan(source_files, tmp_path / "out", metadata),
            fake_vmaf_config(vmaf_report_file),
            metadata,
        )
        pipeline.run(report_dir=tmp_path / "reports")
        assert (tmp_path / "reports" / "report.csv").exists()
        assert (tmp_path / "reports" / "report.json").exists()

    def test_measurement_failures_collected(
        self, tmp_path: Path, source_files: list[str]
    ) -> None:
        metadata = FakeMetadata()
        pipeline = EncodePipeline(
            make_plan(source_files, tmp_path / "out", metadata),
            failing_vmaf_config(),
            metadata,
        )

        result = pipeline.run()

        assert not result.ok
        assert sorted(result.vqm_failures) == [0, 1]
        assert all("exit status 2" in msg for msg in result.vqm_failures.values())
        # The encode side of the record is kept
        assert pipeline.store.get(0).elapsed > 0

    def test_undecodable_reports_do_not_stop_reporting(
        self, tmp_path: Path, source_files: list[str]
    ) -> None:
        report = tmp_path / "garbled_vqm.json"
        report.write_bytes(b'{"frames": [{"frameNum": NaN}], "version": "\xff\xfe"}')
        metadata = FakeMetadata()
        out_dir = tmp_path / "out"
        schemes = [Scheme("good", "cp %INPUT% %OUTPUT%.mp4")]
        pipeline = EncodePipeline(
            make_plan(source_files, out_dir, metadata, schemes),
            fake_vmaf_config(report),
            metadata,
            workers=2,
        )

        result = pipeline.run()

        assert result.plan_result.ok
        assert sorted(result.vqm_failures) == [0, 1]
        assert all("invalid JSON" in msg for msg in result.vqm_failures.values())
        assert (out_dir / "report.csv").exists()
        assert (out_dir / "report.json").exists()
        assert len(load_csv_report(out_dir / "report.csv")) == 2

    def test_frame_count_mismatch_fails_one(
        self, tmp_path: Path, source_files: list[str], vmaf_report_file: Path
    ) -> None:
        metadata = FakeMetadata(
            default=VideoMetadata(duration=2.0, frame_count=3),
            overrides={"a_good.mp4": VideoMetadata(duration=2.0, frame_count=2)},
        )
        schemes = [Scheme("good", "cp %INPUT% %OUTPUT%.mp4")]
        pipeline = EncodePipeline(
            make_plan(source_files, tmp_path / "out", metadata, schemes),
            fake_vmaf_config(vmaf_report_file),
            metadata,
        )

        result = pipeline.run()

        assert result.plan_result.ok
        assert list(result.vqm_failures) == [0]
        assert "frame count mismatch" in result.vqm_failures[0]
        assert pipeline.store.get(1).vmaf_mean == pytest.approx(90.0)

    def test_frame_count_check_disabled(
        self, tmp_path: Path, source_files: list[str], vmaf_report_file: Path
    ) -> None:
        metadata = FakeMetadata(
            overrides={"a_good.mp4": VideoMetadata(duration=2.0, frame_count=2)},
        )
        schemes = [Scheme("good", "cp %INPUT% %OUTPUT%.mp4")]
        pipeline = EncodePipeline(
            make_plan(source_files, tmp_path / "out", metadata, schemes),
            fake_vmaf_config(vmaf_report_file),
            metadata,
            check_frame_count=False,
        )
        assert pipeline.run().ok

    def test_parallel_measurement(
        self, tmp_path: Path, source_files: list[str], vmaf_report_file: Path
    ) -> None:
        metadata = FakeMetadata()
        schemes = [Scheme(f"crf{crf}", "cp %INPUT% %OUTPUT%.mp4") for crf in (18, 23, 28)]
        store = MetricStore()
        pipeline = EncodePipeline(
            make_plan(source_files, tmp_path / "out", metadata, schemes),
            fake_vmaf_config(vmaf_report_file),
            metadata,
            store=store,
            workers=4,
        )

        result = pipeline.run()

        assert result.ok
        assert len(store) == 6
        for record_id in result.record_ids:
            record = store.get(record_id)
            assert record.vmaf_mean == pytest.approx(90.0)
            assert record.vqm_result_file == vqm_result_file(record.compressed_file)

    def test_invalid_workers(self, tmp_path: Path, fake_metadata: FakeMetadata) -> None:
        plan = Plan([], tmp_path / "out", fake_metadata)
        with pytest.raises(ValueError, match="workers"):
            EncodePipeline(plan, failing_vmaf_config(), fake_metadata, workers=0)
