"""Tests for logging helpers."""

import logging
from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeMetadata

from ease.log import DEBUG_LOG_FORMAT, LOG_FORMAT, get_logger, setup_logging
from ease.plan import Plan, PlanConfig, Scheme


class TestGetLogger:
    """Tests for logger injection."""

    def test_given_logger_wins(self) -> None:
        custom = logging.getLogger("ease.tests.custom")
        assert get_logger(custom, "ease.plan") is custom

    def test_falls_back_to_named_logger(self) -> None:
        assert get_logger(None, "ease.plan") is logging.getLogger("ease.plan")


class TestSetupLogging:
    """Tests for root logger configuration."""

    def test_info(self) -> None:
        with patch("ease.log.logging.basicConfig") as basic_config:
            setup_logging()
        basic_config.assert_called_once_with(level=logging.INFO, format=LOG_FORMAT, force=True)

    def test_debug(self) -> None:
        with patch("ease.log.logging.basicConfig") as basic_config:
            setup_logging(debug=True)
        basic_config.assert_called_once_with(
            level=logging.DEBUG, format=DEBUG_LOG_FORMAT, force=True
        )


class TestInjectedLogger:
    """Components log through the logger they are given."""

    def test_plan_logs_job_progress(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture, source_files: list[str]
    ) -> None:
        logger = logging.getLogger("ease.tests.run")
        config = PlanConfig(
            inputs=source_files[:1], schemes=[Scheme("enc", "cp %INPUT% %OUTPUT%.mp4")]
        )
        plan = Plan.from_config(config, tmp_path / "out", FakeMetadata(), logger=logger)

        with caplog.at_level(logging.INFO, logger="ease.tests.run"):
            plan.run()

        messages = [r.getMessage() for r in caplog.records if r.name == "ease.tests.run"]
        assert any(m.startswith("Start encoding") for m in messages)
        assert any(m.startswith("Done encoding") for m in messages)
