"""
Tests — CLI
============
Tests for the ``church-geocode`` command via :class:`click.testing.CliRunner`.
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from church_geocoder.cli import main
from church_geocoder.config import Credentials, RunConfig
from church_geocoder.job import GeocodingJob

from conftest import FAST_RPM, FakeGateway, ScriptedBackend, church


@pytest.fixture()
def no_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    names = set(Credentials.ENV_NAMES) | {"VITE_" + name for name in Credentials.ENV_NAMES}
    monkeypatch.setattr(os, "environ", {k: v for k, v in os.environ.items() if k not in names})


@pytest.fixture()
def fake_job(monkeypatch: pytest.MonkeyPatch):
    """Make ``GeocodingJob.from_env`` build a job over in-memory fakes."""
    gateway = FakeGateway([church("1"), church("2", address="")])

    def from_env(cls, config: RunConfig, *, backend: str, log_dir: Path, env_file, verbose: bool):
        config = RunConfig(requests_per_minute=FAST_RPM, max_records=config.max_records)
        return cls(config, ScriptedBackend(), gateway, log_dir=log_dir, verbose=verbose)

    monkeypatch.setattr(GeocodingJob, "from_env", classmethod(from_env))
    return gateway


class TestCli:
    def test_missing_credentials_exit_1(self, tmp_path: Path, no_credentials, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        result = CliRunner().invoke(main, ["--log-dir", str(tmp_path / "logs")])
        assert result.exit_code == 1
        assert "Missing required environment variables" in result.output

    def test_invalid_config_exit_1(self, tmp_path: Path, fake_job) -> None:
        config = tmp_path / "geocoding-config.yaml"
        config.write_text("processing:\n  batch_size: 0\n", encoding="utf-8")
        result = CliRunner().invoke(main, ["--config", str(config), "--log-dir", str(tmp_path)])
        assert result.exit_code == 1
        assert "batch_size" in result.output

    def test_successful_run_prints_counts(self, tmp_path: Path, fake_job) -> None:
        result = CliRunner().invoke(
            main, ["--config", str(tmp_path / "absent.yaml"), "--log-dir", str(tmp_path), "--all"]
        )
        assert result.exit_code == 0, result.output
        assert "Processed: 2" in result.output
        assert "Geocoded: 1" in result.output
        assert "Skipped (incomplete address): 1" in result.output
        assert fake_job.written.keys() == {"1"}

    def test_limit_zero_runs_unlimited(self, tmp_path: Path, fake_job) -> None:
        config = tmp_path / "geocoding-config.yaml"
        config.write_text("processing:\n  max_records: 1\n", encoding="utf-8")
        result = CliRunner().invoke(
            main, ["--config", str(config), "--log-dir", str(tmp_path), "--limit", "0"]
        )
        assert result.exit_code == 0, result.output
        assert "Processed: 2" in result.output

    def test_negative_limit_rejected(self) -> None:
        result = CliRunner().invoke(main, ["--limit", "-1"])
        assert result.exit_code == 2
