"""Tests for main.py — the typer command-line adapter."""

from __future__ import annotations

import sys
from pathlib import Path
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

import main
from unetbridge.config import ConfigManager
from unetbridge.connection import HostIdentity

runner = CliRunner()


@pytest.fixture()
def config(tmp_path: Path) -> ConfigManager:
    cm = ConfigManager(base_dir=tmp_path / "config")
    with patch("main.ConfigManager", return_value=cm):
        yield cm


def _run(tmp_path: Path, *args: str):
    return runner.invoke(main.app, ["run", "--process-folder", str(tmp_path / "process"), *args])


class TestRunCommand:
    def test_local_job_succeeds(self, config, tmp_path) -> None:
        (tmp_path / "in.txt").write_text("abc")
        code = "import sys; d = sys.argv[1]; open(d + '/out.txt', 'w').write(open(d + '/in.txt').read() * 2)"
        result = _run(
            tmp_path,
            "--upload", f"{tmp_path / 'in.txt'}:in.txt",
            "--download", f"out.txt:{tmp_path / 'out.txt'}",
            "--", sys.executable, "-c", code, "{folder}",
        )
        assert result.exit_code == 0, result.output
        assert "100.0%" in result.output
        assert (tmp_path / "out.txt").read_text() == "abcabc"
        assert not (tmp_path / "process").exists()

    def test_worker_failure_exits_1(self, config, tmp_path) -> None:
        result = _run(tmp_path, "--", sys.executable, "-c", "import sys; sys.exit(4)")
        assert result.exit_code == 1
        assert "exited with status 4" in result.output

    def test_configuration_error_exits_2(self, config, tmp_path) -> None:
        result = _run(tmp_path, "--upload", f"{tmp_path / 'missing.h5'}:in.h5", "--", sys.executable)
        assert result.exit_code == 2
        assert "Input file not found" in result.output

    def test_malformed_upload_pair(self, config, tmp_path) -> None:
        result = _run(tmp_path, "--upload", "no-separator", "--", sys.executable)
        assert result.exit_code == 2


class TestHostsCommand:
    def test_lists_remembered_hosts(self, config) -> None:
        config.remember_host(HostIdentity("gpu01", 2222, "alice"), auth_method="key", key_path="/k")
        result = runner.invoke(main.app, ["hosts"])
        assert result.exit_code == 0
        assert "alice@gpu01:2222  (key)" in result.output

    def test_no_hosts(self, config) -> None:
        result = runner.invoke(main.app, ["hosts"])
        assert result.exit_code == 0
        assert result.output == ""
