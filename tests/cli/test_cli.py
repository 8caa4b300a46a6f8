"""Tests for the forkq command line."""

from typer.testing import CliRunner

from forkq.cli.main import app

runner = CliRunner()


def test_run_reports_statuses(controller):
    result = runner.invoke(app, ["run", "exit 0", "exit 3", "--limit", "1"])
    assert result.exit_code == 1
    assert "finished" in result.output
    assert "failure" in result.output


def test_run_all_successful(controller):
    result = runner.invoke(app, ["run", "true", "true", "-p", "1", "-p", "2"])
    assert result.exit_code == 0
    assert "failure" not in result.output


def test_run_rejects_extra_priorities(controller):
    result = runner.invoke(app, ["run", "true", "-p", "1", "-p", "2"])
    assert result.exit_code != 0


def test_config_lists_settings():
    result = runner.invoke(app, ["config"])
    assert result.exit_code == 0
    assert "lock_dir" in result.output
    assert "default_max_workers" in result.output


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "forkq" in result.output
