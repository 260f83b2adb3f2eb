"""Tests for the onchain-deployer command line interface."""

import json

import pytest
import yaml
from typer.testing import CliRunner

from onchain_deployer.cli import EXIT_CONFIGURATION, EXIT_INCOMPLETE, create_app
from onchain_deployer.executor.execution_log import ExecutionLog

QUIET = {"LOG_LEVEL": "CRITICAL", "SIMULATE_LEDGER": None, "LEDGER_FACTORY": None}


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def app():
    return create_app()


@pytest.fixture
def workflow_file(tmp_path, sample_workflow_document):
    path = tmp_path / "token-rollout.yaml"
    path.write_text(yaml.safe_dump(sample_workflow_document))
    return path


def _write_env(path, values):
    path.write_text("".join(f"{key}={value}\n" for key, value in values.items()))
    return path


@pytest.fixture
def env_file(tmp_path, sample_env):
    return _write_env(tmp_path / ".env", sample_env)


class TestWorkflowsCommand:
    """Test listing bundled workflows."""

    def test_lists_bundled(self, runner, app):
        result = runner.invoke(app, ["workflows"], env=QUIET)

        assert result.exit_code == 0
        names = [line.split()[0] for line in result.output.splitlines() if line.strip()]
        assert names == ["governance", "launchpad", "proxy-upgrade", "ve-token"]


class TestPlanCommand:
    """Test dry-run planning."""

    def test_plan_file(self, runner, app, workflow_file, env_file):
        result = runner.invoke(
            app, ["plan", "--file", str(workflow_file), "--env-file", str(env_file)], env=QUIET
        )

        assert result.exit_code == 0, result.output
        assert "Plan for token-rollout" in result.output
        assert "4. revoke_admin_deployer" in result.output

    def test_plan_json(self, runner, app, workflow_file, env_file):
        result = runner.invoke(
            app,
            ["plan", "--file", str(workflow_file), "--env-file", str(env_file), "--json"],
            env=QUIET,
        )

        assert result.exit_code == 0
        rendered = json.loads(result.stdout)
        assert rendered["workflow"] == "token-rollout"

    def test_plan_bundled_missing_configuration(self, runner, app, tmp_path):
        env_file = _write_env(tmp_path / ".env", {"BUY_TAX": "100"})

        result = runner.invoke(app, ["plan", "launchpad", "--env-file", str(env_file)], env=QUIET)

        assert result.exit_code == EXIT_CONFIGURATION
        assert "MISSING_PARAMETER" in result.output

    def test_plan_bundled(self, runner, app, tmp_path, launchpad_env):
        env_file = _write_env(tmp_path / ".env", launchpad_env)

        result = runner.invoke(app, ["plan", "launchpad", "--env-file", str(env_file)], env=QUIET)

        assert result.exit_code == 0, result.output
        assert "Plan for launchpad" in result.output

    def test_plan_needs_a_workflow(self, runner, app):
        result = runner.invoke(app, ["plan"], env=QUIET)
        assert result.exit_code == 2


class TestRunCommand:
    """Test running workflows through the CLI."""

    def test_run_file_simulated(self, runner, app, workflow_file, env_file, tmp_path):
        log_path = tmp_path / "log.jsonl"

        result = runner.invoke(
            app,
            [
                "run",
                "--file",
                str(workflow_file),
                "--env-file",
                str(env_file),
                "--simulate",
                "--log",
                str(log_path),
            ],
            env=QUIET,
        )

        assert result.exit_code == 0, result.output
        assert "Workflow token-rollout complete" in result.output
        assert len(ExecutionLog(log_path)) == 4

    def test_out_of_range_override(self, runner, app, workflow_file, env_file, tmp_path):
        result = runner.invoke(
            app,
            [
                "run",
                "--file",
                str(workflow_file),
                "--env-file",
                str(env_file),
                "--set",
                "FEE_BPS=11000",
                "--simulate",
                "--log",
                str(tmp_path / "log.jsonl"),
            ],
            env=QUIET,
        )

        assert result.exit_code == EXIT_CONFIGURATION
        assert "VALIDATION_ERROR" in result.output
        assert not (tmp_path / "log.jsonl").exists()

    def test_malformed_override(self, runner, app, workflow_file):
        result = runner.invoke(
            app, ["run", "--file", str(workflow_file), "--set", "FEE_BPS", "--simulate"], env=QUIET
        )
        assert result.exit_code == 2

    def test_ledger_required(self, runner, app, workflow_file, env_file, tmp_path):
        result = runner.invoke(
            app,
            [
                "run",
                "--file",
                str(workflow_file),
                "--env-file",
                str(env_file),
                "--log",
                str(tmp_path / "log.jsonl"),
            ],
            env=QUIET,
        )

        assert result.exit_code == EXIT_CONFIGURATION
        assert "LEDGER_NOT_CONFIGURED" in result.output

    def test_incomplete_run(self, runner, app, sample_workflow_document, env_file, tmp_path):
        steps = sample_workflow_document["steps"]
        del steps[3]["paired_with"]
        sample_workflow_document["steps"] = [steps[0], steps[3]]
        sample_workflow_document["verify"] = []
        workflow_file = tmp_path / "strand.yaml"
        workflow_file.write_text(yaml.safe_dump(sample_workflow_document))

        result = runner.invoke(
            app,
            [
                "run",
                "--file",
                str(workflow_file),
                "--env-file",
                str(env_file),
                "--simulate",
                "--log",
                str(tmp_path / "log.jsonl"),
            ],
            env=QUIET,
        )

        assert result.exit_code == EXIT_INCOMPLETE
        assert "incomplete" in result.output
        assert "SEQUENCING_ERROR" in result.output

    def test_missing_workflow_file(self, runner, app, tmp_path):
        result = runner.invoke(
            app, ["run", "--file", str(tmp_path / "absent.yaml"), "--simulate"], env=QUIET
        )
        assert result.exit_code == EXIT_CONFIGURATION

    def test_run_bundled_workflow(self, runner, app, tmp_path, launchpad_env):
        env_file = _write_env(tmp_path / ".env", launchpad_env)

        result = runner.invoke(
            app,
            [
                "run-launchpad",
                "--env-file",
                str(env_file),
                "--simulate",
                "--json",
                "--log",
                str(tmp_path / "log.jsonl"),
            ],
            env=QUIET,
        )

        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["success"] is True


class TestLogCommand:
    """Test execution log inspection."""

    def test_show_log(self, runner, app, workflow_file, env_file, tmp_path):
        log_path = tmp_path / "log.jsonl"
        runner.invoke(
            app,
            [
                "run",
                "--file",
                str(workflow_file),
                "--env-file",
                str(env_file),
                "--simulate",
                "--log",
                str(log_path),
            ],
            env=QUIET,
        )

        result = runner.invoke(app, ["log", "--log", str(log_path)], env=QUIET)
        assert result.exit_code == 0
        assert len(result.output.splitlines()) == 4
        assert "deploy_token #1 confirmed" in result.output

        filtered = runner.invoke(
            app, ["log", "--log", str(log_path), "--step", "register_token"], env=QUIET
        )
        assert filtered.output.splitlines()[0].split()[1] == "register_token"
        assert len(filtered.output.splitlines()) == 1

    def test_missing_log(self, runner, app, tmp_path):
        result = runner.invoke(app, ["log", "--log", str(tmp_path / "none.jsonl")], env=QUIET)

        assert result.exit_code == EXIT_CONFIGURATION
        assert "no execution log" in result.output
