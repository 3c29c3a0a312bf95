"""Tests for the command line interface."""

import json
from unittest.mock import Mock

import pytest
import yaml
from click.testing import CliRunner

from elastic_flow import main
from elastic_flow.config import EngineSettings


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    # Keep the CLI from replacing loguru sinks during tests
    monkeypatch.setattr(main, "setup_logging", Mock())


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workflow_file(tmp_path, chain_definition):
    path = tmp_path / "workflow.yaml"
    path.write_text(yaml.safe_dump(chain_definition))
    return path


class TestCommands:
    def test_version(self, runner):
        result = runner.invoke(main.cli, ["version"])
        assert result.exit_code == 0
        assert "Elastic Flow v0.1.0" in result.output

    def test_validate_valid_workflow(self, runner, workflow_file):
        result = runner.invoke(main.cli, ["validate", str(workflow_file)])
        assert result.exit_code == 0
        assert "Nodes: 4" in result.output
        assert "Edges: 3" in result.output

    def test_validate_reports_errors(self, runner, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "id": "broken",
                    "nodes": [{"id": "a", "blockId": "step"}],
                    "edges": [{"id": "e", "source": "a", "target": "ghost"}],
                }
            )
        )
        result = runner.invoke(main.cli, ["validate", str(path)])
        assert result.exit_code == 1
        assert "ghost" in result.output

    def test_analyze(self, runner, workflow_file):
        result = runner.invoke(main.cli, ["analyze", str(workflow_file)])
        assert result.exit_code == 0
        assert "data-e2" in result.output

    def test_run(self, runner, workflow_file):
        result = runner.invoke(main.cli, ["run", str(workflow_file), "--timeout", "10"])

        assert result.exit_code == 0
        summary = json.loads(result.stdout)
        assert summary["status"] == "completed"
        assert set(summary["results"]) == {"output"}
        assert summary["progress"]["completed_nodes"] == 4

    def test_run_with_block_catalog(self, runner, tmp_path):
        blocks = tmp_path / "blocks.yaml"
        blocks.write_text(
            yaml.safe_dump(
                {"blocks": [{"id": "echo", "name": "Echo", "outputs": [{"name": "value"}]}]}
            )
        )
        workflow = tmp_path / "echo.yaml"
        workflow.write_text(
            yaml.safe_dump(
                {"id": "echo", "nodes": [{"id": "e", "blockId": "echo", "config": {"value": 7}}]}
            )
        )

        result = runner.invoke(main.cli, ["run", str(workflow), "-b", str(blocks)])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["results"] == {"e": {"value": 7}}

    def test_run_unknown_block_fails(self, runner, tmp_path):
        workflow = tmp_path / "bad.yaml"
        workflow.write_text(yaml.safe_dump({"id": "bad", "nodes": [{"id": "x", "blockId": "nope"}]}))

        result = runner.invoke(main.cli, ["run", str(workflow)])
        assert result.exit_code == 1

    def test_init_config(self, runner, tmp_path):
        output = tmp_path / "engine.yaml"
        result = runner.invoke(main.cli, ["init-config", "-o", str(output), "--env", "production"])

        assert result.exit_code == 0
        settings = EngineSettings.load_from_yaml(output)
        assert settings.environment == "production"
        assert settings.execution.max_parallel_blocks == 4
