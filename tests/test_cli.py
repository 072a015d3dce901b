"""
Command line tests
"""
import json

import pytest
import yaml
from click.testing import CliRunner

from process_engine.cli import EXIT_MIGRATION_FAILURE, cli


@pytest.fixture
def runner(monkeypatch):
    monkeypatch.setenv("EVALUATOR_ISOLATION", "inline")
    return CliRunner()


@pytest.fixture
def workflow_file(tmp_path, linear_definition):
    path = tmp_path / "linear.yaml"
    path.write_text(yaml.safe_dump(linear_definition), encoding="utf-8")
    return path


class TestValidateCommand:

    def test_valid_definition(self, runner, workflow_file):
        result = runner.invoke(cli, ["validate", str(workflow_file)])

        assert result.exit_code == 0
        assert json.loads(result.output)["errors"] == []

    def test_errors_exit_non_zero(self, runner, tmp_path, linear_definition):
        linear_definition["steps"][1]["nextSteps"] = "nowhere"
        path = tmp_path / "broken.json"
        path.write_text(json.dumps(linear_definition), encoding="utf-8")

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert any("nowhere" in error for error in json.loads(result.output)["errors"])

    def test_unparseable_file(self, runner, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("name: [unclosed", encoding="utf-8")

        result = runner.invoke(cli, ["validate", str(path)])

        assert result.exit_code == 1
        assert "Failed to parse YAML" in result.output

    def test_missing_file_is_a_usage_error(self, runner, tmp_path):
        result = runner.invoke(cli, ["validate", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 2


class TestDryRunCommand:

    def test_prints_the_dry_run(self, runner, workflow_file):
        result = runner.invoke(cli, ["--log-level", "error", "test",
                                     "--workflow", str(workflow_file), "--data", '{"amount": 21}'])

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["execution"]["dry_run"] is True
        assert report["execution"]["status"] == "completed"
        assert report["execution"]["context"]["variables"]["doubled"] == 42
        assert report["wouldChange"] == []

    def test_bad_input_json(self, runner, workflow_file):
        result = runner.invoke(cli, ["test", "--workflow", str(workflow_file), "--data", "{oops"])

        assert result.exit_code == 2
        assert "not valid JSON" in result.output

    def test_invalid_workflow_reports_the_error(self, runner, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text(json.dumps({"name": "Empty"}), encoding="utf-8")

        result = runner.invoke(cli, ["test", "--workflow", str(path)])

        assert result.exit_code == 1
        assert '"error": "ValidationError"' in result.output


class TestMigrateCommand:

    def test_creates_the_schema(self, runner, monkeypatch, tmp_path):
        database = tmp_path / "engine.db"
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{database}")

        result = runner.invoke(cli, ["migrate"])

        assert result.exit_code == 0, result.output
        assert "Schema is up to date" in result.output
        assert database.exists()

    def test_failure_exit_code(self, runner, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "nosuchdialect://localhost/engine")

        result = runner.invoke(cli, ["migrate"])

        assert result.exit_code == EXIT_MIGRATION_FAILURE
        assert "Migration failed" in result.output
