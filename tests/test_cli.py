"""Tests for the command-line interface."""

import json

import pytest
import yaml
from click.testing import CliRunner

from databridge.cli.main import cli
from databridge.cli.utils import format_duration


@pytest.fixture
def config_file(tmp_path, source_db, target_db):
    catalog = tmp_path / "catalog.yaml"
    catalog.write_text(
        yaml.safe_dump(
            {
                "projects": {
                    "sales": {
                        "name": "Sales",
                        "source": {"engine": "sqlite", "database": source_db.database},
                        "target": {"engine": "sqlite", "database": target_db.database},
                        "tables": [
                            {
                                "source_table": "Customer",
                                "target_table": "dim_customer",
                                "kind": "dimension",
                                "columns": [
                                    {"source_column": "id", "target_column": "source_customer_id"},
                                    {
                                        "source_column": "name",
                                        "target_column": "name",
                                        "transformation_id": "uppercase",
                                    },
                                ],
                            }
                        ],
                    }
                }
            }
        )
    )
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "state": {"db_path": str(tmp_path / "state.db")},
                "queue": {"backoff_delay_ms": 1, "rate_limit_max": 100},
                "pipeline": {"retry_attempts": 1, "retry_delay_ms": 1},
                "catalog_file": str(catalog),
                "logging": {"file": None},
            }
        )
    )
    return path


class TestRun:
    def test_run_status_and_report(self, config_file):
        runner = CliRunner()

        result = runner.invoke(
            cli, ["--config", str(config_file), "run", "sales", "--execution-id", "e1"]
        )
        assert result.exit_code == 0, result.output
        assert "Execution e1 completed" in result.output

        result = runner.invoke(cli, ["--config", str(config_file), "status", "e1"])
        assert result.exit_code == 0, result.output
        assert "completed" in result.output

        result = runner.invoke(cli, ["--config", str(config_file), "report", "e1"])
        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["project_name"] == "Sales"
        assert report["summary"]["stages_completed"] == 5

    def test_unknown_project(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "run", "hr"])

        assert result.exit_code == 3
        assert "Unknown project: hr" in result.output

    def test_unknown_execution(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "status", "missing"])

        assert result.exit_code == 3

    def test_missing_report(self, config_file):
        result = CliRunner().invoke(cli, ["--config", str(config_file), "report", "missing"])

        assert result.exit_code == 3
        assert "No report for execution missing" in result.output

    def test_missing_catalog(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            yaml.safe_dump(
                {"state": {"db_path": str(tmp_path / "state.db")}, "logging": {"file": None}}
            )
        )

        result = CliRunner().invoke(cli, ["--config", str(path), "run", "sales"])

        assert result.exit_code == 2


class TestDelete:
    def test_delete_execution(self, config_file):
        runner = CliRunner()
        runner.invoke(cli, ["--config", str(config_file), "run", "sales", "--execution-id", "e1"])

        result = runner.invoke(cli, ["--config", str(config_file), "delete", "e1", "--yes"])
        assert result.exit_code == 0, result.output
        assert "Deleted" in result.output

        result = runner.invoke(cli, ["--config", str(config_file), "status", "e1"])
        assert result.exit_code == 3

    def test_declined_confirmation_keeps_state(self, config_file):
        runner = CliRunner()
        runner.invoke(cli, ["--config", str(config_file), "run", "sales", "--execution-id", "e1"])

        result = runner.invoke(cli, ["--config", str(config_file), "delete", "e1"], input="n\n")
        assert result.exit_code == 1

        result = runner.invoke(cli, ["--config", str(config_file), "status", "e1"])
        assert result.exit_code == 0

    def test_unknown_execution(self, config_file):
        result = CliRunner().invoke(
            cli, ["--config", str(config_file), "delete", "missing", "--yes"]
        )

        assert result.exit_code == 3


class TestFormatDuration:
    @pytest.mark.parametrize(
        "duration_ms,expected",
        [(None, "-"), (1500, "1.5s"), (135000, "2m 15s"), (3_725_000, "1h 2m 5s")],
    )
    def test_format(self, duration_ms, expected):
        assert format_duration(duration_ms) == expected
