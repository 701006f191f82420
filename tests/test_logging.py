"""Tests for logging configuration and helpers."""

import json
import logging

import pytest

from databridge.utils.logging import configure_logging, get_logger, sanitize_payload


@pytest.fixture
def restore_logging():
    yield
    configure_logging(level="WARNING")


class TestSanitizePayload:
    def test_masks_sensitive_keys(self):
        payload = {
            "host": "db",
            "password": "s3cret",
            "ApiKey": "k",
            "nested": {"access_token": "t", "port": 5432},
            "items": [{"secret": "x"}],
        }

        assert sanitize_payload(payload) == {
            "host": "db",
            "password": "***",
            "ApiKey": "***",
            "nested": {"access_token": "***", "port": 5432},
            "items": [{"secret": "***"}],
        }

    def test_empty_secrets_stay_empty(self):
        assert sanitize_payload({"password": None}) == {"password": None}

    def test_depth_limit(self):
        assert sanitize_payload({"a": {"b": 1}}, max_depth=1) == {"a": "<truncated>"}

    def test_scalars_pass_through(self):
        assert sanitize_payload("plain") == "plain"


class TestConfigureLogging:
    def test_json_file_output(self, tmp_path, restore_logging):
        log_file = tmp_path / "logs" / "run.log"
        configure_logging(level="ERROR", log_file=str(log_file), file_level="INFO")

        get_logger("databridge.test").info("stage_started", stage="extract")
        for handler in logging.getLogger().handlers:
            handler.flush()

        entries = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert entries[-1]["level"] == "info"
        assert "stage_started" in entries[-1]["message"]
        assert "stage=extract" in entries[-1]["message"]

    def test_reconfigure_replaces_handlers(self, tmp_path, restore_logging):
        configure_logging(log_file=str(tmp_path / "a.log"))
        configure_logging(log_file=str(tmp_path / "b.log"))

        files = [
            h.baseFilename
            for h in logging.getLogger().handlers
            if isinstance(h, logging.FileHandler)
        ]
        assert files == [str(tmp_path / "b.log")]
