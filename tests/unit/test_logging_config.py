import json
import logging

import pytest
import structlog

from killall.logging_config import get_logger, mask_environment, setup_logging


def test_mask_environment_hides_secret_values() -> None:
    masked = mask_environment(
        {
            "PATH": "/usr/bin",
            "AWS_SECRET_ACCESS_KEY": "abc",
            "GITHUB_TOKEN": "ghp_x",
            "DB_PASSWORD": "pw",
            "TF_LOG": "DEBUG",
        }
    )

    assert masked == {
        "PATH": "/usr/bin",
        "AWS_SECRET_ACCESS_KEY": "***",
        "GITHUB_TOKEN": "***",
        "DB_PASSWORD": "***",
        "TF_LOG": "DEBUG",
    }


def test_json_logging_renders_event_and_context(capsys: pytest.CaptureFixture[str]) -> None:
    setup_logging("json", "INFO")
    get_logger("killall.test").info("project_scheduled", project_id="p1")

    lines = [line for line in capsys.readouterr().out.splitlines() if "project_scheduled" in line]
    assert lines
    payload = json.loads(lines[-1])
    assert payload["event"] == "project_scheduled"
    assert payload["project_id"] == "p1"
    assert payload["level"] == "info"

    logging.getLogger().handlers.clear()
    structlog.reset_defaults()
