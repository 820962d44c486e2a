from pathlib import Path

import pytest

from killall.core.config_validator import CONFIG_FILENAME, load_config_file, validate_config
from killall.core.errors import DurationRangeError, ValidationError


def test_minimal_config_validates(tmp_path: Path) -> None:
    config = validate_config({"version": 1, "timeout": "1 hour"}, tmp_path)

    assert config.timeout == "1 hour"
    assert config.timeout_ms == 3_600_000
    assert config.command is None
    assert config.execution.retries == 0
    assert config.hooks.before_destroy == ()


def test_full_config_accepts_camel_case_keys(tmp_path: Path) -> None:
    (tmp_path / "infra").mkdir()
    config = validate_config(
        {
            "version": 1,
            "timeout": "2 hours",
            "command": "terraform destroy -auto-approve",
            "name": "staging-env",
            "tags": ["aws", "staging"],
            "execution": {
                "retries": 2,
                "environment": {"AWS_PROFILE": "dev"},
                "workingDirectory": "infra",
                "shell": "/bin/sh",
            },
            "hooks": {
                "beforeDestroy": ["echo start"],
                "afterDestroy": ["echo done"],
                "onFailure": ["echo failed"],
            },
        },
        tmp_path,
    )

    assert config.name == "staging-env"
    assert config.tags == ("aws", "staging")
    assert config.execution.retries == 2
    assert config.execution.environment == {"AWS_PROFILE": "dev"}
    assert config.execution.working_directory == "infra"
    assert config.hooks.before_destroy == ("echo start",)
    assert config.hooks.on_failure == ("echo failed",)


def test_snake_case_keys_are_accepted(tmp_path: Path) -> None:
    config = validate_config(
        {
            "version": 1,
            "timeout": "1h",
            "execution": {"environment_variables": {"A": "1"}, "working_directory": "."},
            "hooks": {"before_destroy": ["echo hi"]},
        },
        tmp_path,
    )

    assert config.execution.environment == {"A": "1"}
    assert config.hooks.before_destroy == ("echo hi",)


def test_timeout_below_floor_is_range_error(tmp_path: Path) -> None:
    with pytest.raises(DurationRangeError) as exc_info:
        validate_config({"version": 1, "timeout": "500 milliseconds"}, tmp_path)

    assert exc_info.value.field == "timeout"
    assert "1 second" in str(exc_info.value)


@pytest.mark.parametrize("timeout", ["9" * 400 + "d", "9" * 5000])
def test_absurd_timeout_is_range_error(tmp_path: Path, timeout: str) -> None:
    with pytest.raises(DurationRangeError) as exc_info:
        validate_config({"version": 1, "timeout": timeout}, tmp_path)

    assert exc_info.value.field == "timeout"
    assert exc_info.value.bound == "maximum"


@pytest.mark.parametrize(
    ("raw", "field"),
    [
        (["not", "a", "mapping"], "config"),
        ({"timeout": "1h"}, "version"),
        ({"version": 2, "timeout": "1h"}, "version"),
        ({"version": True, "timeout": "1h"}, "version"),
        ({"version": 1}, "timeout"),
        ({"version": 1, "timeout": 3600}, "timeout"),
        ({"version": 1, "timeout": "later"}, "timeout"),
        ({"version": 1, "timeout": "1h", "command": "  "}, "command"),
        ({"version": 1, "timeout": "1h", "name": "bad name!"}, "name"),
        ({"version": 1, "timeout": "1h", "tags": ["ok", "not ok"]}, "tags"),
        ({"version": 1, "timeout": "1h", "tags": ["x" * 51]}, "tags"),
        ({"version": 1, "timeout": "1h", "execution": {"retries": 11}}, "execution.retries"),
        ({"version": 1, "timeout": "1h", "execution": {"retries": "2"}}, "execution.retries"),
        (
            {"version": 1, "timeout": "1h", "execution": {"environment": {"A": 1}}},
            "execution.environment",
        ),
        (
            {"version": 1, "timeout": "1h", "execution": {"workingDirectory": "../../etc"}},
            "execution.workingDirectory",
        ),
        (
            {"version": 1, "timeout": "1h", "hooks": {"beforeDestroy": ["ok", ""]}},
            "hooks.beforeDestroy",
        ),
        ({"version": 1, "timeout": "1h", "hooks": {"onFailure": "echo"}}, "hooks.onFailure"),
    ],
)
def test_invalid_configs_name_the_failing_field(
    tmp_path: Path, raw: object, field: str
) -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_config(raw, tmp_path)

    assert exc_info.value.field == field


def test_validation_fails_fast_on_first_rule(tmp_path: Path) -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_config({"version": 3, "timeout": "nope", "name": "bad name"}, tmp_path)

    assert exc_info.value.field == "version"


def test_load_config_file(tmp_path: Path) -> None:
    (tmp_path / CONFIG_FILENAME).write_text(
        "version: 1\ntimeout: 30 minutes\ncommand: echo bye\n",
        encoding="utf-8",
    )

    config = load_config_file(tmp_path)

    assert config.command == "echo bye"
    assert config.timeout_ms == 1_800_000


def test_load_config_file_errors(tmp_path: Path) -> None:
    with pytest.raises(ValidationError) as missing:
        load_config_file(tmp_path)
    assert missing.value.field == "file"

    (tmp_path / CONFIG_FILENAME).write_text("version: [1\n", encoding="utf-8")
    with pytest.raises(ValidationError) as broken:
        load_config_file(tmp_path)
    assert broken.value.field == "yaml"
