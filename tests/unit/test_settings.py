from pathlib import Path

import pytest
import yaml

from killall.core.errors import ConfigurationError
from killall.core.settings import (
    AppSettings,
    ConfigurationService,
    EnvSettings,
    merge_settings,
)


def test_merge_settings_is_pure_and_reports_unknown_keys() -> None:
    current = {"scheduler": {"max_concurrent_jobs": 5, "retry_attempts": 3}, "flag": True}
    updates = {"scheduler": {"max_concurrent_jobs": 2, "bogus": 1}, "extra": {"a": 1}}

    merged, unknown = merge_settings(current, updates)

    assert merged == {"scheduler": {"max_concurrent_jobs": 2, "retry_attempts": 3}, "flag": True}
    assert sorted(unknown) == ["extra", "scheduler.bogus"]
    assert current["scheduler"]["max_concurrent_jobs"] == 5


def test_merge_settings_replaces_free_form_environment() -> None:
    current = {"executor": {"environment": {"PATH": "/bin", "HOME": "/root"}}}

    merged, unknown = merge_settings(current, {"executor": {"environment": {"TF_LOG": "1"}}})

    assert merged["executor"]["environment"] == {"TF_LOG": "1"}
    assert unknown == []


def test_configuration_service_creates_missing_file(tmp_path: Path) -> None:
    path = tmp_path / "conf" / "killall.yaml"
    service = ConfigurationService(path)

    settings = service.load()

    assert path.exists()
    assert settings == AppSettings()
    saved = yaml.safe_load(path.read_text(encoding="utf-8"))
    assert saved["scheduler"]["max_concurrent_jobs"] == 5


def test_configuration_service_loads_partial_file(tmp_path: Path) -> None:
    path = tmp_path / "killall.yaml"
    path.write_text(
        "scheduler:\n  max_concurrent_jobs: 2\n  unknown_option: 1\nexecutor:\n  retry_backoff: 1\n",
        encoding="utf-8",
    )

    settings = ConfigurationService(path).load()

    assert settings.scheduler.max_concurrent_jobs == 2
    assert settings.scheduler.retry_attempts == 3
    assert settings.executor.retry_backoff == 1.0


def test_update_persists_and_invalid_update_keeps_current(tmp_path: Path) -> None:
    path = tmp_path / "killall.yaml"
    service = ConfigurationService(path)
    service.load()

    updated = service.update({"executor": {"max_concurrent_executions": 7}})
    assert updated.executor.max_concurrent_executions == 7
    assert ConfigurationService(path).load().executor.max_concurrent_executions == 7

    with pytest.raises(ConfigurationError):
        service.update({"scheduler": {"default_timeout": "whenever"}})
    with pytest.raises(ConfigurationError):
        service.update({"scheduler": {"max_concurrent_jobs": 0}})

    assert service.get().executor.max_concurrent_executions == 7
    assert service.get().scheduler.default_timeout == "2 hours"


def test_reset_to_defaults(tmp_path: Path) -> None:
    service = ConfigurationService(tmp_path / "killall.yaml")
    service.load()
    service.update({"notifications": {"enabled": False}})

    reset = service.reset_to_defaults()

    assert reset.notifications.enabled is True


def test_malformed_settings_file(tmp_path: Path) -> None:
    path = tmp_path / "killall.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        ConfigurationService(path).load()


def test_env_settings_use_prefix(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("KILLALL_CONFIG_PATH", str(tmp_path / "custom.yaml"))
    monkeypatch.setenv("KILLALL_LOG_FORMAT", "json")
    monkeypatch.setenv("KILLALL_API_PORT", "9123")

    env = EnvSettings()

    assert env.config_path == tmp_path / "custom.yaml"
    assert env.log_format == "json"
    assert env.api_port == 9123
