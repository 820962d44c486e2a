from pathlib import Path

from fastapi.testclient import TestClient

from killall.api.app import create_app
from killall.api.deps import build_services
from killall.core.settings import EnvSettings


def test_config_get_update_and_reset(tmp_path: Path) -> None:
    env = EnvSettings(config_path=tmp_path / "killall.yaml", database_path=tmp_path / "killall.db")
    app = create_app(build_services(env))

    with TestClient(app) as client:
        current = client.get("/api/v1/config")
        assert current.status_code == 200
        assert current.json()["scheduler"]["max_concurrent_jobs"] == 5

        updated = client.patch(
            "/api/v1/config",
            json={"scheduler": {"max_concurrent_jobs": 2}, "unknown": {"x": 1}},
        )
        assert updated.status_code == 200
        assert updated.json()["scheduler"]["max_concurrent_jobs"] == 2
        assert "unknown" not in updated.json()

        invalid = client.patch("/api/v1/config", json={"scheduler": {"default_timeout": "later"}})
        assert invalid.status_code == 400
        assert invalid.json()["detail"]["error"] == "ConfigurationError"

        reset = client.post("/api/v1/config/reset")
        assert reset.status_code == 200
        assert reset.json()["scheduler"]["max_concurrent_jobs"] == 5

    assert (tmp_path / "killall.yaml").exists()
