"""Tests for configuration loading."""

import yaml

from proxlock.config import ADMIN_SECRET_ENV, ProxlockConfig, load_config, save_config


class TestConfig:
    def test_defaults_when_missing(self, tmp_path, monkeypatch):
        monkeypatch.delenv(ADMIN_SECRET_ENV, raising=False)
        config = load_config(tmp_path / "missing.yaml")

        assert config.service.port == 3000
        assert config.service.token_ttl_seconds == 60
        assert config.service.rate_max_requests == 3
        assert config.service.rssi_threshold == -70
        assert config.service.distance_threshold_cm == 90
        assert config.sensor.baudrate == 115200
        assert config.controller.door_id == "LAB_968"
        assert config.service.admin_secret is None

    def test_partial_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"controller": {"door_id": "LAB_969", "lock_pin": 17}}))

        config = load_config(path)
        assert config.controller.door_id == "LAB_969"
        assert config.controller.lock_pin == 17
        assert config.controller.unlock_seconds == 3.0

    def test_admin_secret_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ADMIN_SECRET_ENV, "from-env")
        assert load_config(tmp_path / "missing.yaml").service.admin_secret == "from-env"

    def test_file_secret_wins(self, tmp_path, monkeypatch):
        monkeypatch.setenv(ADMIN_SECRET_ENV, "from-env")
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"service": {"admin_secret": "from-file"}}))
        assert load_config(path).service.admin_secret == "from-file"

    def test_save_round_trip_omits_secret(self, tmp_path, monkeypatch):
        monkeypatch.delenv(ADMIN_SECRET_ENV, raising=False)
        config = ProxlockConfig()
        config.service.admin_secret = "hunter2"
        config.service.port = 8080
        path = save_config(config, tmp_path / "conf" / "config.yaml")

        assert "hunter2" not in path.read_text()
        loaded = load_config(path)
        assert loaded.service.port == 8080
        assert loaded.service.admin_secret is None
