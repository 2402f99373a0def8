"""Configuration for the validation service and door controller."""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field

from proxlock.frame_decoder import DEFAULT_READ_TIMEOUT, DEFAULT_SETTLE_TIME
from proxlock.proximity import DISTANCE_THRESHOLD_CM, RSSI_THRESHOLD
from proxlock.rate_limiter import MAX_REQUESTS, WINDOW_SECONDS
from proxlock.token_store import SHORT_TOKEN_TTL_SECONDS

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "proxlock"
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / "proxlock"

ADMIN_SECRET_ENV = "PROXLOCK_ADMIN_SECRET"


class ServiceConfig(BaseModel):
    """Validation service configuration."""
    host: str = "0.0.0.0"
    port: int = 3000
    db_path: Path = Field(default_factory=lambda: DEFAULT_DATA_DIR / "proxlock.db")
    audit_log_path: Path = Field(default_factory=lambda: DEFAULT_DATA_DIR / "audit.jsonl")
    admin_secret: str | None = None
    token_ttl_seconds: float = SHORT_TOKEN_TTL_SECONDS
    rate_window_seconds: float = WINDOW_SECONDS
    rate_max_requests: int = MAX_REQUESTS
    rssi_threshold: int = RSSI_THRESHOLD
    distance_threshold_cm: int = DISTANCE_THRESHOLD_CM
    token_sweep_interval_seconds: float = 30
    enrollment_sweep_interval_seconds: float = 24 * 60 * 60


class SensorConfig(BaseModel):
    """Rangefinder serial link."""
    port: str = "/dev/serial0"
    baudrate: int = 115200
    read_timeout_seconds: float = DEFAULT_READ_TIMEOUT
    settle_seconds: float = DEFAULT_SETTLE_TIME


class ControllerConfig(BaseModel):
    """Door controller configuration."""
    door_id: str = "LAB_968"
    validator_url: str = "http://localhost:3000"
    request_timeout_seconds: float = 5.0
    unlock_seconds: float = 3.0
    deny_cooldown_seconds: float = 2.0
    listen_host: str = "0.0.0.0"
    listen_port: int = 80
    lock_pin: int | None = None


class ProxlockConfig(BaseModel):
    """Top-level configuration file."""
    service: ServiceConfig = Field(default_factory=ServiceConfig)
    controller: ControllerConfig = Field(default_factory=ControllerConfig)
    sensor: SensorConfig = Field(default_factory=SensorConfig)


def get_config_path() -> Path:
    return DEFAULT_CONFIG_DIR / "config.yaml"


def load_config(path: Path | None = None) -> ProxlockConfig:
    """Load config from file, falling back to defaults.

    The admin secret may come from the environment instead of the file.
    """
    path = path or get_config_path()
    data = {}
    if path.exists():
        data = yaml.safe_load(path.read_text()) or {}
    config = ProxlockConfig.model_validate(data)
    if config.service.admin_secret is None:
        config.service.admin_secret = os.environ.get(ADMIN_SECRET_ENV)
    return config


def save_config(config: ProxlockConfig, path: Path | None = None) -> Path:
    """Save config to file."""
    path = path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    data = config.model_dump(mode="json", exclude={"service": {"admin_secret"}})
    path.write_text(yaml.dump(data, default_flow_style=False, sort_keys=False))
    return path
