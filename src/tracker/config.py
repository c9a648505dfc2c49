from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings

DATA_DIR_DEFAULT = Path.home() / ".tracker"


class Settings(BaseSettings):
    endpoint: str = "https://nodeserver-production-8388.up.railway.app"
    queue_path: Path = DATA_DIR_DEFAULT / "offline_queue.json"
    session_path: Path = DATA_DIR_DEFAULT / "session.json"
    snapshot_dir: Path = DATA_DIR_DEFAULT / "snapshots"
    database_url: str = "sqlite:///./tracker.db"

    delivery_timeout_seconds: float = 15.0
    config_timeout_seconds: float = 10.0
    collector_timeout_seconds: float = 20.0

    # Built-in cadence until the control plane answers
    default_location_minutes: int = 5
    default_biometric_minutes: int = 180

    replay_backlog: bool = False  # False keeps the clear-on-success queue semantics
    background_window_seconds: float = 30.0
    background_safety_margin_seconds: float = 2.0
    background_lead_seconds: float = 60.0

    app_version: str = "1.0"
    api_host: str = "127.0.0.1"
    api_port: int = 8000
    log_level: Optional[str] = None

    class Config:
        env_prefix = "TRACKER_"
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
