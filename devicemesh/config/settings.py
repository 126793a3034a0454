from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional, Literal


BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        env_prefix="DEVICEMESH_",
        extra="ignore",
    )

    # Storage
    data_dir: Path = BASE_DIR / "data"
    devices_dir: Optional[Path] = None         # defaults to {data_dir}/devices
    index_url: Optional[str] = None            # defaults to sqlite:///{data_dir}/index.sqlite3
    sqlite_timeout_seconds: float = 5.0

    # Recognition
    resolve_timeout_seconds: float = 10.0
    recent_verification_days: int = 7
    confidence_high: int = 85
    confidence_medium: int = 60
    confidence_low: int = 30

    # Out-of-band verification
    verification_max_attempts: int = 5
    verification_window_minutes: int = 10

    # Sync Engine
    sync_enabled: bool = False
    sync_interval_seconds: int = 300           # 5 minutes
    sync_timeout_seconds: float = 15.0
    sync_max_batch_size: int = 500

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_file: Optional[Path] = None

    def model_post_init(self, __context):
        if self.devices_dir is None:
            self.devices_dir = self.data_dir / "devices"
        if self.index_url is None:
            self.index_url = f"sqlite:///{self.data_dir / 'index.sqlite3'}"


settings = Settings()
