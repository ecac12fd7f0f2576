"""LifeSign Server Configuration."""

from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Server
    server_name: str = "LifeSign Server"
    host: str = "0.0.0.0"
    port: int = 8080
    debug: bool = False

    # Paths
    data_dir: Path = Path.home() / "lifesign" / "data"

    # Database
    db_path: Path = Path.home() / "lifesign" / "data" / "lifesign.db"

    # Connection codes
    code_min: int = 1000
    code_max: int = 9999
    code_max_attempts: int = 50

    # Pairing handshake
    handshake_timeout_seconds: float = 120.0  # 2 minutes
    poll_interval_seconds: float = 0.5
    longpoll_max_seconds: float = 25.0

    # Survival monitoring
    tick_interval_seconds: int = 900  # 15 minutes
    monitor_autostart: bool = True
    monitor_concurrency: int = 8
    monitor_max_overlapping_ticks: int = 2
    default_alert_threshold_hours: int = 12
    default_timezone: str = "Asia/Seoul"
    default_food_alert_hours: int = 8
    max_meals_per_day: int = 3

    # Push fan-out
    push_send_timeout_seconds: float = 10.0
    fanout_timeout_seconds: float = 30.0
    fanout_max_workers: int = 16
    token_log_chars: int = 20
    fcm_credentials_file: Optional[Path] = None

    # Device signals
    activity_write_interval_seconds: int = 300
    location_min_distance_m: float = 100.0
    location_min_interval_seconds: int = 1800  # 30 minutes

    model_config = {"env_prefix": "LIFESIGN_"}

    def ensure_dirs(self) -> None:
        """Create all required directories."""
        for d in [self.data_dir, self.db_path.parent]:
            d.mkdir(parents=True, exist_ok=True)


settings = Settings()
settings.ensure_dirs()
