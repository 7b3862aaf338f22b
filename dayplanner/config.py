"""Application configuration loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings shared by the API server and the display device runner."""

    # --- Application ---
    app_name: str = "Day Planner Displays"
    app_version: str = "0.4.0"
    debug: bool = False
    log_level: str = "INFO"

    # --- Database ---
    database_url: str = "sqlite+aiosqlite:///data/dayplanner.db"
    seed_demo: bool = False

    # --- HTTP ---
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:5174",
        "http://localhost:8080",
    ]

    # --- Pairing ---
    pairing_code_max_attempts: int = 10

    # --- Display device ---
    api_base_url: str = "http://localhost:8000"
    device_state_path: Path = Path("data/display_state.json")
    poll_min_interval_ms: int = 2000
    poll_max_interval_ms: int = 60000
    poll_backoff_multiplier: float = 1.5
    poll_request_timeout_ms: int = 10000
    poll_timeout_ms: int = 300000  # 5 min without a successful poll

    # --- Server ---
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = {"env_prefix": "DP_", "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
