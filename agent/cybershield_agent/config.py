"""Agent process configuration from environment variables."""
import os
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Process settings loaded from AGENT_* environment variables."""

    # Directory for the config database, reports, backups and downloads
    data_path: str = str(Path.home() / ".cybershieldx")

    # Directory the agent release tree and manifest pointer live in
    install_dir: str = os.getcwd()

    # Server used until the server pushes a different serverUrl
    default_server_url: str = "wss://api.cybershieldx.com"

    # Update channel endpoint
    update_url: str = "https://api.cybershieldx.com/agent/updates"

    # Local status API (loopback only)
    local_api_host: str = "127.0.0.1"
    local_api_port: int = 8585

    # Session timings (seconds)
    heartbeat_interval: float = 30
    reconnect_interval: float = 10
    # Backoff cap; set equal to reconnect_interval for a fixed retry interval
    reconnect_max_interval: float = 60

    # Self-update
    update_check_timeout: float = 10
    update_check_hours: float = 12
    backup_retention: int = 3

    # Delay between acknowledging a restart/reboot and exiting
    restart_grace_seconds: float = 2

    log_level: str = "INFO"
    log_file: str | None = None

    class Config:
        env_prefix = "AGENT_"
        case_sensitive = False


settings = Settings()