"""
inboxsync configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables prefixed with ``INBOXSYNC_``.
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for inboxsync logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/inboxsync if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/inboxsync if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "inboxsync" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "inboxsync" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Client settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="INBOXSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server endpoints
    api_url: str = "http://localhost:8080/api"
    ws_url: str = "ws://localhost:8080/api/ws/connect"
    api_token: str = ""  # Bearer token (empty = anonymous)
    request_timeout: float = 30.0
    ws_heartbeat: float = 20.0

    # Reconnection
    reconnect_base_delay: float = 1.0  # seconds
    reconnect_max_delay: float = 30.0  # seconds
    reconnect_max_attempts: int = 5

    # Conversations
    send_timeout: float = 15.0  # Pending sends turn failed after this
    history_page_size: int = 50

    # Presence
    typing_ttl: float = 10.0  # Typing indicator expires without typing_stop
    presence_online_minutes: float = 5.0
    presence_recent_minutes: float = 30.0

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # Defaults to XDG state dir if empty
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = False
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance (CLI entry point only)
settings = Settings()
