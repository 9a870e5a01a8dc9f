"""Application configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Every variable carries the ``GLUCOLINK_`` prefix, e.g.
    ``GLUCOLINK_LIBREVIEW_USERNAME``.
    """

    # --- App ---
    app_name: str = "Glucolink"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | production

    # --- LibreView ---
    libreview_base_url: str = "https://api.libreview.io"
    libreview_product: str = "llu.android"
    libreview_version: str = "4.7.0"
    libreview_username: str = ""
    libreview_password: str = ""  # never logged
    request_timeout_seconds: float = 30.0

    # Timezone used to interpret naive upstream timestamps (IANA name)
    local_timezone: str = "UTC"

    # --- Storage ---
    database_path: Path = Path("~/.glucolink/glucose.sqlite3")
    backup_dir: Path = Path("~/.glucolink/backups")

    # --- Poller ---
    poll_on_startup: bool = True

    model_config = {
        "env_prefix": "GLUCOLINK_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @property
    def resolved_database_path(self) -> Path:
        return self.database_path.expanduser()

    @property
    def resolved_backup_dir(self) -> Path:
        return self.backup_dir.expanduser()


@lru_cache
def get_settings() -> Settings:
    return Settings()
