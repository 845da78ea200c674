"""Configuration module for Notekeeper."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from notekeeper import __version__
from notekeeper.models.schema import ApiSession, StorageMode, WebDAVSettings

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config, lives alongside the default log directory
_USER_ENV = Path.home() / ".notekeeper" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_path(name: str) -> Optional[Path]:
    value = os.getenv(name)
    return Path(value) if value else None


def _env_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


class NotekeeperConfig(BaseModel):
    """Configuration for the Notekeeper storage core."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NOTEKEEPER_BASE_DIR", "."))
    )
    # Local entity store
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NOTEKEEPER_DATABASE_PATH", "data/db/notekeeper.db")
        )
    )
    # Mode to restore on start when nothing is persisted in the store yet
    storage_mode: str = Field(
        default_factory=lambda: os.getenv("NOTEKEEPER_STORAGE_MODE", "local")
    )
    # WebDAV document store (optional)
    webdav_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTEKEEPER_WEBDAV_URL") or None
    )
    webdav_username: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTEKEEPER_WEBDAV_USERNAME") or None
    )
    webdav_password: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTEKEEPER_WEBDAV_PASSWORD") or None
    )
    webdav_root: str = Field(
        default_factory=lambda: os.getenv("NOTEKEEPER_WEBDAV_ROOT", "/notekeeper")
    )
    # Authenticated cloud API (optional)
    api_base_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTEKEEPER_API_URL") or None
    )
    api_token: Optional[str] = Field(
        default_factory=lambda: os.getenv("NOTEKEEPER_API_TOKEN") or None
    )
    api_user_id: Optional[int] = Field(
        default_factory=lambda: _env_int("NOTEKEEPER_API_USER_ID")
    )
    # HTTP behaviour shared by the remote adapters
    http_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NOTEKEEPER_HTTP_TIMEOUT", "30"))
    )
    http_max_retries: int = Field(
        default_factory=lambda: int(os.getenv("NOTEKEEPER_HTTP_MAX_RETRIES", "2"))
    )
    # Run a reconciliation pass when the controller starts in a remote mode
    sync_on_start: bool = Field(
        default_factory=lambda: _env_flag("NOTEKEEPER_SYNC_ON_START", "false")
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: _env_path("NOTEKEEPER_LOG_DIR")
    )
    version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_remote_config(self) -> "NotekeeperConfig":
        """Validate HTTP settings and the initial storage mode."""
        if self.http_timeout <= 0:
            raise ValueError("http_timeout must be > 0")
        if self.http_max_retries < 0:
            raise ValueError("http_max_retries must be >= 0")
        valid_modes = {mode.value for mode in StorageMode}
        if self.storage_mode not in valid_modes:
            raise ValueError(
                f"storage_mode must be one of {sorted(valid_modes)}, "
                f"got '{self.storage_mode}'"
            )
        if self.webdav_username and not self.webdav_url:
            logger.warning(
                "NOTEKEEPER_WEBDAV_USERNAME is set but NOTEKEEPER_WEBDAV_URL is not; "
                "WebDAV storage stays unconfigured"
            )
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def webdav_settings(self) -> Optional[WebDAVSettings]:
        """Build WebDAV connection settings from the environment.

        Returns None when no endpoint is configured.
        """
        if not self.webdav_url:
            return None
        return WebDAVSettings(
            url=self.webdav_url,
            username=self.webdav_username,
            password=self.webdav_password,
            root=self.webdav_root,
        )

    def api_session(self) -> Optional[ApiSession]:
        """Build a remote API session from the environment.

        Returns None unless both the token and the user id are set.
        """
        if not self.api_token or not self.api_user_id:
            return None
        return ApiSession(user_id=self.api_user_id, token=self.api_token)


# Create a global config instance
config = NotekeeperConfig()
