"""Configuration module for the Northstar sync engine."""

import logging
import os
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from northstar_sync import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config: survives upgrades, lives alongside the local database
_USER_ENV = Path.home() / ".northstar" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# Teal palette offered to new groups, in preference order
GROUP_COLORS: List[str] = [
    "#14b8a6",  # teal-500
    "#0d9488",  # teal-600
    "#0f766e",  # teal-700
    "#115e59",  # teal-800
    "#134e4a",  # teal-900
]

# Name of the group that receives notes of a deleted group
UNCATEGORIZED_GROUP = "Uncategorized"

# Groups created for an owner who has none yet, locally or remotely
DEFAULT_GROUPS: List[Tuple[str, str]] = [
    ("Work", GROUP_COLORS[0]),
    ("Personal", GROUP_COLORS[1]),
    ("Ideas", GROUP_COLORS[2]),
    ("Tasks", GROUP_COLORS[3]),
    (UNCATEGORIZED_GROUP, GROUP_COLORS[4]),
]


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class NorthstarConfig(BaseModel):
    """Configuration for the local store, the remote backend and the sync worker."""

    # Base directory for relative paths
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("NORTHSTAR_BASE_DIR", "."))
    )
    # Local database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("NORTHSTAR_DATABASE_PATH", "data/db/northstar.db")
        )
    )
    # Remote backend configuration (PostgREST / Supabase style REST API)
    sync_enabled: bool = Field(
        default_factory=lambda: _env_flag("NORTHSTAR_SYNC_ENABLED", "false")
    )
    remote_url: Optional[str] = Field(
        default_factory=lambda: os.getenv("NORTHSTAR_REMOTE_URL") or None
    )
    remote_api_key: Optional[str] = Field(
        default_factory=lambda: os.getenv("NORTHSTAR_REMOTE_API_KEY") or None
    )
    owner_id: Optional[str] = Field(
        default_factory=lambda: os.getenv("NORTHSTAR_OWNER_ID") or None
    )
    access_token: Optional[str] = Field(
        default_factory=lambda: os.getenv("NORTHSTAR_ACCESS_TOKEN") or None
    )
    remote_timeout: float = Field(
        default_factory=lambda: float(os.getenv("NORTHSTAR_REMOTE_TIMEOUT", "10"))
    )
    # Rows fetched per list-since request during the pull phase
    pull_page_size: int = Field(
        default_factory=lambda: int(os.getenv("NORTHSTAR_PULL_PAGE_SIZE", "200"))
    )
    # Retry/backoff configuration (seconds)
    backoff_base: float = Field(
        default_factory=lambda: float(os.getenv("NORTHSTAR_BACKOFF_BASE", "1"))
    )
    backoff_max: float = Field(
        default_factory=lambda: float(os.getenv("NORTHSTAR_BACKOFF_MAX", "300"))
    )
    # Periodic sync interval (seconds); 0 disables the periodic trigger
    sync_interval: float = Field(
        default_factory=lambda: float(os.getenv("NORTHSTAR_SYNC_INTERVAL", "300"))
    )
    # Create the default groups after the first pull finds none
    seed_default_groups: bool = Field(
        default_factory=lambda: _env_flag("NORTHSTAR_SEED_DEFAULT_GROUPS", "true")
    )
    # Soft-deleted rows are purged by an external sweeper after this many days
    soft_delete_retention_days: int = Field(
        default_factory=lambda: int(os.getenv("NORTHSTAR_RETENTION_DAYS", "30"))
    )
    # Server configuration
    server_name: str = Field(default=os.getenv("NORTHSTAR_SERVER_NAME", "northstar-sync"))
    server_version: str = Field(default=__version__)

    @model_validator(mode="after")
    def _validate_sync_config(self) -> "NorthstarConfig":
        """Validate backoff settings and require remote settings when sync is on."""
        if self.backoff_base <= 0:
            raise ValueError("backoff_base must be > 0")
        if self.backoff_max < self.backoff_base:
            raise ValueError("backoff_max must be >= backoff_base")
        if self.sync_interval < 0:
            raise ValueError("sync_interval must be >= 0")
        if self.pull_page_size < 1:
            raise ValueError("pull_page_size must be >= 1")

        if self.sync_enabled:
            if not self.remote_url:
                raise ValueError("remote_url is required when sync_enabled is true")
            if not self.owner_id:
                raise ValueError("owner_id is required when sync_enabled is true")
            if not self.remote_url.startswith(("https://", "http://localhost", "http://127.0.0.1")):
                logger.warning(
                    "Remote URL %s is not HTTPS; access tokens will be sent in clear text",
                    self.remote_url,
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


# Create a global config instance
config = NorthstarConfig()
