"""Configuration module for the Realm PKM service."""

import logging
import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from realm_pkm import __version__

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives alongside the default data directory
_USER_ENV = Path.home() / ".realm" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)

# HS256 keys shorter than this are accepted but flagged
MIN_SECRET_BYTES = 32

_DEV_SECRET = "realm-development-secret-change-me-before-deploying"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


class RealmConfig(BaseModel):
    """Configuration for the Realm PKM service."""

    # Base directory for the project
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("REALM_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("REALM_DATABASE_PATH", "data/db/realm.db")
        )
    )
    # When True, uses a private in-memory SQLite database (tests, demos)
    in_memory_db: bool = Field(
        default_factory=lambda: _env_flag("REALM_IN_MEMORY_DB", "false")
    )
    # Authentication
    jwt_secret: str = Field(
        default_factory=lambda: os.getenv("REALM_JWT_SECRET", _DEV_SECRET)
    )
    # Access token lifetime in milliseconds; refresh tokens live 7x longer
    jwt_expiration_ms: int = Field(
        default_factory=lambda: int(os.getenv("REALM_JWT_EXPIRATION_MS", "86400000"))
    )
    jwt_issuer: str = Field(
        default_factory=lambda: os.getenv("REALM_JWT_ISSUER", "realm-pkm")
    )
    # bcrypt cost factor for new password hashes
    bcrypt_rounds: int = Field(
        default_factory=lambda: int(os.getenv("REALM_BCRYPT_ROUNDS", "12"))
    )
    # Logging
    log_level: str = Field(
        default_factory=lambda: os.getenv("REALM_LOG_LEVEL", "INFO").upper()
    )
    log_dir: Optional[Path] = Field(
        default_factory=lambda: (
            Path(os.getenv("REALM_LOG_DIR")) if os.getenv("REALM_LOG_DIR") else None
        )
    )
    # HTTP server
    host: str = Field(default_factory=lambda: os.getenv("REALM_HOST", "127.0.0.1"))
    port: int = Field(default_factory=lambda: int(os.getenv("REALM_PORT", "8080")))
    cors_origins: List[str] = Field(
        default_factory=lambda: [
            origin.strip()
            for origin in os.getenv(
                "REALM_CORS_ORIGINS", "http://localhost:3000"
            ).split(",")
            if origin.strip()
        ]
    )
    server_version: str = Field(default=__version__)
    # Graph and search limits
    graph_max_nodes: int = Field(
        default_factory=lambda: int(os.getenv("REALM_GRAPH_MAX_NODES", "500"))
    )
    search_max_limit: int = Field(
        default_factory=lambda: int(os.getenv("REALM_SEARCH_MAX_LIMIT", "500"))
    )

    @model_validator(mode="after")
    def _validate_auth_config(self) -> "RealmConfig":
        """Validate token settings and warn about weak secrets."""
        if self.jwt_expiration_ms <= 0:
            raise ValueError("jwt_expiration_ms must be > 0")
        if self.search_max_limit < 1:
            raise ValueError("search_max_limit must be >= 1")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("bcrypt_rounds must be between 4 and 31")
        if len(self.jwt_secret.encode("utf-8")) < MIN_SECRET_BYTES:
            logger.warning(
                "REALM_JWT_SECRET is shorter than %d bytes; "
                "use a longer random secret in production.",
                MIN_SECRET_BYTES,
            )
        if self.jwt_secret == _DEV_SECRET:
            logger.warning("Using the built-in development JWT secret")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self) -> str:
        """Get the database URL for SQLite."""
        if self.in_memory_db:
            return "sqlite://"
        db_path = self.get_absolute_path(self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_log_dir(self) -> Optional[Path]:
        """Get the absolute log directory, or None to use the default."""
        if self.log_dir is None:
            return None
        return self.get_absolute_path(self.log_dir)


# Create a global config instance
config = RealmConfig()
