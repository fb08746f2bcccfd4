# config.py
"""
Application configuration.

Settings are read from the process environment, optionally seeded from a
`.env` file next to this module. Tests (or other embedders) can build a
`Settings` object directly and hand it to `main.create_app`.
"""

import os
import logging
from typing import List, Optional

from dotenv import load_dotenv

log = logging.getLogger(__name__)

DEFAULT_ORIGINS = "http://localhost:3000,http://localhost:5173"
DEFAULT_UPLOAD_DIR = os.path.join("public", "uploads")
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024  # 5MB, same limit the client enforces


def _split_csv(value: Optional[str]) -> List[str]:
    """Splits a comma-separated env value, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def load_env_file() -> None:
    """Loads backend/.env into the environment if present."""
    dotenv_path = os.path.join(os.path.dirname(__file__), '.env')
    if os.path.exists(dotenv_path):
        load_dotenv(dotenv_path=dotenv_path)
        log.info(f"Loaded environment variables from: {dotenv_path}")
    else:
        log.debug(f".env file not found at: {dotenv_path}. Relying on OS environment variables.")


class Settings:
    """Runtime settings for the AgriMarket API."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        secret_key: Optional[str] = None,
        algorithm: str = "HS256",
        access_token_expire_minutes: int = 60 * 24 * 7,
        idp_secret_key: Optional[str] = None,
        idp_algorithm: str = "HS256",
        idp_audience: Optional[str] = None,
        admin_users: Optional[List[str]] = None,
        allowed_origins: Optional[List[str]] = None,
        upload_dir: str = DEFAULT_UPLOAD_DIR,
        max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        production: bool = False,
    ):
        if not database_url:
            log.critical("FATAL ERROR: DATABASE_URL is not set.")
            raise ValueError("DATABASE_URL is required but not found.")
        if not secret_key:
            log.critical("FATAL ERROR: SECRET_KEY is not set for session tokens.")
            raise ValueError("SECRET_KEY is required for session tokens.")

        self.database_url = database_url
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.access_token_expire_minutes = access_token_expire_minutes
        # The identity provider may share the session key in single-tenant setups
        self.idp_secret_key = idp_secret_key or secret_key
        self.idp_algorithm = idp_algorithm
        self.idp_audience = idp_audience
        self.admin_users = set(admin_users or [])
        self.allowed_origins = allowed_origins or _split_csv(DEFAULT_ORIGINS)
        self.upload_dir = upload_dir
        self.max_upload_bytes = max_upload_bytes
        self.production = production

    @classmethod
    def from_env(cls) -> "Settings":
        """Builds settings from environment variables (and backend/.env)."""
        load_env_file()
        settings = cls(
            database_url=os.getenv("DATABASE_URL"),
            secret_key=os.getenv("SECRET_KEY"),
            algorithm=os.getenv("ALGORITHM", "HS256"),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7)),
            idp_secret_key=os.getenv("IDP_SECRET_KEY"),
            idp_algorithm=os.getenv("IDP_ALGORITHM", "HS256"),
            idp_audience=os.getenv("IDP_AUDIENCE") or None,
            admin_users=_split_csv(os.getenv("ADMIN_USERS")),
            allowed_origins=_split_csv(os.getenv("ALLOWED_ORIGINS", DEFAULT_ORIGINS)),
            upload_dir=os.getenv("UPLOAD_DIR", DEFAULT_UPLOAD_DIR),
            max_upload_bytes=int(os.getenv("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES)),
            production=_env_flag("PRODUCTION"),
        )
        if not settings.admin_users:
            log.warning("ADMIN_USERS is empty. Nobody can review verification requests.")
        return settings

    def is_admin(self, user_id: Optional[str]) -> bool:
        return bool(user_id) and user_id in self.admin_users
