"""Configuration management for SecureShare."""

import os
import tomli
from pathlib import Path
from typing import Any, Dict, Optional


class Config:
    """Process-level configuration loaded from a TOML file.

    Runtime policy (size limits, session timeout, maintenance mode...) is not
    kept here; it lives in the settings table, see ``secureshare.settings``.
    """

    def __init__(self, config_file: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        """Initialize configuration from TOML file."""
        self.config_file = config_file or os.environ.get("SECURESHARE_CONFIG", "config.toml")
        self._config = self._load_config()
        for key, value in (overrides or {}).items():
            self.set(key, value)

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from TOML file, or start from defaults."""
        config_path = Path(self.config_file)
        if not config_path.exists():
            return {}

        with open(config_path, "rb") as f:
            return tomli.load(f)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation."""
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation."""
        keys = key.split(".")
        section = self._config
        for k in keys[:-1]:
            section = section.setdefault(k, {})
        section[keys[-1]] = value

    @property
    def app_name(self) -> str:
        return self.get("app.name", "SecureShare")

    @property
    def app_version(self) -> str:
        return self.get("app.version", "1.0.0")

    @property
    def debug(self) -> bool:
        return self.get("app.debug", False)

    @property
    def host(self) -> str:
        return self.get("app.host", "0.0.0.0")

    @property
    def port(self) -> int:
        return self.get("app.port", 8000)

    @property
    def log_json(self) -> bool:
        return self.get("app.log_json", False)

    @property
    def log_level(self) -> str:
        return self.get("app.log_level", "INFO")

    @property
    def secret_key(self) -> str:
        return self.get("app.secret_key", "secureshare-secret-key")

    @property
    def db_file(self) -> str:
        return self.get("storage.db_file", "database/secure_share.db")

    @property
    def database_url(self) -> str:
        return self.get("storage.database_url", f"sqlite:///{self.db_file}")

    @property
    def upload_dir(self) -> str:
        return self.get("storage.upload_dir", "uploads")

    @property
    def public_max_age(self) -> int:
        return self.get("storage.public_max_age", 3600)

    @property
    def session_cookie_name(self) -> str:
        return self.get("security.session_cookie_name", "session_id")

    @property
    def secure_cookies(self) -> bool:
        return self.get("security.secure_cookies", False)

    @property
    def session_sweep_interval(self) -> int:
        return self.get("security.session_sweep_interval", 300)

    @property
    def argon2_time_cost(self) -> int:
        return self.get("security.argon2_time_cost", 3)

    @property
    def argon2_memory_cost(self) -> int:
        return self.get("security.argon2_memory_cost", 65536)

    @property
    def argon2_parallelism(self) -> int:
        return self.get("security.argon2_parallelism", 1)

    @property
    def seed_admin_username(self) -> str:
        return self.get("seed.admin_username", "AdminUser")

    @property
    def seed_admin_email(self) -> str:
        return self.get("seed.admin_email", "admin@example.com")

    @property
    def seed_admin_password(self) -> str:
        return self.get("seed.admin_password", "adminpassword")


# Global config instance
config = Config()
