"""Runtime settings stored in the database.

Every accessor hits the settings table, so a change made by an administrator
applies to the very next request.
"""

from typing import Dict, List, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from sqlalchemy.engine import Engine
from sqlmodel import select

from secureshare.db import DEFAULT_SETTINGS, get_session
from secureshare.errors import ValidationError
from secureshare.models import Setting

logger = structlog.get_logger(__name__)


def parse_extensions(value: str) -> List[str]:
    """Split a comma-separated allow-list into bare lower-case extensions."""
    return [ext.strip().lower().lstrip(".") for ext in (value or "").split(",") if ext.strip().lstrip(".")]


class SettingsUpdate(BaseModel):
    """Accepted shapes for admin-editable settings."""
    fileSizeLimitMB: Optional[int] = Field(default=None, ge=1, le=10)
    storageQuotaMB: Optional[int] = Field(default=None, ge=10)
    allowedFileTypes: Optional[str] = None
    maintenanceMode: Optional[bool] = None
    sessionTimeoutMinutes: Optional[int] = Field(default=None, ge=5)
    passwordMinLength: Optional[int] = Field(default=None, ge=1)
    passwordExpiryDays: Optional[int] = Field(default=None, ge=0)

    @field_validator("allowedFileTypes")
    @classmethod
    def normalize_types(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return ", ".join(parse_extensions(value))

    @field_validator("maintenanceMode", mode="before")
    @classmethod
    def strict_bool(cls, value):
        if isinstance(value, str) and value not in ("true", "false"):
            raise ValueError("must be 'true' or 'false'")
        return value

    def as_strings(self) -> Dict[str, str]:
        values = {}
        for key, value in self.model_dump(exclude_none=True).items():
            if isinstance(value, bool):
                values[key] = "true" if value else "false"
            else:
                values[key] = str(value)
        return values


class SettingsService:
    """Typed, uncached access to the settings table."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        if default is None:
            default = DEFAULT_SETTINGS.get(key)
        with get_session(self.engine) as session:
            setting = session.get(Setting, key)
            if setting is None or setting.value is None:
                return default
            return setting.value

    def _get_int(self, key: str) -> int:
        raw = self.get(key)
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("Malformed setting, using default", key=key, value=raw)
            return int(DEFAULT_SETTINGS[key])

    @property
    def file_size_limit_mb(self) -> int:
        return self._get_int("fileSizeLimitMB")

    @property
    def file_size_limit_bytes(self) -> int:
        return self.file_size_limit_mb * 1024 * 1024

    @property
    def storage_quota_mb(self) -> int:
        return self._get_int("storageQuotaMB")

    @property
    def allowed_file_types(self) -> List[str]:
        return parse_extensions(self.get("allowedFileTypes"))

    @property
    def maintenance_mode(self) -> bool:
        return (self.get("maintenanceMode") or "").strip().lower() == "true"

    @property
    def session_timeout_minutes(self) -> int:
        return self._get_int("sessionTimeoutMinutes")

    @property
    def password_min_length(self) -> int:
        return self._get_int("passwordMinLength")

    @property
    def password_expiry_days(self) -> int:
        return self._get_int("passwordExpiryDays")

    def all(self) -> Dict[str, str]:
        """Every admin-editable setting, defaults filled in."""
        values = dict(DEFAULT_SETTINGS)
        with get_session(self.engine) as session:
            for setting in session.exec(select(Setting)).all():
                if setting.key in DEFAULT_SETTINGS and setting.value is not None:
                    values[setting.key] = setting.value
        return values

    def update(self, values: Dict[str, object]) -> Dict[str, tuple]:
        """Validate and store known settings.

        Unknown keys are ignored. Returns ``{key: (old, new)}`` for the values
        that actually changed.
        """
        known = {key: value for key, value in values.items() if key in DEFAULT_SETTINGS}
        for key in values:
            if key not in DEFAULT_SETTINGS:
                logger.warning("Skipping unknown setting key", key=key)
        try:
            validated = SettingsUpdate(**known).as_strings()
        except PydanticValidationError as exc:
            issue = exc.errors()[0]
            field = ".".join(str(part) for part in issue["loc"])
            raise ValidationError(f"Invalid value for setting '{field}': {issue['msg']}")

        changes = {}
        with get_session(self.engine) as session:
            for key, new_value in validated.items():
                setting = session.get(Setting, key)
                old_value = setting.value if setting is not None else None
                if old_value == new_value:
                    continue
                if setting is None:
                    session.add(Setting(key=key, value=new_value))
                else:
                    setting.value = new_value
                    session.add(setting)
                changes[key] = (old_value, new_value)
            session.commit()
        return changes
