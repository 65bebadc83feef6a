"""
Test runtime settings and first-run seeding.
"""

import pytest
from sqlmodel import select

from secureshare.db import DEFAULT_SETTINGS, SEED_ADMIN_KEY, get_session, init_database, seed_admin_id
from secureshare.errors import ValidationError
from secureshare.models import LogCategory, Role, Setting, User
from secureshare.settings import SettingsService, parse_extensions

from conftest import ledger


@pytest.fixture
def settings(engine):
    return SettingsService(engine)


def test_defaults_are_seeded(settings):
    """Test every recognized setting exists after start-up."""
    assert settings.all() == DEFAULT_SETTINGS
    assert settings.file_size_limit_mb == 10
    assert settings.storage_quota_mb == 500
    assert settings.maintenance_mode is False
    assert settings.session_timeout_minutes == 30
    assert "pdf" in settings.allowed_file_types


def test_seeding_is_idempotent(engine, cfg, core):
    """Test a second start-up creates no second admin and no new seed entries."""
    first_admin = seed_admin_id(engine)
    init_database(engine, cfg)
    init_database(engine, cfg)

    with get_session(engine) as session:
        admins = session.exec(select(User).where(User.role == Role.ADMIN)).all()
    seeds = [row for row in ledger(core, category=LogCategory.SYSTEM) if row.action.startswith("initial_")]

    assert seed_admin_id(engine) == first_admin
    assert len([row for row in seeds if row.action == "initial_admin_seed"]) == 1
    assert len([row for row in seeds if row.action == "initial_settings_seed"]) == 1
    assert len(admins) == 1


def test_seed_admin_id_is_recorded(engine):
    """Test the seed admin is identified by a stored setting."""
    with get_session(engine) as session:
        recorded = session.get(Setting, SEED_ADMIN_KEY)
    assert int(recorded.value) == seed_admin_id(engine)


def test_update_applies_to_next_read(settings):
    """Test a change is visible immediately."""
    changes = settings.update({"fileSizeLimitMB": 2, "maintenanceMode": "true"})

    assert changes == {"fileSizeLimitMB": ("10", "2"), "maintenanceMode": ("false", "true")}
    assert settings.file_size_limit_mb == 2
    assert settings.maintenance_mode is True


def test_update_with_same_value_reports_nothing(settings):
    """Test unchanged values are not reported as changes."""
    assert settings.update({"sessionTimeoutMinutes": "30"}) == {}


def test_unknown_keys_are_ignored(settings):
    """Test keys outside the recognized set are skipped."""
    assert settings.update({"colour": "blue"}) == {}
    assert "colour" not in settings.all()


@pytest.mark.parametrize(
    "values",
    [
        {"fileSizeLimitMB": 0},
        {"fileSizeLimitMB": 11},
        {"storageQuotaMB": 5},
        {"sessionTimeoutMinutes": 1},
        {"passwordMinLength": 0},
        {"maintenanceMode": "yes"},
        {"sessionTimeoutMinutes": "soon"},
    ],
)
def test_invalid_values_are_rejected(settings, values):
    """Test out-of-range values raise and leave the stored value alone."""
    before = settings.all()
    with pytest.raises(ValidationError):
        settings.update(values)
    assert settings.all() == before


def test_allowed_types_are_normalized(settings):
    """Test extensions are lower-cased and stripped of dots and blanks."""
    settings.update({"allowedFileTypes": " .PDF, Txt ,,png "})

    assert settings.get("allowedFileTypes") == "pdf, txt, png"
    assert settings.allowed_file_types == ["pdf", "txt", "png"]


def test_malformed_stored_value_falls_back_to_default(settings, engine):
    """Test a corrupted row does not break readers."""
    with get_session(engine) as session:
        row = session.get(Setting, "fileSizeLimitMB")
        row.value = "ten"
        session.add(row)
        session.commit()

    assert settings.file_size_limit_mb == 10


def test_parse_extensions():
    """Test splitting of comma-separated allow-lists."""
    assert parse_extensions("") == []
    assert parse_extensions("jpg, .PNG") == ["jpg", "png"]
