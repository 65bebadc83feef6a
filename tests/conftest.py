"""Pytest configuration and fixtures for SecureShare tests."""

from datetime import datetime, timedelta

import pytest

from secureshare.config import Config
from secureshare.core import SecureShare
from secureshare.db import init_database, make_engine
from secureshare.models import Role, utcnow
from secureshare.policy import Actor


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, start: datetime = None):
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def cfg(tmp_path):
    """Configuration pointing every path into the test's temporary directory."""
    return Config(
        config_file=str(tmp_path / "absent.toml"),
        overrides={
            "app.secret_key": "test-secret",
            "storage.database_url": f"sqlite:///{tmp_path / 'db' / 'test.db'}",
            "storage.upload_dir": str(tmp_path / "uploads"),
            "security.session_sweep_interval": 0,
            "security.argon2_time_cost": 1,
            "security.argon2_memory_cost": 8,
            "security.argon2_parallelism": 1,
        },
    )


@pytest.fixture
def engine(cfg):
    """Initialized database engine with the seed admin and default settings."""
    engine = make_engine(cfg.database_url)
    init_database(engine, cfg)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def core(engine, cfg, clock):
    """Fully wired SecureShare facade."""
    return SecureShare(engine, cfg, clock=clock)


@pytest.fixture
def admin_token(core, cfg):
    """Session token of the seed admin."""
    return core.login(cfg.seed_admin_username, cfg.seed_admin_password).token


@pytest.fixture
def admin(core, admin_token):
    return core.current_user(admin_token)


@pytest.fixture
def make_user(core, admin_token):
    """Factory creating a user and logging them in; returns ``(user, token)``."""

    def _make(username: str, role: Role = Role.USER, password: str = "password123"):
        user = core.create_user(admin_token, username, f"{username}@example.com", password, role)
        return user, core.login(username, password).token

    return _make


@pytest.fixture
def alice(make_user):
    return make_user("alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob")


def actor_of(user) -> Actor:
    return Actor(id=user.id, role=Role(user.role))


def ledger(core, **filters):
    """All ledger rows matching ``filters``, oldest first."""
    from secureshare.audit import LogQuery

    rows, _ = core.audit.query(LogQuery(page_size=500, sort_order="asc", **filters))
    return rows
