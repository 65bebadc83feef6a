"""Database connection, session management and first-run seeding."""

from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, create_engine, select, Session as SQLSession

from secureshare.config import Config, config as default_config
from secureshare.models import User, Setting, LogEntry, LogCategory, Role, UserStatus

logger = structlog.get_logger(__name__)

SEED_IP = "::1"
SEED_ADMIN_KEY = "seedAdminId"

DEFAULT_SETTINGS = {
    "fileSizeLimitMB": "10",
    "storageQuotaMB": "500",
    "allowedFileTypes": "jpg, jpeg, png, gif, webp, pdf, txt, doc, docx, xls, xlsx, ppt, pptx, zip, rar, 7z",
    "maintenanceMode": "false",
    "sessionTimeoutMinutes": "30",
    "passwordMinLength": "1",
    "passwordExpiryDays": "0",
}


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine; SQLite databases get their directory created."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        db_path = database_url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(database_url, echo=echo, connect_args=connect_args)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_pragmas(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def create_tables(engine: Engine) -> None:
    """Create all database tables."""
    SQLModel.metadata.create_all(engine)


def get_session(engine: Engine) -> SQLSession:
    """Get a database session. Loaded rows stay usable after commit."""
    return SQLSession(engine, expire_on_commit=False)


def seed_database(engine: Engine, cfg: Config, credentials) -> Optional[int]:
    """Create the seed admin and default settings if they are missing.

    Safe to run on every start-up: an admin is only created when no admin
    account exists at all, and existing settings are never overwritten.
    Returns the id of the seed admin (existing or new).
    """
    with get_session(engine) as session:
        admin = session.exec(select(User).where(User.role == Role.ADMIN).order_by(User.id)).first()
        if admin is None:
            admin = User(
                username=cfg.seed_admin_username,
                email=cfg.seed_admin_email,
                password_hash=credentials.hash(cfg.seed_admin_password),
                role=Role.ADMIN,
                status=UserStatus.ACTIVE,
            )
            session.add(admin)
            session.flush()
            session.add(LogEntry(
                user_id=admin.id,
                ip_address=SEED_IP,
                action="initial_admin_seed",
                details=f"Admin user '{admin.username}' created during setup.",
                category=LogCategory.SYSTEM,
                resource_id=admin.id,
            ))
            logger.info("Seeded initial admin user", user_id=admin.id, username=admin.username)

        if session.get(Setting, SEED_ADMIN_KEY) is None:
            session.add(Setting(key=SEED_ADMIN_KEY, value=str(admin.id)))

        existing = set(session.exec(select(Setting.key)).all())
        missing = [key for key in DEFAULT_SETTINGS if key not in existing]
        for key in missing:
            session.add(Setting(key=key, value=DEFAULT_SETTINGS[key]))
        if missing:
            session.add(LogEntry(
                user_id=admin.id,
                ip_address=SEED_IP,
                action="initial_settings_seed",
                details=f"{len(missing)} default system settings seeded during setup.",
                category=LogCategory.SYSTEM,
            ))
            logger.info("Seeded default settings", count=len(missing))

        session.commit()
        return admin.id


def seed_admin_id(engine: Engine) -> Optional[int]:
    """Id recorded at seeding time, falling back to the oldest admin account."""
    with get_session(engine) as session:
        recorded = session.get(Setting, SEED_ADMIN_KEY)
        if recorded is not None and recorded.value and recorded.value.isdigit():
            return int(recorded.value)
        return session.exec(select(User.id).where(User.role == Role.ADMIN).order_by(User.id)).first()


def init_database(engine: Engine, cfg: Config = default_config, credentials=None) -> Optional[int]:
    """Initialize the database with tables, default settings and the seed admin."""
    Path(cfg.upload_dir).mkdir(parents=True, exist_ok=True)
    create_tables(engine)
    if credentials is None:
        from secureshare.credentials import CredentialManager
        credentials = CredentialManager(cfg)
    return seed_database(engine, cfg, credentials)
