"""SecureShare facade: the operations exposed to the HTTP layer."""

import functools
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy.engine import Engine

from secureshare.access import AccessGuard
from secureshare.accounts import AccountService, LoginResult
from secureshare.audit import AuditLedger, LogQuery, LogRow
from secureshare.config import Config, config as default_config
from secureshare.credentials import CredentialManager
from secureshare.errors import AuthenticationRequired, InternalError, SecureShareError
from secureshare.fileserver import FileServer, ServedFile, ServeMode
from secureshare.models import FileRecord, LogCategory, Role, User, utcnow
from secureshare.policy import Action, Actor
from secureshare.sessions import ResolvedSession, SessionRegistry
from secureshare.settings import SettingsService
from secureshare.storage import SCOPE_MINE, FileStore

logger = structlog.get_logger(__name__)


def operation(func):
    """Let taxonomy errors through; log anything else and hide it behind InternalError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except SecureShareError:
            raise
        except Exception as exc:
            logger.exception("Unexpected error", operation=func.__name__)
            raise InternalError() from exc

    return wrapper


class SecureShare:
    """Wires the components together around one engine.

    Every token-taking operation resolves the session first; an unknown,
    expired or revoked token raises :class:`AuthenticationRequired`.
    """

    def __init__(self, engine: Engine, cfg: Config = default_config, clock=utcnow):
        self.engine = engine
        self.config = cfg
        self.credentials = CredentialManager(cfg)
        self.settings = SettingsService(engine)
        self.audit = AuditLedger(engine)
        self.guard = AccessGuard(self.settings, self.audit)
        self.sessions = SessionRegistry(engine, self.settings, clock=clock)
        self.store = FileStore(engine, cfg.upload_dir, self.settings, self.audit, self.guard)
        self.server = FileServer(self.store, self.audit, self.guard, public_max_age=cfg.public_max_age)
        self.accounts = AccountService(
            engine, self.credentials, self.sessions, self.settings, self.audit, self.guard, clock=clock
        )

    # -- sessions ------------------------------------------------------------

    def resolve(self, token: Optional[str]) -> ResolvedSession:
        resolved = self.sessions.resolve_session(token)
        if resolved is None:
            raise AuthenticationRequired()
        return resolved

    def actor(self, token: Optional[str]) -> Actor:
        resolved = self.resolve(token)
        return Actor(id=resolved.user_id, role=Role(resolved.role))

    @operation
    def login(self, username: str, password: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> LoginResult:
        return self.accounts.authenticate(username, password, ip, user_agent)

    @operation
    def logout(self, token: Optional[str], ip: Optional[str] = None) -> None:
        self.accounts.logout(token, ip)

    @operation
    def current_user(self, token: Optional[str]) -> User:
        return self.accounts.get_user(self.resolve(token).user_id)

    @operation
    def change_password(self, token: Optional[str], current_password: str, new_password: str, ip: Optional[str] = None) -> None:
        self.accounts.change_own_password(self.actor(token), current_password, new_password, current_token=token, ip=ip)

    # -- files ---------------------------------------------------------------

    @operation
    def upload_file(self, token: Optional[str], data: bytes, name: str, mime: Optional[str] = None,
                    visibility: str = "private", ip: Optional[str] = None) -> FileRecord:
        return self.store.upload(self.actor(token), data, name, mime, visibility, ip)

    @operation
    def list_files(self, token: Optional[str], scope: str = SCOPE_MINE, ip: Optional[str] = None) -> List[FileRecord]:
        return self.store.list(self.actor(token), scope, ip)

    @operation
    def toggle_visibility(self, token: Optional[str], file_id: int, visibility: str, ip: Optional[str] = None) -> FileRecord:
        return self.store.toggle_visibility(self.actor(token), file_id, visibility, ip)

    @operation
    def delete_file(self, token: Optional[str], file_id: int, ip: Optional[str] = None) -> None:
        self.store.delete(self.actor(token), file_id, ip)

    @operation
    def download_or_preview(self, token: Optional[str], file_id: int, mode=ServeMode.DOWNLOAD, ip: Optional[str] = None) -> ServedFile:
        return self.server.serve(self.actor(token), file_id, mode, ip)

    @operation
    def serve_path(self, token: Optional[str], relative_path: str, mode=ServeMode.DOWNLOAD, ip: Optional[str] = None) -> ServedFile:
        return self.server.serve_path(self.actor(token), relative_path, mode, ip)

    @operation
    def storage_stats(self, token: Optional[str]) -> Dict[str, Any]:
        actor = self.actor(token)
        return self.store.storage_stats(None if actor.is_admin else actor.id)

    # -- audit ---------------------------------------------------------------

    @operation
    def query_logs(self, token: Optional[str], filters: Optional[LogQuery] = None, ip: Optional[str] = None) -> Tuple[List[LogRow], int]:
        self.guard.require(self.actor(token), None, Action.VIEW_LOGS, ip)
        return self.audit.query(filters or LogQuery())

    @operation
    def log_categories(self, token: Optional[str], ip: Optional[str] = None) -> List[str]:
        self.guard.require(self.actor(token), None, Action.VIEW_LOGS, ip)
        return self.audit.categories()

    # -- settings ------------------------------------------------------------

    @operation
    def get_settings(self, token: Optional[str], ip: Optional[str] = None) -> Dict[str, str]:
        self.guard.require(self.actor(token), None, Action.VIEW_SETTINGS, ip)
        return self.settings.all()

    @operation
    def update_settings(self, token: Optional[str], values: Dict[str, Any], ip: Optional[str] = None) -> Dict[str, str]:
        actor = self.actor(token)
        self.guard.require(actor, None, Action.UPDATE_SETTINGS, ip,
                           details="User attempted to update settings without admin rights")
        changes = self.settings.update(values)
        for key, (old, new) in changes.items():
            self.audit.append(actor.id, ip, "setting_change",
                              f"Setting '{key}' changed from '{old}' to '{new}'", LogCategory.ADMIN)
        if changes:
            logger.info("Settings updated", by=actor.id, keys=sorted(changes))
        return self.settings.all()

    # -- users ---------------------------------------------------------------

    @operation
    def list_users(self, token: Optional[str], ip: Optional[str] = None) -> List[User]:
        return self.accounts.list_users(self.actor(token), ip)

    @operation
    def create_user(self, token: Optional[str], username: str, email: str, password: str,
                    role: str = "user", ip: Optional[str] = None) -> User:
        return self.accounts.create_user(self.actor(token), username, email, password, role, ip)

    @operation
    def update_user(self, token: Optional[str], user_id: int, username: Optional[str] = None,
                    email: Optional[str] = None, ip: Optional[str] = None) -> User:
        return self.accounts.update_profile(self.actor(token), user_id, username, email, ip)

    @operation
    def change_role(self, token: Optional[str], user_id: int, role: str, ip: Optional[str] = None) -> User:
        return self.accounts.change_role(self.actor(token), user_id, role, ip)

    @operation
    def set_user_status(self, token: Optional[str], user_id: int, status: str, ip: Optional[str] = None) -> User:
        return self.accounts.set_status(self.actor(token), user_id, status, ip)

    @operation
    def reset_password(self, token: Optional[str], user_id: int, new_password: str, ip: Optional[str] = None) -> None:
        self.accounts.reset_password(self.actor(token), user_id, new_password, ip)

    @operation
    def delete_user(self, token: Optional[str], user_id: int, ip: Optional[str] = None) -> None:
        self.accounts.delete_user(self.actor(token), user_id, ip)
