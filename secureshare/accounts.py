"""User accounts: login, logout and administration."""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlmodel import select

from secureshare.access import AccessGuard
from secureshare.audit import AuditLedger
from secureshare.credentials import CredentialManager
from secureshare.db import get_session, seed_admin_id
from secureshare.errors import AccountInactive, InvalidCredentials, NotFound, ValidationError
from secureshare.models import FileRecord, LogCategory, LogEntry, Role, Session, User, UserStatus, utcnow
from secureshare.policy import Action, Actor, UserResource
from secureshare.sessions import SessionRegistry
from secureshare.settings import SettingsService

logger = structlog.get_logger(__name__)

EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_USERNAME_LENGTH = 3


@dataclass
class LoginResult:
    token: str
    user: User
    password_change_required: bool = False


def actor_for(user: User) -> Actor:
    return Actor(id=user.id, role=Role(user.role))


class AccountService:
    """Authentication and user management.

    Every administrative operation is checked against the policy first and
    audited afterwards; revocations of sessions go through the registry.
    """

    def __init__(
        self,
        engine: Engine,
        credentials: CredentialManager,
        sessions: SessionRegistry,
        settings: SettingsService,
        audit: AuditLedger,
        guard: AccessGuard,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.credentials = credentials
        self.sessions = sessions
        self.settings = settings
        self.audit = audit
        self.guard = guard
        self.clock = clock

    # -- lookups -------------------------------------------------------------

    def get_user(self, user_id: int) -> User:
        with get_session(self.engine) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found.")
            return user

    def find_by_username(self, username: str) -> Optional[User]:
        with get_session(self.engine) as session:
            return session.exec(select(User).where(User.username == username)).first()

    def list_users(self, actor: Actor, ip: Optional[str] = None) -> List[User]:
        self.guard.require(actor, None, Action.LIST_USERS, ip)
        with get_session(self.engine) as session:
            return list(session.exec(select(User).order_by(User.id)).all())

    def user_resource(self, user_id: int) -> UserResource:
        self.get_user(user_id)
        return UserResource(user_id=user_id, is_seed_admin=user_id == seed_admin_id(self.engine))

    # -- authentication ------------------------------------------------------

    def authenticate(self, username: str, password: str, ip: Optional[str] = None, user_agent: Optional[str] = None) -> LoginResult:
        """Check credentials and open a session."""
        if not username or not password:
            raise ValidationError("Username and password are required.")
        agent = user_agent or "N/A"

        user = self.find_by_username(username)
        if user is None:
            self.audit.append(None, ip, "login_failure",
                              f"Attempted login for non-existent user '{username}'. UA: {agent}", LogCategory.AUTH)
            raise InvalidCredentials()

        if not self.credentials.verify(password, user.password_hash):
            self.audit.append(user.id, ip, "login_failure", f"Incorrect password. UA: {agent}",
                              LogCategory.AUTH, user.id)
            raise InvalidCredentials()

        if not user.is_active:
            self.audit.append(user.id, ip, "login_failure", f"Account is inactive. UA: {agent}",
                              LogCategory.AUTH, user.id)
            raise AccountInactive()

        self.guard.require(
            actor_for(user), None, Action.LOGIN, ip,
            details=f"Login blocked due to maintenance mode. UA: {agent}", resource_id=user.id,
        )

        now = self.clock()
        with get_session(self.engine) as session:
            user = session.get(User, user.id)
            user.last_login = now
            if self.credentials.needs_rehash(user.password_hash):
                user.password_hash = self.credentials.hash(password)
                logger.info("Password digest upgraded", user_id=user.id)
            session.add(user)
            session.commit()

        token = self.sessions.create_session(user.id, ip, user_agent)
        self.audit.append(user.id, ip, "login_success", f"User logged in. UA: {agent}", LogCategory.AUTH, user.id)

        expiry_days = self.settings.password_expiry_days
        change_required = expiry_days > 0 and user.password_changed_at + timedelta(days=expiry_days) < now
        return LoginResult(token=token, user=user, password_change_required=change_required)

    def logout(self, token: Optional[str], ip: Optional[str] = None) -> None:
        """End a session. Unknown or already expired tokens are a no-op."""
        resolved = self.sessions.resolve_session(token)
        self.sessions.revoke_session(token)
        if resolved is not None:
            self.audit.append(resolved.user_id, ip, "logout",
                              f"User logged out. Session: {token[:8]}...", LogCategory.AUTH, resolved.user_id)

    # -- administration ------------------------------------------------------

    def _check_password(self, password: str) -> None:
        min_length = self.settings.password_min_length
        if not password or len(password) < min_length:
            raise ValidationError(f"Password must be at least {min_length} characters.")

    def _check_identity(self, username: Optional[str], email: Optional[str], exclude_id: Optional[int] = None) -> None:
        if username is not None and len(username.strip()) < MIN_USERNAME_LENGTH:
            raise ValidationError(f"Username must be at least {MIN_USERNAME_LENGTH} characters.")
        if email is not None and not EMAIL.match(email):
            raise ValidationError("Invalid email address.")
        checks = [(User.username, username, "Username"), (User.email, email, "Email")]
        with get_session(self.engine) as session:
            for column, value, label in checks:
                if value is None:
                    continue
                query = select(User.id).where(column == value)
                if exclude_id is not None:
                    query = query.where(User.id != exclude_id)
                if session.exec(query).first() is not None:
                    raise ValidationError(f"{label} already in use.")

    def create_user(self, actor: Actor, username: str, email: str, password: str, role=Role.USER, ip: Optional[str] = None) -> User:
        self.guard.require(actor, None, Action.CREATE_USER, ip,
                           details="User attempted to create a user without admin rights", resource_id=actor.id if actor else None)
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Unknown role '{role}'.")
        username = (username or "").strip()
        self._check_identity(username, email)
        self._check_password(password)

        with get_session(self.engine) as session:
            user = User(
                username=username,
                email=email,
                password_hash=self.credentials.hash(password),
                role=role,
                status=UserStatus.ACTIVE,
            )
            session.add(user)
            session.commit()
            session.refresh(user)

        logger.info("User created", user_id=user.id, by=actor.id, role=role.value)
        self.audit.append(actor.id, ip, "user_create",
                          f"Admin created user '{username}' (ID: {user.id}) with role '{role.value}'",
                          LogCategory.ADMIN, user.id)
        return user

    def update_profile(self, actor: Actor, target_id: int, username: Optional[str] = None,
                       email: Optional[str] = None, ip: Optional[str] = None) -> User:
        """Change username/email. Users may edit themselves, admins anyone."""
        action = Action.UPDATE if actor is not None and actor.id == target_id and not actor.is_admin else Action.UPDATE_USER
        self.guard.require(actor, self.user_resource(target_id), action, ip, resource_id=target_id)
        if username is None and email is None:
            raise ValidationError("No changes provided.")
        if username is not None:
            username = username.strip()
        self._check_identity(username, email, exclude_id=target_id)

        changed = []
        with get_session(self.engine) as session:
            user = session.get(User, target_id)
            if username is not None and username != user.username:
                user.username = username
                changed.append("username")
            if email is not None and email != user.email:
                user.email = email
                changed.append("email")
            session.add(user)
            session.commit()

        if changed:
            self.audit.append(actor.id, ip, "profile_update",
                              f"Updated profile for user '{user.username}' (ID: {target_id}). Fields: {', '.join(changed)}",
                              LogCategory.ADMIN, target_id)
        return user

    def change_role(self, actor: Actor, target_id: int, role, ip: Optional[str] = None) -> User:
        try:
            role = Role(role)
        except ValueError:
            raise ValidationError(f"Unknown role '{role}'.")
        action = Action.PROMOTE_USER if role == Role.ADMIN else Action.DEMOTE_USER
        self.guard.require(actor, self.user_resource(target_id), action, ip, resource_id=target_id)

        with get_session(self.engine) as session:
            user = session.get(User, target_id)
            previous = Role(user.role)
            user.role = role
            session.add(user)
            session.commit()

        if previous != role:
            self.audit.append(actor.id, ip, "role_change",
                              f"Changed role of '{user.username}' (ID: {target_id}) from '{previous.value}' to '{role.value}'",
                              LogCategory.ADMIN, target_id)
        return user

    def set_status(self, actor: Actor, target_id: int, status, ip: Optional[str] = None) -> User:
        """Activate or deactivate an account. Deactivation ends its sessions."""
        try:
            status = UserStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown status '{status}'.")
        action = Action.ACTIVATE_USER if status == UserStatus.ACTIVE else Action.DEACTIVATE_USER
        self.guard.require(actor, self.user_resource(target_id), action, ip, resource_id=target_id)

        with get_session(self.engine) as session:
            user = session.get(User, target_id)
            previous = UserStatus(user.status)
            user.status = status
            session.add(user)
            session.commit()

        if previous != status:
            self.audit.append(actor.id, ip, f"user_{'activated' if status == UserStatus.ACTIVE else 'deactivated'}",
                              f"Admin set user '{user.username}' (ID: {target_id}) to {status.value}",
                              LogCategory.ADMIN, target_id)
        if status == UserStatus.INACTIVE:
            self._terminate_sessions(actor.id, target_id, ip, "account deactivation")
        return user

    def reset_password(self, actor: Actor, target_id: int, new_password: str, ip: Optional[str] = None) -> None:
        """Admin password reset; every session of the target is revoked."""
        self.guard.require(actor, self.user_resource(target_id), Action.RESET_PASSWORD, ip,
                           details="User attempted to reset password without admin rights", resource_id=target_id)
        self._check_password(new_password)

        with get_session(self.engine) as session:
            user = session.get(User, target_id)
            user.password_hash = self.credentials.hash(new_password)
            user.password_changed_at = self.clock()
            session.add(user)
            session.commit()

        self.audit.append(actor.id, ip, "password_reset",
                          f"Admin reset password for user '{user.username}' (ID: {target_id})",
                          LogCategory.ADMIN, target_id)
        self._terminate_sessions(actor.id, target_id, ip, "password reset")

    def change_own_password(self, actor: Actor, current_password: str, new_password: str,
                            current_token: Optional[str] = None, ip: Optional[str] = None) -> None:
        """Self-service password change; other sessions of the user are revoked."""
        self.guard.require(actor, UserResource(user_id=actor.id if actor else 0), Action.UPDATE, ip)
        user = self.get_user(actor.id)
        if not self.credentials.verify(current_password or "", user.password_hash):
            self.audit.append(actor.id, ip, "profile_update_failure",
                              "Attempted password change with incorrect current password",
                              LogCategory.SECURITY, actor.id)
            raise InvalidCredentials("Incorrect current password.")
        self._check_password(new_password)

        with get_session(self.engine) as session:
            user = session.get(User, actor.id)
            user.password_hash = self.credentials.hash(new_password)
            user.password_changed_at = self.clock()
            session.add(user)
            session.commit()

        self.audit.append(actor.id, ip, "password_change", "User changed their password", LogCategory.AUTH, actor.id)
        revoked = self.sessions.revoke_all_sessions_for_user(actor.id, except_token=current_token)
        if revoked:
            self.audit.append(actor.id, ip, "session_termination",
                              f"Terminated {revoked} other session(s) due to password change",
                              LogCategory.SECURITY, actor.id)

    def delete_user(self, actor: Actor, target_id: int, ip: Optional[str] = None) -> None:
        """Delete an account. Files and ledger rows survive with the reference cleared."""
        self.guard.require(actor, self.user_resource(target_id), Action.DELETE_USER, ip,
                           details="User attempted to delete a user without admin rights", resource_id=target_id)

        with get_session(self.engine) as session:
            with session.begin():
                user = session.get(User, target_id)
                if user is None:
                    raise NotFound("User not found.")
                username = user.username
                session.exec(delete(Session).where(Session.user_id == target_id))
                session.exec(update(FileRecord).where(FileRecord.owner_id == target_id).values(owner_id=None))
                session.exec(update(LogEntry).where(LogEntry.user_id == target_id).values(user_id=None))
                session.delete(user)

        logger.info("User deleted", user_id=target_id, by=actor.id)
        self.audit.append(actor.id, ip, "user_delete", f"Admin deleted user '{username}' (ID: {target_id})",
                          LogCategory.ADMIN, target_id)

    def _terminate_sessions(self, actor_id: int, target_id: int, ip: Optional[str], reason: str) -> None:
        revoked = self.sessions.revoke_all_sessions_for_user(target_id)
        if revoked:
            self.audit.append(actor_id, ip, "session_termination",
                              f"Terminated {revoked} session(s) for user ID {target_id} due to {reason}",
                              LogCategory.SECURITY, target_id)
