"""Session issuing, resolution and revocation."""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy import delete
from sqlmodel import select

from secureshare.db import get_session
from secureshare.models import Role, Session, User, utcnow
from secureshare.settings import SettingsService

logger = structlog.get_logger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class ResolvedSession:
    user_id: int
    role: Role
    username: str
    token: str
    expires_at: datetime


class SessionRegistry:
    """Manages user sessions.

    A session is Active until it is revoked or its expiry passes; both end
    states are terminal. Expired rows are removed lazily by the lookup that
    discovers them, so :meth:`sweep_expired` is an optimisation only.
    """

    def __init__(self, engine: Engine, settings: SettingsService, clock: Callable[[], datetime] = utcnow):
        self.engine = engine
        self.settings = settings
        self.clock = clock

    def create_session(self, user_id: int, ip_address: Optional[str] = None, user_agent: Optional[str] = None) -> str:
        """Create a new session and return its opaque token."""
        token = secrets.token_hex(TOKEN_BYTES)
        now = self.clock()
        expires_at = now + timedelta(minutes=self.settings.session_timeout_minutes)

        with get_session(self.engine) as session:
            session.add(Session(
                token=token,
                user_id=user_id,
                created_at=now,
                expires_at=expires_at,
                last_accessed_at=now,
                ip_address=ip_address,
                user_agent=user_agent,
            ))
            session.commit()

        logger.info("Session created", user_id=user_id, ip_address=ip_address, expires_at=expires_at.isoformat())
        return token

    def resolve_session(self, token: Optional[str]) -> Optional[ResolvedSession]:
        """Return the session's user, or None if it is unknown, expired or revoked."""
        if not token:
            return None

        now = self.clock()
        with get_session(self.engine) as session:
            record = session.get(Session, token)
            if record is None:
                return None

            if record.expires_at < now:
                session.delete(record)
                session.commit()
                logger.info("Expired session removed", user_id=record.user_id)
                return None

            user = session.get(User, record.user_id)
            if user is None or not user.is_active:
                return None

            record.last_accessed_at = now
            session.add(record)
            session.commit()

            return ResolvedSession(
                user_id=user.id,
                role=user.role,
                username=user.username,
                token=token,
                expires_at=record.expires_at,
            )

    def revoke_session(self, token: Optional[str]) -> bool:
        """Delete a single session. Returns whether it existed."""
        if not token:
            return False
        with get_session(self.engine) as session:
            result = session.exec(delete(Session).where(Session.token == token))
            session.commit()
            return result.rowcount > 0

    def revoke_all_sessions_for_user(self, user_id: int, except_token: Optional[str] = None) -> int:
        """Force re-authentication everywhere, optionally sparing one session."""
        statement = delete(Session).where(Session.user_id == user_id)
        if except_token:
            statement = statement.where(Session.token != except_token)
        with get_session(self.engine) as session:
            result = session.exec(statement)
            session.commit()
            revoked = result.rowcount
        if revoked:
            logger.info("Sessions revoked", user_id=user_id, count=revoked)
        return revoked

    def sweep_expired(self) -> int:
        """Clean up expired sessions."""
        with get_session(self.engine) as session:
            result = session.exec(delete(Session).where(Session.expires_at < self.clock()))
            session.commit()
            return result.rowcount

    def active_sessions(self, user_id: int) -> list:
        with get_session(self.engine) as session:
            return list(session.exec(
                select(Session).where(Session.user_id == user_id, Session.expires_at >= self.clock())
            ).all())
