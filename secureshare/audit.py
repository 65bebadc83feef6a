"""Append-only audit ledger."""

from datetime import datetime, timezone
from typing import List, Optional, Tuple

import structlog
from pydantic import BaseModel, Field
from sqlalchemy import asc, desc, func, literal, or_
from sqlalchemy.engine import Engine
from sqlmodel import select

from secureshare.db import get_session
from secureshare.models import LogCategory, LogEntry, User

# Operational channel, kept apart from the ledger itself.
logger = structlog.get_logger("secureshare.audit")

DELETED_USER = "Deleted User"


class LogQuery(BaseModel):
    """Filters accepted by :meth:`AuditLedger.query`."""
    category: Optional[LogCategory] = None
    user_id: Optional[int] = Field(default=None, gt=0)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=500)
    sort_by: str = Field(default="timestamp", pattern="^(timestamp|category|username)$")
    sort_order: str = Field(default="desc", pattern="^(asc|desc)$")


class LogRow(BaseModel):
    id: int
    timestamp: datetime
    user_id: Optional[int] = None
    username: str
    ip_address: Optional[str] = None
    action: str
    details: Optional[str] = None
    category: LogCategory
    resource_id: Optional[int] = None


class AuditLedger:
    """Records security and state-relevant events."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def append(
        self,
        actor_id: Optional[int],
        ip: Optional[str],
        action: str,
        details: Optional[str],
        category: LogCategory,
        resource_id: Optional[int] = None,
    ) -> None:
        """Write one entry. A failing write is logged and swallowed."""
        try:
            with get_session(self.engine) as session:
                session.add(LogEntry(
                    user_id=actor_id,
                    ip_address=ip,
                    action=action,
                    details=details,
                    category=LogCategory(category),
                    resource_id=resource_id,
                ))
                session.commit()
        except Exception:
            logger.exception(
                "Audit write failed",
                action=action,
                category=str(category),
                actor_id=actor_id,
                resource_id=resource_id,
            )

    def query(self, filters: LogQuery) -> Tuple[List[LogRow], int]:
        """Page through the ledger, newest first by default."""
        username = func.coalesce(User.username, literal(DELETED_USER)).label("username")
        conditions = []

        if filters.search:
            escaped = filters.search.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            term = f"%{escaped}%"
            matches = [
                func.lower(LogEntry.action).like(term, escape="\\"),
                func.lower(func.coalesce(LogEntry.details, "")).like(term, escape="\\"),
                func.lower(func.coalesce(LogEntry.ip_address, "")).like(term, escape="\\"),
                func.lower(func.coalesce(User.username, "")).like(term, escape="\\"),
            ]
            if filters.search.strip().isdigit():
                matches.append(LogEntry.resource_id == int(filters.search.strip()))
            conditions.append(or_(*matches))
        if filters.category is not None:
            conditions.append(LogEntry.category == filters.category)
        if filters.user_id is not None:
            conditions.append(LogEntry.user_id == filters.user_id)
        if filters.date_from is not None:
            conditions.append(LogEntry.timestamp >= _naive_utc(filters.date_from))
        if filters.date_to is not None:
            conditions.append(LogEntry.timestamp <= _naive_utc(filters.date_to))

        order_column = {
            "timestamp": LogEntry.timestamp,
            "category": LogEntry.category,
            "username": username,
        }[filters.sort_by]
        direction = asc if filters.sort_order == "asc" else desc

        with get_session(self.engine) as session:
            count_query = select(func.count(LogEntry.id)).select_from(LogEntry).outerjoin(
                User, LogEntry.user_id == User.id
            )
            if conditions:
                count_query = count_query.where(*conditions)
            total = session.exec(count_query).one()

            rows_query = (
                select(LogEntry, username)
                .outerjoin(User, LogEntry.user_id == User.id)
                .order_by(direction(order_column), direction(LogEntry.id))
                .offset((filters.page - 1) * filters.page_size)
                .limit(filters.page_size)
            )
            if conditions:
                rows_query = rows_query.where(*conditions)
            rows = [
                LogRow(username=name, **entry.model_dump())
                for entry, name in session.exec(rows_query).all()
            ]

        return rows, total

    def categories(self) -> List[str]:
        """Distinct categories currently present in the ledger."""
        with get_session(self.engine) as session:
            found = session.exec(select(LogEntry.category).distinct()).all()
        return sorted(LogCategory(category).value for category in found)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
