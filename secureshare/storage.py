"""File storage and management for SecureShare."""

import mimetypes
import re
import secrets
import time
from pathlib import Path
from typing import List, Optional

import structlog
from sqlalchemy import delete, func, or_, update
from sqlalchemy.engine import Engine
from sqlmodel import select

from secureshare.access import AccessGuard
from secureshare.audit import AuditLedger
from secureshare.db import get_session
from secureshare.errors import (
    NotFound,
    PathTraversal,
    QuotaExceeded,
    TooLarge,
    TypeNotAllowed,
    ValidationError,
)
from secureshare.models import FileRecord, LogCategory, Visibility
from secureshare.policy import Action, Actor, FileResource
from secureshare.settings import SettingsService

logger = structlog.get_logger(__name__)

UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")
MIME_TYPE = re.compile(r"^[a-zA-Z0-9!#$&^_.+-]+/[a-zA-Z0-9!#$&^_.+-]+$")
DEFAULT_MIME = "application/octet-stream"

SCOPE_MINE = "mine"
SCOPE_ALL = "all"


def sanitize_filename(name: str) -> str:
    """Replace everything outside ``[A-Za-z0-9_.-]`` with underscores."""
    return UNSAFE_FILENAME_CHARS.sub("_", Path(name).name) or "file"


def file_extension(name: str) -> str:
    return Path(name).suffix.lower().lstrip(".")


def parse_visibility(value) -> Visibility:
    try:
        return Visibility(value)
    except ValueError:
        raise ValidationError(f"Unknown visibility '{value}'.")


class FileStore:
    """Stores uploaded files and their metadata.

    The upload root holds the bytes; ``FileRecord.storage_path`` is relative to
    that root and never derived from the display name alone.
    """

    def __init__(self, engine: Engine, upload_dir: str, settings: SettingsService, audit: AuditLedger, guard: AccessGuard):
        self.engine = engine
        self.upload_root = Path(upload_dir).resolve()
        self.upload_root.mkdir(parents=True, exist_ok=True)
        self.settings = settings
        self.audit = audit
        self.guard = guard

    def generate_storage_name(self, display_name: str) -> str:
        """Generate a collision-resistant storage filename."""
        return f"{int(time.time() * 1000)}-{secrets.token_hex(8)}-{sanitize_filename(display_name)}"

    def get_mime_type(self, filename: str, declared: Optional[str] = None) -> str:
        """Get MIME type for a file, falling back to a well-formed declared type."""
        mime_type, _ = mimetypes.guess_type(filename)
        if mime_type:
            return mime_type
        if declared and MIME_TYPE.match(declared.strip()):
            return declared.strip().lower()
        return DEFAULT_MIME

    def resolve_storage_path(self, storage_path: str) -> Path:
        """Absolute location of stored bytes; refuses anything outside the upload root."""
        try:
            candidate = (self.upload_root / storage_path).resolve()
        except (ValueError, OSError):
            raise PathTraversal(details={"path": storage_path})
        if candidate == self.upload_root or not candidate.is_relative_to(self.upload_root):
            raise PathTraversal(details={"path": storage_path})
        return candidate

    def get(self, file_id: int) -> FileRecord:
        with get_session(self.engine) as session:
            record = session.get(FileRecord, file_id)
            if record is None:
                raise NotFound("File not found.")
            return record

    def find_by_path(self, storage_path: str) -> Optional[FileRecord]:
        with get_session(self.engine) as session:
            return session.exec(select(FileRecord).where(FileRecord.storage_path == storage_path)).first()

    def used_bytes(self, owner_id: int) -> int:
        with get_session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(FileRecord.size), 0)).where(FileRecord.owner_id == owner_id)
            ).one()
            return int(total)

    def upload(
        self,
        actor: Actor,
        data: bytes,
        declared_name: str,
        declared_mime: Optional[str] = None,
        visibility=Visibility.PRIVATE,
        ip: Optional[str] = None,
    ) -> FileRecord:
        """Validate and store a file."""
        visibility = parse_visibility(visibility)
        display_name = (declared_name or "").strip()
        if not display_name or Path(display_name).name in ("", ".", ".."):
            raise ValidationError("No file name provided.")

        self.guard.require(actor, None, Action.UPLOAD, ip)

        size = len(data)
        max_size_mb = self.settings.file_size_limit_mb
        if size > max_size_mb * 1024 * 1024:
            logger.info("Upload rejected: too large", user_id=actor.id, size=size, limit_mb=max_size_mb)
            raise TooLarge(f"File size exceeds the limit of {max_size_mb} MB.", details={"limit_mb": max_size_mb})

        allowed = self.settings.allowed_file_types
        extension = file_extension(display_name)
        if allowed and extension not in allowed:
            logger.info("Upload rejected: type not allowed", user_id=actor.id, extension=extension)
            raise TypeNotAllowed(f"File type '.{extension}' is not allowed.", details={"allowed": allowed})

        quota_mb = self.settings.storage_quota_mb
        if quota_mb > 0 and self.used_bytes(actor.id) + size > quota_mb * 1024 * 1024:
            raise QuotaExceeded(f"Storage quota of {quota_mb} MB exceeded.", details={"quota_mb": quota_mb})

        storage_name = self.generate_storage_name(display_name)
        target = self.resolve_storage_path(storage_name)

        try:
            with open(target, "xb") as f:
                f.write(data)

            with get_session(self.engine) as session:
                record = FileRecord(
                    name=display_name,
                    mime_type=self.get_mime_type(display_name, declared_mime),
                    size=size,
                    owner_id=actor.id,
                    visibility=visibility,
                    storage_path=storage_name,
                )
                session.add(record)
                session.commit()
                session.refresh(record)
        except Exception:
            self._discard(target)
            raise

        logger.info("File stored", file_id=record.id, user_id=actor.id, size=size)
        self.audit.append(
            actor.id,
            ip,
            "upload",
            f"Uploaded '{display_name}' (Size: {size} bytes, Visibility: {visibility.value})",
            LogCategory.FILE,
            record.id,
        )
        return record

    def _discard(self, path: Path) -> None:
        """Best-effort removal of a partially stored file."""
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.error("Failed to clean up partial upload", path=str(path), error=str(exc))

    def list(self, actor: Actor, scope: str = SCOPE_MINE, ip: Optional[str] = None) -> List[FileRecord]:
        """List own files plus other users' public files, or every file for admins."""
        if scope not in (SCOPE_MINE, SCOPE_ALL):
            raise ValidationError(f"Unknown scope '{scope}'.")

        if scope == SCOPE_ALL:
            self.guard.require(actor, None, Action.LIST_ALL_FILES, ip)
            query = select(FileRecord)
        else:
            self.guard.require(actor, None, Action.LIST_FILES, ip)
            query = select(FileRecord).where(
                or_(FileRecord.owner_id == actor.id, FileRecord.visibility == Visibility.PUBLIC)
            )

        with get_session(self.engine) as session:
            return list(session.exec(query.order_by(FileRecord.uploaded_at.desc(), FileRecord.id.desc())).all())

    def toggle_visibility(self, actor: Actor, file_id: int, new_visibility, ip: Optional[str] = None) -> FileRecord:
        """Change a file's visibility. Setting the current value is a successful no-op."""
        new_visibility = parse_visibility(new_visibility)
        record = self.get(file_id)
        self.guard.require(
            actor,
            FileResource.of(record),
            Action.TOGGLE_VISIBILITY,
            ip,
            details=f"User attempted to toggle visibility for file ID {file_id} without permission",
            resource_id=file_id,
        )

        with get_session(self.engine) as session:
            with session.begin():
                current = session.get(FileRecord, file_id)
                if current is None:
                    raise NotFound("File not found.")
                old_visibility = current.visibility
                result = session.exec(
                    update(FileRecord)
                    .where(FileRecord.id == file_id, FileRecord.visibility != new_visibility)
                    .values(visibility=new_visibility)
                )
                changed = result.rowcount > 0
            session.refresh(current)

        if changed:
            self.audit.append(
                actor.id,
                ip,
                "visibility_change",
                f"Changed '{current.name}' (ID: {file_id}) visibility from "
                f"'{Visibility(old_visibility).value}' to '{new_visibility.value}'",
                LogCategory.FILE,
                file_id,
            )
        return current

    def delete(self, actor: Actor, file_id: int, ip: Optional[str] = None) -> None:
        """Delete metadata, then the backing bytes."""
        record = self.get(file_id)
        self.guard.require(
            actor,
            FileResource.of(record),
            Action.DELETE,
            ip,
            details=f"User attempted to delete file ID {file_id} without permission",
            resource_id=file_id,
        )

        with get_session(self.engine) as session:
            with session.begin():
                result = session.exec(delete(FileRecord).where(FileRecord.id == file_id))
                if result.rowcount == 0:
                    raise NotFound("File not found.")

        try:
            self.resolve_storage_path(record.storage_path).unlink()
        except FileNotFoundError:
            logger.warning("File not found on disk, but DB record deleted", file_id=file_id, path=record.storage_path)
        except PathTraversal:
            logger.error("Refusing to unlink outside the upload root", file_id=file_id, path=record.storage_path)
            self.audit.append(
                actor.id, ip, "path_traversal",
                f"Stored path for file ID {file_id} resolves outside the upload root: {record.storage_path}",
                LogCategory.SECURITY, file_id,
            )
        except OSError as exc:
            logger.error("Failed to delete physical file", file_id=file_id, path=record.storage_path, error=str(exc))
            self.audit.append(
                actor.id, ip, "file_delete_io_error",
                f"Failed to delete physical file '{record.name}' (Path: {record.storage_path}): {exc}",
                LogCategory.SYSTEM, file_id,
            )

        self.audit.append(actor.id, ip, "delete", f"Deleted '{record.name}' (ID: {file_id})", LogCategory.FILE, file_id)

    def storage_stats(self, user_id: Optional[int] = None) -> dict:
        """Get storage statistics for a user, or for the whole platform."""
        with get_session(self.engine) as session:
            query = select(
                func.count(FileRecord.id),
                func.coalesce(func.sum(FileRecord.size), 0),
            )
            if user_id is not None:
                query = query.where(FileRecord.owner_id == user_id)
            file_count, total_size = session.exec(query).one()

        return {
            "total_size": int(total_size),
            "file_count": int(file_count),
            "total_size_mb": round(int(total_size) / (1024 * 1024), 2)
        }
