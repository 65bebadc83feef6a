"""Serving stored file bytes to authenticated users."""

import mimetypes
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import quote

import structlog

from secureshare.access import AccessGuard
from secureshare.audit import AuditLedger
from secureshare.errors import DataMissing, FileVanished, NotFound, PathTraversal
from secureshare.models import FileRecord, LogCategory, Visibility
from secureshare.policy import Action, Actor, FileResource
from secureshare.storage import DEFAULT_MIME, FileStore

logger = structlog.get_logger(__name__)


class ServeMode(str, Enum):
    DOWNLOAD = "download"
    PREVIEW = "preview"


PRIVATE_CACHE_CONTROL = "private, no-store, must-revalidate"


def is_inline_previewable(content_type: str) -> bool:
    content_type = content_type.lower()
    return (
        content_type.startswith("image/")
        or content_type.startswith("text/")
        or content_type == "application/pdf"
    )


def content_disposition(disposition: str, filename: str) -> str:
    """Disposition header with an ASCII fallback and an RFC 5987 UTF-8 name."""
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "_").replace("\\", "_")
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


@dataclass
class ServedFile:
    content: bytes
    content_type: str
    disposition: str
    filename: str
    cache_control: str
    file_id: int

    @property
    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": self.content_type,
            "Content-Length": str(len(self.content)),
            "Content-Disposition": content_disposition(self.disposition, self.filename),
            "Cache-Control": self.cache_control,
            "X-Content-Type-Options": "nosniff",
        }


class FileServer:
    """Resolves a file reference to bytes plus the headers to send them with."""

    def __init__(self, store: FileStore, audit: AuditLedger, guard: AccessGuard, public_max_age: int = 3600):
        self.store = store
        self.audit = audit
        self.guard = guard
        self.public_max_age = public_max_age

    def serve(self, actor: Actor, file_id: int, mode=ServeMode.DOWNLOAD, ip: Optional[str] = None) -> ServedFile:
        """Serve a file addressed by id."""
        record = self.store.get(file_id)
        path = self._bounded_path(actor, record.storage_path, ip, record.id)
        return self._serve(actor, record, path, ServeMode(mode), ip)

    def serve_path(self, actor: Actor, relative_path: str, mode=ServeMode.DOWNLOAD, ip: Optional[str] = None) -> ServedFile:
        """Serve a file addressed by its path under the upload root.

        The bounds check runs before the metadata lookup, so a traversal attempt
        is refused the same way whether or not something exists at the target.
        """
        path = self._bounded_path(actor, relative_path, ip, None)
        storage_path = path.relative_to(self.store.upload_root).as_posix()
        record = self.store.find_by_path(storage_path)
        if record is None:
            logger.warning("File not found in DB for path", path=storage_path)
            self.audit.append(
                actor.id, ip, "file_access_error",
                f"File record not found in DB for path: {storage_path}",
                LogCategory.FILE,
            )
            raise NotFound("File not found.")
        return self._serve(actor, record, path, ServeMode(mode), ip)

    def _bounded_path(self, actor: Actor, storage_path: str, ip: Optional[str], file_id: Optional[int]) -> Path:
        try:
            return self.store.resolve_storage_path(storage_path)
        except PathTraversal:
            logger.warning("Attempted path traversal", actor_id=actor.id if actor else None, path=storage_path)
            self.audit.append(
                actor.id if actor else None,
                ip,
                "path_traversal",
                f"Attempted to access file outside uploads directory: {storage_path}",
                LogCategory.SECURITY,
                file_id,
            )
            raise

    def _serve(self, actor: Actor, record: FileRecord, path: Path, mode: ServeMode, ip: Optional[str]) -> ServedFile:
        self.guard.require(
            actor,
            FileResource.of(record),
            Action.READ,
            ip,
            details=f"User denied {mode.value} access to private file '{record.name}' (ID: {record.id})",
            resource_id=record.id,
        )

        if not path.is_file():
            if self.store.find_by_path(record.storage_path) is None:
                logger.warning("File deleted after access check", file_id=record.id)
                raise FileVanished(details={"file_id": record.id})
            logger.error("File record exists but file not found on disk", file_id=record.id, path=record.storage_path)
            self.audit.append(
                actor.id, ip, "file_data_missing",
                f"File data missing on disk for '{record.name}' (ID: {record.id}, Path: {record.storage_path})",
                LogCategory.SYSTEM, record.id,
            )
            raise DataMissing(details={"file_id": record.id})

        try:
            content = path.read_bytes()
        except FileNotFoundError:
            logger.warning("File vanished during read", file_id=record.id)
            raise FileVanished(details={"file_id": record.id})

        content_type = mimetypes.guess_type(record.name)[0] or record.mime_type or DEFAULT_MIME
        if mode == ServeMode.PREVIEW and is_inline_previewable(content_type):
            disposition = "inline"
        else:
            disposition = "attachment"

        if Visibility(record.visibility) == Visibility.PUBLIC:
            cache_control = f"public, max-age={self.public_max_age}"
        else:
            cache_control = PRIVATE_CACHE_CONTROL

        self.audit.append(
            actor.id, ip, mode.value,
            f"Accessed '{record.name}' (ID: {record.id}, Type: {disposition})",
            LogCategory.FILE, record.id,
        )
        return ServedFile(
            content=content,
            content_type=content_type,
            disposition=disposition,
            filename=record.name,
            cache_control=cache_control,
            file_id=record.id,
        )
