"""Content-addressed file storage.

Uploads are identified by the SHA-256 of their bytes. A second upload of
identical bytes returns the existing row and writes nothing new, no
matter who uploads it or what it is called.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from oddly.config import get_settings
from oddly.errors import NotFoundError, UnauthorizedError, ValidationError
from oddly.models import Challenge, FileArtifact
from oddly.utils import sha256_hex

log = logging.getLogger(__name__)


@dataclass
class StoredFile:
    content: bytes
    metadata: FileArtifact


def _safe_name(name: str) -> str:
    cleaned = Path(name or "").name.strip()
    return cleaned or "upload.bin"


class FileStore:
    def __init__(self, session: Session, upload_dir: str | Path | None = None,
                 max_bytes: int | None = None):
        settings = get_settings() if upload_dir is None or max_bytes is None else None
        self.session = session
        self.upload_dir = Path(upload_dir) if upload_dir is not None else settings.upload_dir
        self.max_bytes = max_bytes if max_bytes is not None else settings.max_upload_bytes

    def _path(self, artifact: FileArtifact) -> Path:
        return self.upload_dir / artifact.storage_key

    def find_by_hash(self, sha256: str) -> FileArtifact | None:
        return self.session.execute(
            select(FileArtifact).where(FileArtifact.sha256 == sha256)
        ).scalars().first()

    def upload(self, content: bytes, owner_id: str, original_name: str,
               mime: str = "application/octet-stream",
               challenge_id: str | None = None) -> tuple[FileArtifact, bool]:
        """Store bytes unless already known. Returns ``(artifact, created)``.

        Caller must commit.
        """
        if len(content) > self.max_bytes:
            raise ValidationError(f"File exceeds maximum size of {self.max_bytes} bytes")
        if challenge_id and self.session.get(Challenge, challenge_id) is None:
            raise NotFoundError("Challenge")

        digest = sha256_hex(content)
        existing = self.find_by_hash(digest)
        if existing is not None:
            log.warning("File deduplicated: %s", digest)
            return existing, False

        name = _safe_name(original_name)
        key = f"{owner_id}/{int(time.time() * 1000)}-{name}"
        path = self.upload_dir / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)

        artifact = FileArtifact(
            owner_id=owner_id,
            challenge_id=challenge_id,
            filename=name,
            mime=mime or "application/octet-stream",
            bytes=len(content),
            sha256=digest,
            storage_key=key,
        )
        self.session.add(artifact)
        self.session.flush()
        log.info("Stored file %s (%d bytes) as %s", name, len(content), key)
        return artifact, True

    def get(self, file_id: str) -> StoredFile:
        artifact = self.session.get(FileArtifact, file_id)
        if artifact is None:
            raise NotFoundError("File")
        path = self._path(artifact)
        if not path.exists():
            raise NotFoundError("File content")
        return StoredFile(content=path.read_bytes(), metadata=artifact)

    def verify(self, file_id: str) -> bool:
        """Re-hash the stored blob and compare with the recorded digest."""
        artifact = self.session.get(FileArtifact, file_id)
        if artifact is None:
            return False
        path = self._path(artifact)
        if not path.exists():
            return False
        return sha256_hex(path.read_bytes()) == artifact.sha256

    def get_by_challenge(self, challenge_id: str) -> list[FileArtifact]:
        return list(self.session.execute(
            select(FileArtifact)
            .where(FileArtifact.challenge_id == challenge_id)
            .order_by(desc(FileArtifact.created_at))
        ).scalars())

    def get_by_owner(self, owner_id: str) -> list[FileArtifact]:
        return list(self.session.execute(
            select(FileArtifact)
            .where(FileArtifact.owner_id == owner_id)
            .order_by(desc(FileArtifact.created_at))
        ).scalars())

    def delete(self, file_id: str, user_id: str) -> FileArtifact:
        """Remove the blob and the row (caller must commit).

        A blob that cannot be removed is logged; the row is deleted anyway.
        """
        artifact = self.session.get(FileArtifact, file_id)
        if artifact is None:
            raise NotFoundError("File")
        if artifact.owner_id != user_id:
            raise UnauthorizedError("You can only delete your own files")

        try:
            self._path(artifact).unlink()
        except OSError as exc:
            log.error("Failed to delete %s from storage: %s", artifact.storage_key, exc)

        self.session.delete(artifact)
        self.session.flush()
        return artifact


def file_summary(artifact: FileArtifact) -> dict:
    return {
        "id": artifact.id,
        "ownerId": artifact.owner_id,
        "challengeId": artifact.challenge_id,
        "filename": artifact.filename,
        "mime": artifact.mime,
        "bytes": artifact.bytes,
        "sha256": artifact.sha256,
        "storageKey": artifact.storage_key,
        "createdAt": artifact.created_at.isoformat(),
    }
