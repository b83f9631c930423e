"""Private content storage for digital products.

Bytes live on a private filesystem root (never a public web directory) under
non-guessable paths; the ``content_objects`` table keeps the metadata and the
sha256 digest recorded at write time so tampering or corruption can be
detected later.

Ordering rules:
- store: bytes are written before the metadata row is flushed, so a row never
  points at bytes that were never written.
- delete: the row is soft-deleted (and committed) before the bytes go, so a
  failure in between leaves an unavailable row that can be retried, never a
  live row pointing at missing bytes.
"""

import hashlib
import logging
import secrets
import shutil
import time
import uuid
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from digivault.core.clock import utcnow, to_aware_utc
from digivault.core.errors import NotFoundError, StorageError, StorageWriteError, ValidationError
from digivault.core.settings import settings
from digivault.models.content import ContentObject
from digivault.models.product import Product
from digivault.schemas.content import ContentMeta, ContentUpdate
from digivault.services.policies import UploadPolicy

logger = logging.getLogger(__name__)

_HASH_CHUNK = 1024 * 1024


def format_bytes(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size or 0)
    i = 0
    while value > 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def _is_safe_relative_path(path: str) -> bool:
    if not path or "\x00" in path or "\\" in path:
        return False
    pure = PurePosixPath(path)
    if pure.is_absolute() or path.startswith("~"):
        return False
    return all(part not in ("..", ".", "") for part in path.split("/"))


class FilesystemBackend:
    """Stores blobs below ``root``; every path is relative and traversal-checked."""

    def __init__(self, root: Optional[Path] = None) -> None:
        if root is None:
            root = Path(settings.storage_dir) / settings.storage_base_path
        self._root = Path(root).resolve()

    @property
    def root(self) -> Path:
        return self._root

    def full_path(self, relative: str) -> Path:
        if not _is_safe_relative_path(relative):
            raise ValidationError(f"Unsafe storage path: {relative!r}")
        path = (self._root / relative).resolve()
        try:
            path.relative_to(self._root)
        except ValueError as e:
            raise ValidationError(f"Storage path escapes root: {relative!r}") from e
        return path

    def exists(self, relative: str) -> bool:
        return self.full_path(relative).is_file()

    def write(self, relative: str, data: bytes) -> None:
        target = self.full_path(relative)
        tmp = target.with_name(f".{target.name}.{uuid.uuid4().hex}.tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            tmp.replace(target)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StorageWriteError(f"Failed to write content: {e}", path=relative) from e

    def read(self, relative: str) -> bytes:
        return self.full_path(relative).read_bytes()

    def open(self, relative: str):
        return self.full_path(relative).open("rb")

    def size(self, relative: str) -> int:
        return self.full_path(relative).stat().st_size

    def remove(self, relative: str) -> None:
        self.full_path(relative).unlink(missing_ok=True)

    def move(self, source: str, target: str) -> None:
        destination = self.full_path(target)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(self.full_path(source)), str(destination))


class ContentStore:
    def __init__(
        self,
        db: Session,
        backend: Optional[FilesystemBackend] = None,
        upload_policy: Optional[UploadPolicy] = None,
    ) -> None:
        self.db = db
        self.backend = backend or FilesystemBackend()
        self.upload_policy = upload_policy or UploadPolicy.from_settings()

    # -- writes -----------------------------------------------------------

    def store(self, data: bytes, product: Product, meta: ContentMeta) -> ContentObject:
        extension = self.upload_policy.check(meta.original_filename, meta.mime_type, len(data))

        file_hash = hashlib.sha256(data).hexdigest()
        file_path = self._generate_path(product, extension)

        self.backend.write(file_path, data)

        obj = ContentObject(
            product_id=product.id,
            name=meta.name or meta.original_filename,
            original_filename=meta.original_filename,
            file_path=file_path,
            file_type=extension,
            mime_type=meta.mime_type,
            file_size=len(data),
            file_hash=file_hash,
            is_primary=meta.is_primary,
            is_active=True,
            download_limit=meta.download_limit,
            version=meta.version or "1.0.0",
            description=meta.description,
            expires_at=meta.expires_at,
            meta=dict(meta.metadata or {}),
        )
        try:
            self.db.add(obj)
            self.db.flush()
            self._ensure_single_primary(obj)
        except Exception:
            # row never made it; do not leave orphaned bytes behind
            self.backend.remove(file_path)
            raise

        logger.info(
            "Content stored: product=%s file=%s size=%s path=%s",
            product.id,
            obj.id,
            obj.file_size,
            file_path,
        )
        return obj

    def update(self, obj: ContentObject, changes: ContentUpdate) -> ContentObject:
        if obj.deleted_at is not None:
            raise NotFoundError("Content object is being deleted")
        for field, value in changes.model_dump(exclude_unset=True).items():
            if field == "metadata":
                obj.meta = {**(obj.meta or {}), **(value or {})}
            else:
                setattr(obj, field, value)
        self.db.flush()
        self._ensure_single_primary(obj)
        return obj

    def move(self, obj: ContentObject, new_path: str) -> ContentObject:
        new_path = new_path.strip("/")
        if not _is_safe_relative_path(new_path):
            raise ValidationError(f"Unsafe storage path: {new_path!r}")
        if not self.backend.exists(obj.file_path):
            raise NotFoundError(f"Source file does not exist: {obj.file_path}", public_message="File not found")
        if self.backend.exists(new_path):
            raise ValidationError(f"Target path already in use: {new_path}")

        old_path = obj.file_path
        try:
            self.backend.move(old_path, new_path)
        except OSError as e:
            raise StorageError(f"Failed to move file: {e}", path=old_path) from e

        obj.file_path = new_path
        self.db.flush()
        logger.info("Content moved: file=%s old_path=%s new_path=%s", obj.id, old_path, new_path)
        return obj

    def delete(self, obj: ContentObject) -> None:
        """Two-phase delete; commits the soft-delete marker before touching bytes."""
        if obj.deleted_at is None:
            obj.deleted_at = utcnow()
            obj.is_active = False
            obj.is_primary = False
            self.db.commit()

        try:
            self.backend.remove(obj.file_path)
        except OSError as e:
            logger.error("Failed to remove bytes for file=%s path=%s: %s", obj.id, obj.file_path, e)
            raise StorageError(f"Failed to delete content bytes: {e}", path=obj.file_path) from e

        file_id, file_path = obj.id, obj.file_path
        self.db.delete(obj)
        self.db.commit()
        logger.info("Content deleted: file=%s path=%s", file_id, file_path)

    # -- reads ------------------------------------------------------------

    def get(self, file_id: int) -> ContentObject:
        obj = self.db.get(ContentObject, file_id)
        if obj is None or obj.deleted_at is not None:
            raise NotFoundError(f"Content object {file_id} not found", public_message="File not found")
        return obj

    def list_files(self, product_id: int, active_only: bool = False) -> List[ContentObject]:
        query = select(ContentObject).where(
            ContentObject.product_id == product_id,
            ContentObject.deleted_at.is_(None),
        )
        if active_only:
            query = query.where(ContentObject.is_active.is_(True))
        query = query.order_by(ContentObject.is_primary.desc(), ContentObject.id)
        return list(self.db.scalars(query))

    def deliverable_files(self, product_id: int) -> List[ContentObject]:
        return [f for f in self.list_files(product_id, active_only=True) if self.is_available(f)]

    @staticmethod
    def is_available(obj: ContentObject) -> bool:
        if obj.deleted_at is not None or not obj.is_active:
            return False
        expires_at = to_aware_utc(obj.expires_at)
        return expires_at is None or utcnow() < expires_at

    def retrieve_bytes(self, obj: ContentObject) -> bytes:
        self._require_bytes(obj)
        try:
            return self.backend.read(obj.file_path)
        except OSError as e:
            raise StorageError(f"Failed to read content: {e}", path=obj.file_path) from e

    def retrieve_stream(
        self,
        obj: ContentObject,
        start: int = 0,
        end: Optional[int] = None,
        chunk_size: Optional[int] = None,
    ) -> Iterator[bytes]:
        """Return an iterator over bytes ``start..end`` (inclusive) of the stored file."""
        self._require_bytes(obj)
        chunk_size = chunk_size or settings.download_chunk_size
        try:
            handle = self.backend.open(obj.file_path)
        except OSError as e:
            raise StorageError(f"Failed to open content: {e}", path=obj.file_path) from e
        return self._iter_range(handle, start, end, chunk_size)

    @staticmethod
    def _iter_range(handle, start: int, end: Optional[int], chunk_size: int) -> Iterator[bytes]:
        with handle:
            handle.seek(start)
            remaining = None if end is None else end - start + 1
            while remaining is None or remaining > 0:
                size = chunk_size if remaining is None else min(chunk_size, remaining)
                chunk = handle.read(size)
                if not chunk:
                    break
                if remaining is not None:
                    remaining -= len(chunk)
                yield chunk

    def verify_integrity(self, obj: ContentObject) -> bool:
        """Recompute the digest of the stored bytes; False on mismatch or absence."""
        try:
            if not self.backend.exists(obj.file_path):
                return False
            digest = hashlib.sha256()
            with self.backend.open(obj.file_path) as handle:
                for chunk in iter(lambda: handle.read(_HASH_CHUNK), b""):
                    digest.update(chunk)
        except (OSError, ValidationError) as e:
            logger.error("Failed to verify integrity of file=%s: %s", obj.id, e)
            return False

        matches = secrets.compare_digest(digest.hexdigest(), obj.file_hash)
        if not matches:
            logger.warning("Integrity check failed: file=%s path=%s", obj.id, obj.file_path)
        return matches

    def usage_stats(self, product_id: Optional[int] = None) -> Dict[str, Any]:
        base = select(
            func.count(ContentObject.id),
            func.coalesce(func.sum(ContentObject.file_size), 0),
        ).where(ContentObject.deleted_at.is_(None))
        if product_id is not None:
            base = base.where(ContentObject.product_id == product_id)

        file_count, total_bytes = self.db.execute(base).one()
        active_files, active_bytes = self.db.execute(base.where(ContentObject.is_active.is_(True))).one()

        return {
            "file_count": file_count,
            "total_bytes": int(total_bytes),
            "total_size_formatted": format_bytes(total_bytes),
            "active_files": active_files,
            "active_bytes": int(active_bytes),
            "active_size_formatted": format_bytes(active_bytes),
        }

    # -- helpers ----------------------------------------------------------

    def _require_bytes(self, obj: ContentObject) -> None:
        if obj.deleted_at is not None or not self.backend.exists(obj.file_path):
            logger.error("Content bytes missing: file=%s path=%s", obj.id, obj.file_path)
            raise NotFoundError(
                f"File not found on disk: {obj.file_path}",
                public_message="File not found or temporarily unavailable.",
            )

    def _generate_path(self, product: Product, extension: str) -> str:
        seed = f"{settings.storage_path_seed}|{product.id}|{time.time_ns()}|{secrets.token_hex(8)}"
        name = hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]
        return f"{product.id}/{name}.{extension}"

    def _ensure_single_primary(self, obj: ContentObject) -> None:
        if not obj.is_primary:
            return
        self.db.execute(
            update(ContentObject)
            .where(ContentObject.product_id == obj.product_id, ContentObject.id != obj.id)
            .values(is_primary=False)
            .execution_options(synchronize_session="fetch")
        )
