import hashlib
from datetime import timedelta

import pytest

from digivault.core.clock import utcnow
from digivault.core.errors import NotFoundError, ValidationError
from digivault.models.content import ContentObject
from digivault.schemas.content import ContentMeta, ContentUpdate
from digivault.services.content_store import FilesystemBackend, format_bytes


def test_store_writes_bytes_and_records_digest(store, make_product, make_file, backend):
    product = make_product()
    data = b"PK\x03\x04 some archive"
    obj = make_file(product, data=data, filename="Photo Editor.zip", name="Installer")

    assert obj.id is not None
    assert obj.file_hash == hashlib.sha256(data).hexdigest()
    assert obj.file_size == len(data)
    assert obj.file_type == "zip"
    assert obj.name == "Installer"
    # the stored name is not derived from the upload name
    assert "Photo" not in obj.file_path
    assert obj.file_path.startswith(f"{product.id}/")
    assert backend.read(obj.file_path) == data
    assert store.retrieve_bytes(obj) == data


def test_store_rejects_disallowed_upload(store, make_product):
    product = make_product()
    with pytest.raises(ValidationError):
        store.store(b"<?php ?>", product, ContentMeta(original_filename="shell.php", mime_type="text/x-php"))
    with pytest.raises(ValidationError):
        store.store(b"", product, ContentMeta(original_filename="empty.zip", mime_type="application/zip"))


def test_generated_paths_are_unique(make_product, make_file):
    product = make_product()
    paths = {make_file(product).file_path for _ in range(5)}
    assert len(paths) == 5


def test_single_primary_per_product(db, store, make_product, make_file):
    product = make_product()
    other = make_product(name="Other")
    first = make_file(product, is_primary=True)
    second = make_file(product, is_primary=True)
    other_primary = make_file(other, is_primary=True)
    db.commit()

    primaries = [f.id for f in store.list_files(product.id) if f.is_primary]
    assert primaries == [second.id]
    db.refresh(first)
    assert first.is_primary is False

    store.update(first, ContentUpdate(is_primary=True))
    db.commit()
    assert [f.id for f in store.list_files(product.id) if f.is_primary] == [first.id]
    db.refresh(other_primary)
    assert other_primary.is_primary is True


def test_deliverable_files_prefers_primary_and_skips_inactive_and_expired(db, store, make_product, make_file):
    product = make_product()
    extra = make_file(product)
    primary = make_file(product, is_primary=True)
    inactive = make_file(product)
    expired = make_file(product)
    store.update(inactive, ContentUpdate(is_active=False))
    store.update(expired, ContentUpdate(expires_at=utcnow() - timedelta(minutes=1)))
    db.commit()

    assert [f.id for f in store.deliverable_files(product.id)] == [primary.id, extra.id]


def test_verify_integrity_detects_tampering_and_missing_bytes(db, store, make_product, make_file, backend):
    product = make_product()
    obj = make_file(product)
    db.commit()
    assert store.verify_integrity(obj) is True

    backend.full_path(obj.file_path).write_bytes(b"tampered")
    assert store.verify_integrity(obj) is False

    backend.remove(obj.file_path)
    assert store.verify_integrity(obj) is False
    with pytest.raises(NotFoundError):
        store.retrieve_bytes(obj)


def test_retrieve_stream_respects_range(db, store, make_product, make_file):
    product = make_product()
    data = bytes(range(256)) * 4
    obj = make_file(product, data=data, filename="data.bin", mime="application/octet-stream")

    assert b"".join(store.retrieve_stream(obj, chunk_size=100)) == data
    assert b"".join(store.retrieve_stream(obj, start=10, end=19, chunk_size=3)) == data[10:20]


def test_move_relocates_bytes(db, store, make_product, make_file, backend):
    product = make_product()
    obj = make_file(product)
    db.commit()
    old_path = obj.file_path

    store.move(obj, f"{product.id}/archive/old-build.zip")
    db.commit()
    assert not backend.exists(old_path)
    assert backend.exists(obj.file_path)
    assert store.verify_integrity(obj) is True

    with pytest.raises(ValidationError):
        store.move(obj, "../../etc/passwd")


def test_delete_removes_row_and_bytes(db, store, make_product, make_file, backend):
    product = make_product()
    obj = make_file(product)
    db.commit()
    file_id, path = obj.id, obj.file_path

    store.delete(obj)
    assert db.get(ContentObject, file_id) is None
    assert not backend.exists(path)
    with pytest.raises(NotFoundError):
        store.get(file_id)


def test_delete_failure_leaves_unavailable_row(db, store, make_product, make_file, monkeypatch):
    product = make_product()
    obj = make_file(product)
    db.commit()

    def broken_remove(path):
        raise OSError("disk on fire")

    monkeypatch.setattr(store.backend, "remove", broken_remove)
    with pytest.raises(Exception):
        store.delete(obj)

    db.expire_all()
    row = db.get(ContentObject, obj.id)
    assert row is not None
    assert row.deleted_at is not None
    assert store.is_available(row) is False
    assert store.deliverable_files(product.id) == []

    monkeypatch.undo()
    store.delete(row)
    assert db.get(ContentObject, obj.id) is None


def test_usage_stats(db, store, make_product, make_file):
    product = make_product()
    make_file(product, data=b"a" * 1000)
    inactive = make_file(product, data=b"b" * 1048)
    store.update(inactive, ContentUpdate(is_active=False))
    db.commit()

    stats = store.usage_stats(product.id)
    assert stats["file_count"] == 2
    assert stats["total_bytes"] == 2048
    assert stats["total_size_formatted"] == "2 KB"
    assert stats["active_files"] == 1
    assert stats["active_bytes"] == 1000


def test_backend_rejects_traversal(tmp_path):
    backend = FilesystemBackend(tmp_path)
    for bad in ("../x", "/etc/passwd", "a/../../b", "a\\b", ""):
        with pytest.raises(ValidationError):
            backend.full_path(bad)


def test_format_bytes():
    assert format_bytes(0) == "0 B"
    assert format_bytes(512) == "512 B"
    assert format_bytes(1024) == "1024 B"
    assert format_bytes(1536) == "1.5 KB"
    assert format_bytes(5 * 1024 * 1024) == "5 MB"
