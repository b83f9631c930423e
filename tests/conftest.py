import os
import tempfile

# settings are read at import time, so point them at a throwaway location first
_TMP = tempfile.mkdtemp(prefix="digivault-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP}/test.db")
os.environ.setdefault("STORAGE_DIR", os.path.join(_TMP, "storage"))
os.environ.setdefault("CLEANUP_INTERVAL_MINUTES", "0")
os.environ.setdefault("SQLITE_BUSY_TIMEOUT_SECONDS", "15")

import pytest

from digivault.db.session import Base, SessionLocal, engine
from digivault.models.content import ContentObject  # noqa: F401
from digivault.models.grant import AccessGrant  # noqa: F401
from digivault.models.license import LicenseKey  # noqa: F401
from digivault.models.product import Product
from digivault.models.user import User  # noqa: F401
from digivault.schemas.content import ContentMeta
from digivault.services.content_store import ContentStore, FilesystemBackend


def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture
def db():
    reset_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def backend(tmp_path):
    return FilesystemBackend(tmp_path / "objects")


@pytest.fixture
def store(db, backend):
    return ContentStore(db, backend=backend)


@pytest.fixture
def make_product(db):
    def _make(**overrides):
        values = {
            "name": "Photo Editor Pro",
            "is_digital": True,
            "requires_license": False,
            "license_type": "single_use",
            "download_limit": 3,
            "download_window_days": 30,
            "auto_delivery": True,
        }
        values.update(overrides)
        product = Product(**values)
        db.add(product)
        db.flush()
        return product

    return _make


@pytest.fixture
def make_file(store):
    def _make(product, data=b"installer-bytes" * 100, filename="setup.zip", mime="application/zip", **meta):
        return store.store(data, product, ContentMeta(original_filename=filename, mime_type=mime, **meta))

    return _make
