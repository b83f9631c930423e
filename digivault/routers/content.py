import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from digivault.core.errors import ValidationError
from digivault.dependencies import get_content_store
from digivault.models.product import Product
from digivault.models.user import User
from digivault.schemas.content import (
    ContentMeta,
    ContentMoveRequest,
    ContentOut,
    ContentUpdate,
    IntegrityOut,
    UsageStatsOut,
)
from digivault.security.deps import require_admin
from digivault.services.content_store import ContentStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/products/{product_id}/files", response_model=ContentOut, status_code=status.HTTP_201_CREATED)
def upload_file(
    product_id: int,
    file: UploadFile = File(...),
    name: Optional[str] = Form(default=None),
    description: Optional[str] = Form(default=None),
    version: Optional[str] = Form(default=None),
    is_primary: bool = Form(default=False),
    download_limit: Optional[int] = Form(default=None),
    _: User = Depends(require_admin),
    store: ContentStore = Depends(get_content_store),
) -> ContentOut:
    product = store.db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    meta = ContentMeta(
        original_filename=file.filename or "",
        mime_type=file.content_type or "application/octet-stream",
        name=name,
        description=description,
        version=version,
        is_primary=is_primary,
        download_limit=download_limit,
    )
    max_bytes = store.upload_policy.max_bytes
    if file.size is not None and file.size > max_bytes:
        raise ValidationError(f"File exceeds maximum size of {max_bytes} bytes")
    data = file.file.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise ValidationError(f"File exceeds maximum size of {max_bytes} bytes")
    obj = store.store(data, product, meta)
    store.db.commit()
    return obj


@router.get("/products/{product_id}/files", response_model=List[ContentOut])
def list_files(
    product_id: int,
    active_only: bool = False,
    _: User = Depends(require_admin),
    store: ContentStore = Depends(get_content_store),
) -> List[ContentOut]:
    return store.list_files(product_id, active_only=active_only)


@router.get("/files/usage", response_model=UsageStatsOut)
def usage(
    product_id: Optional[int] = None,
    _: User = Depends(require_admin),
    store: ContentStore = Depends(get_content_store),
) -> UsageStatsOut:
    return UsageStatsOut(**store.usage_stats(product_id))


@router.get("/files/{file_id}", response_model=ContentOut)
def get_file(file_id: int, _: User = Depends(require_admin), store: ContentStore = Depends(get_content_store)) -> ContentOut:
    return store.get(file_id)


@router.patch("/files/{file_id}", response_model=ContentOut)
def update_file(
    file_id: int,
    payload: ContentUpdate,
    _: User = Depends(require_admin),
    store: ContentStore = Depends(get_content_store),
) -> ContentOut:
    obj = store.update(store.get(file_id), payload)
    store.db.commit()
    return obj


@router.post("/files/{file_id}/move", response_model=ContentOut)
def move_file(
    file_id: int,
    payload: ContentMoveRequest,
    _: User = Depends(require_admin),
    store: ContentStore = Depends(get_content_store),
) -> ContentOut:
    obj = store.move(store.get(file_id), payload.new_path)
    store.db.commit()
    return obj


@router.delete("/files/{file_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_file(file_id: int, admin: User = Depends(require_admin), store: ContentStore = Depends(get_content_store)) -> None:
    store.delete(store.get(file_id))
    logger.info("File %s deleted by admin=%s", file_id, admin.id)


@router.get("/files/{file_id}/verify", response_model=IntegrityOut)
def verify_file(
    file_id: int,
    _: User = Depends(require_admin),
    store: ContentStore = Depends(get_content_store),
) -> IntegrityOut:
    return IntegrityOut(id=file_id, valid=store.verify_integrity(store.get(file_id)))
