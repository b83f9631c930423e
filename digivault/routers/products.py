from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from digivault.db.session import get_db
from digivault.dependencies import get_content_store, get_grant_manager, get_license_manager
from digivault.models.product import Product
from digivault.models.user import User
from digivault.schemas.product import ProductCreate, ProductOut, ProductUpdate
from digivault.security.deps import require_admin
from digivault.services.content_store import ContentStore
from digivault.services.grants import AccessGrantManager
from digivault.services.licenses import LicenseManager


router = APIRouter()


def _get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
    return product


@router.post("/", response_model=ProductOut, status_code=status.HTTP_201_CREATED)
def create_product(
    payload: ProductCreate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProductOut:
    if payload.id is not None and db.get(Product, payload.id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Product already exists")
    product = Product(**payload.model_dump(exclude_none=True))
    db.add(product)
    db.commit()
    return product


@router.get("/", response_model=List[ProductOut])
def list_products(_: User = Depends(require_admin), db: Session = Depends(get_db)) -> List[ProductOut]:
    return db.query(Product).order_by(Product.id).all()


@router.get("/{product_id}", response_model=ProductOut)
def get_product(product_id: int, _: User = Depends(require_admin), db: Session = Depends(get_db)) -> ProductOut:
    return _get_product(db, product_id)


@router.patch("/{product_id}", response_model=ProductOut)
def update_product(
    product_id: int,
    payload: ProductUpdate,
    _: User = Depends(require_admin),
    db: Session = Depends(get_db),
) -> ProductOut:
    product = _get_product(db, product_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        setattr(product, field, value)
    db.commit()
    return product


@router.get("/{product_id}/analytics")
def product_analytics(
    product_id: int,
    _: User = Depends(require_admin),
    store: ContentStore = Depends(get_content_store),
    grants: AccessGrantManager = Depends(get_grant_manager),
    licenses: LicenseManager = Depends(get_license_manager),
) -> Dict[str, Any]:
    product = _get_product(store.db, product_id)
    result: Dict[str, Any] = {
        "product_id": product.id,
        "downloads": grants.product_stats(product.id),
        "files": store.usage_stats(product.id),
    }
    if product.requires_license:
        result["licenses"] = licenses.analytics(product.id)
    return result
