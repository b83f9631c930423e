from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status

from digivault.core.errors import NotFoundError
from digivault.dependencies import get_content_store, get_grant_manager
from digivault.models.grant import AccessGrant
from digivault.models.product import Product
from digivault.models.user import User
from digivault.schemas.grant import (
    AttemptOut,
    GrantAdminOut,
    GrantExtendRequest,
    GrantIpRequest,
    GrantLimitRequest,
    GrantRevokeRequest,
)
from digivault.schemas.context import RequestContext
from digivault.security.deps import get_request_context, require_admin
from digivault.services.content_store import ContentStore
from digivault.services.grants import AccessGrantManager


router = APIRouter()


@router.post("/", response_model=GrantAdminOut, status_code=status.HTTP_201_CREATED)
def issue_grant(
    buyer_id: int,
    product_id: int,
    order_id: int,
    file_id: Optional[int] = None,
    _: User = Depends(require_admin),
    context: RequestContext = Depends(get_request_context),
    store: ContentStore = Depends(get_content_store),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> GrantAdminOut:
    """Issue a grant outside of order fulfilment, e.g. for support cases."""
    product = store.db.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found", public_message="Product not found")
    content_object = store.get(file_id) if file_id is not None else None
    grant = grants.issue(buyer_id, product, order_id, content_object=content_object, context=context)
    grants.db.commit()
    return grant


@router.get("/", response_model=List[GrantAdminOut])
def list_grants(
    buyer_id: Optional[int] = None,
    product_id: Optional[int] = None,
    status_filter: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    _: User = Depends(require_admin),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> List[GrantAdminOut]:
    query = grants.db.query(AccessGrant)
    if buyer_id is not None:
        query = query.filter(AccessGrant.buyer_id == buyer_id)
    if product_id is not None:
        query = query.filter(AccessGrant.product_id == product_id)
    if status_filter:
        query = query.filter(AccessGrant.status == status_filter)
    return query.order_by(AccessGrant.id.desc()).offset(offset).limit(min(limit, 200)).all()


@router.get("/{grant_id}", response_model=GrantAdminOut)
def get_grant(grant_id: int, _: User = Depends(require_admin), grants: AccessGrantManager = Depends(get_grant_manager)) -> GrantAdminOut:
    return grants.get(grant_id)


@router.post("/{grant_id}/revoke", response_model=GrantAdminOut)
def revoke_grant(
    grant_id: int,
    payload: GrantRevokeRequest,
    admin: User = Depends(require_admin),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> GrantAdminOut:
    grant = grants.revoke(grants.get(grant_id), payload.reason, actor_id=admin.id)
    grants.db.commit()
    return grant


@router.post("/{grant_id}/extend", response_model=GrantAdminOut)
def extend_grant(
    grant_id: int,
    payload: GrantExtendRequest,
    admin: User = Depends(require_admin),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> GrantAdminOut:
    grant = grants.extend_expiry(grants.get(grant_id), payload.extra_days, actor_id=admin.id)
    grants.db.commit()
    return grant


@router.post("/{grant_id}/limit", response_model=GrantAdminOut)
def increase_grant_limit(
    grant_id: int,
    payload: GrantLimitRequest,
    admin: User = Depends(require_admin),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> GrantAdminOut:
    grant = grants.increase_limit(grants.get(grant_id), payload.extra_downloads, actor_id=admin.id)
    grants.db.commit()
    return grant


@router.post("/{grant_id}/ips", response_model=GrantAdminOut)
def add_grant_ip(
    grant_id: int,
    payload: GrantIpRequest,
    admin: User = Depends(require_admin),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> GrantAdminOut:
    grant = grants.add_allowed_ip(grants.get(grant_id), payload.ip, actor_id=admin.id)
    grants.db.commit()
    return grant


@router.delete("/{grant_id}/ips", response_model=GrantAdminOut)
def remove_grant_ip(
    grant_id: int,
    ip: str,
    admin: User = Depends(require_admin),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> GrantAdminOut:
    grant = grants.remove_allowed_ip(grants.get(grant_id), ip, actor_id=admin.id)
    grants.db.commit()
    return grant


@router.get("/{grant_id}/attempts", response_model=List[AttemptOut])
def list_attempts(
    grant_id: int,
    _: User = Depends(require_admin),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> List[AttemptOut]:
    return list(grants.get(grant_id).attempts)


@router.get("/{grant_id}/analytics")
def grant_analytics(
    grant_id: int,
    _: User = Depends(require_admin),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> Dict[str, Any]:
    return grants.analytics(grants.get(grant_id))
