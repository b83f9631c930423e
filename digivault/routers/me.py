from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from digivault.dependencies import get_grant_manager, get_license_manager
from digivault.models.user import User
from digivault.schemas.grant import AttemptOut, GrantOut
from digivault.schemas.license import LicenseRecord
from digivault.security.deps import get_current_user
from digivault.services.grants import AccessGrantManager
from digivault.services.licenses import LicenseManager


router = APIRouter()


@router.get("/me/downloads", response_model=List[GrantOut])
def my_downloads(
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> List[GrantOut]:
    return grants.list_for_buyer(user.id, status)


@router.get("/me/licenses", response_model=List[LicenseRecord])
def my_licenses(
    status: Optional[str] = None,
    user: User = Depends(get_current_user),
    licenses: LicenseManager = Depends(get_license_manager),
) -> List[LicenseRecord]:
    return licenses.list_for_buyer(user.id, status)


@router.get("/me/download-history", response_model=List[AttemptOut])
def my_download_history(
    status: Optional[str] = None,
    product_id: Optional[int] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    grants: AccessGrantManager = Depends(get_grant_manager),
) -> List[AttemptOut]:
    return grants.history(user.id, status=status, product_id=product_id, limit=limit, offset=offset)
