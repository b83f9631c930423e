from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from digivault.core.errors import DeliveryError
from digivault.dependencies import get_license_manager
from digivault.models.user import User
from digivault.schemas.context import RequestContext
from digivault.schemas.license import (
    ActivationOut,
    DeactivationOut,
    LicenseActivateRequest,
    LicenseDeactivateRequest,
    LicenseExtendRequest,
    LicenseKeyRequest,
    LicenseRecord,
    LicenseRevokeRequest,
    LicenseValidateRequest,
    LicenseValidateResponse,
)
from digivault.security.deps import get_request_context, require_admin
from digivault.services.licenses import LicenseManager


router = APIRouter()


@router.post("/validate", response_model=LicenseValidateResponse)
def validate_license(
    payload: LicenseValidateRequest,
    licenses: LicenseManager = Depends(get_license_manager),
) -> LicenseValidateResponse:
    try:
        lic = licenses.validate(payload.key, payload.product_id)
    except DeliveryError:
        return LicenseValidateResponse(valid=False)
    return LicenseValidateResponse(
        valid=True,
        status=lic.status,
        type=lic.type,
        expires_at=lic.expires_at,
        activations_remaining=lic.remaining_activations,
    )


@router.post("/activate", response_model=ActivationOut)
def activate_license(
    payload: LicenseActivateRequest,
    context: RequestContext = Depends(get_request_context),
    licenses: LicenseManager = Depends(get_license_manager),
) -> ActivationOut:
    result = licenses.activate(payload.key, payload.device, context)
    licenses.db.commit()
    return ActivationOut(
        activation_id=result.activation_id,
        is_new_activation=result.is_new_activation,
        activations_remaining=result.license.remaining_activations,
        license=LicenseRecord.model_validate(result.license),
    )


@router.post("/deactivate", response_model=DeactivationOut)
def deactivate_license(
    payload: LicenseDeactivateRequest,
    licenses: LicenseManager = Depends(get_license_manager),
) -> DeactivationOut:
    deactivated = licenses.deactivate(payload.key, payload.device_id, payload.reason)
    licenses.db.commit()
    lic = licenses.get_by_key(payload.key)
    return DeactivationOut(deactivated=deactivated, activations_remaining=lic.remaining_activations)


@router.post("/info", response_model=LicenseRecord)
def license_info(
    payload: LicenseKeyRequest,
    context: RequestContext = Depends(get_request_context),
    licenses: LicenseManager = Depends(get_license_manager),
) -> LicenseRecord:
    lic = licenses.info(payload.key, context)
    licenses.db.commit()
    return LicenseRecord.model_validate(lic)


@router.get("/analytics")
def license_analytics(
    product_id: Optional[int] = None,
    _: User = Depends(require_admin),
    licenses: LicenseManager = Depends(get_license_manager),
) -> Dict[str, Any]:
    return licenses.analytics(product_id)


@router.get("/{license_id}", response_model=LicenseRecord)
def get_license(
    license_id: int,
    _: User = Depends(require_admin),
    licenses: LicenseManager = Depends(get_license_manager),
) -> LicenseRecord:
    return LicenseRecord.model_validate(licenses.get(license_id))


@router.post("/{license_id}/revoke", response_model=LicenseRecord)
def revoke_license(
    license_id: int,
    payload: LicenseRevokeRequest,
    admin: User = Depends(require_admin),
    licenses: LicenseManager = Depends(get_license_manager),
) -> LicenseRecord:
    lic = licenses.revoke(licenses.get(license_id), payload.reason, actor_id=admin.id)
    licenses.db.commit()
    return LicenseRecord.model_validate(lic)


@router.post("/{license_id}/extend", response_model=LicenseRecord)
def extend_license(
    license_id: int,
    payload: LicenseExtendRequest,
    admin: User = Depends(require_admin),
    licenses: LicenseManager = Depends(get_license_manager),
) -> LicenseRecord:
    lic = licenses.extend(licenses.get(license_id), payload.extra_days, actor_id=admin.id)
    licenses.db.commit()
    return LicenseRecord.model_validate(lic)
