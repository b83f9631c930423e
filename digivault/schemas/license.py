from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class DeviceInfo(BaseModel):
    device_id: str = Field(min_length=1, max_length=255)
    device_name: Optional[str] = Field(default=None, max_length=255)
    product_version: Optional[str] = Field(default=None, max_length=50)
    info: Dict[str, Any] = {}


class LicenseValidateRequest(BaseModel):
    key: str
    product_id: Optional[int] = None


class LicenseValidateResponse(BaseModel):
    valid: bool
    status: Optional[str] = None
    type: Optional[str] = None
    expires_at: Optional[datetime] = None
    activations_remaining: Optional[int] = None


class LicenseActivateRequest(BaseModel):
    key: str
    device: DeviceInfo


class LicenseDeactivateRequest(BaseModel):
    key: str
    device_id: Optional[str] = Field(default=None, max_length=255)
    reason: Optional[str] = Field(default=None, max_length=255)


class LicenseKeyRequest(BaseModel):
    key: str


class LicenseExtendRequest(BaseModel):
    extra_days: int = Field(gt=0)


class LicenseRevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class DeviceOut(BaseModel):
    activation_id: str
    device_id: str
    device_name: Optional[str]
    product_version: Optional[str]
    activation_count: int
    activated_at: datetime
    last_seen_at: datetime

    class Config:
        from_attributes = True


class LicenseRecord(BaseModel):
    id: int
    license_key: str
    product_id: int
    buyer_id: int
    order_id: int
    type: str
    status: str
    activation_limit: int
    activations_used: int
    remaining_activations: int
    expires_at: Optional[datetime] = None
    devices: List[DeviceOut] = []

    class Config:
        from_attributes = True


class ActivationOut(BaseModel):
    activation_id: str
    is_new_activation: bool
    activations_remaining: int
    license: LicenseRecord


class DeactivationOut(BaseModel):
    deactivated: bool
    activations_remaining: int


@dataclass
class ActivationResult:
    license: Any
    activation_id: str
    is_new_activation: bool
