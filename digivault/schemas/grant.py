from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class GrantOut(BaseModel):
    id: int
    buyer_id: int
    product_id: int
    order_id: int
    content_object_id: Optional[int]
    token: str
    download_limit: int
    downloads_used: int
    remaining_downloads: int
    expires_at: datetime
    status: str
    allowed_ips: List[str]
    first_downloaded_at: Optional[datetime]
    last_downloaded_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class GrantAdminOut(GrantOut):
    meta: Dict[str, Any]


class GrantRevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=255)


class GrantExtendRequest(BaseModel):
    extra_days: int = Field(gt=0)


class GrantLimitRequest(BaseModel):
    extra_downloads: int = Field(gt=0)


class GrantIpRequest(BaseModel):
    ip: str = Field(min_length=1, max_length=64)


class AttemptOut(BaseModel):
    id: int
    grant_id: int
    content_object_id: Optional[int]
    ip_address: Optional[str]
    status: str
    bytes_transferred: int
    total_size: int
    failure_reason: Optional[str]
    started_at: datetime
    finished_at: Optional[datetime]
    duration_seconds: Optional[float]
    speed_kbps: Optional[float]

    class Config:
        from_attributes = True


class ProgressRequest(BaseModel):
    bytes_transferred: int = Field(ge=0)
    status: Optional[str] = Field(default=None, pattern="^(completed|failed)$")
    error_message: Optional[str] = Field(default=None, max_length=500)


class ProgressOut(BaseModel):
    attempt_id: int
    status: str
    bytes_transferred: int
    total_size: int
    progress_percentage: float


class DownloadFileInfo(BaseModel):
    id: int
    name: str
    size: str
    mime_type: str
    version: str
    description: Optional[str]


class DownloadInfoOut(BaseModel):
    file: DownloadFileInfo
    downloads_remaining: int
    expires_at: datetime
    status: str
