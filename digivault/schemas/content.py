from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class ContentMeta(BaseModel):
    original_filename: str = Field(min_length=1, max_length=255)
    mime_type: str = Field(min_length=1, max_length=100)
    name: Optional[str] = Field(default=None, max_length=255)
    description: Optional[str] = None
    version: Optional[str] = Field(default=None, max_length=50)
    is_primary: bool = False
    download_limit: Optional[int] = Field(default=None, gt=0)
    expires_at: Optional[datetime] = None
    metadata: Dict[str, Any] = {}


class ContentUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    version: Optional[str] = Field(default=None, max_length=50)
    is_primary: Optional[bool] = None
    is_active: Optional[bool] = None
    download_limit: Optional[int] = Field(default=None, gt=0)
    expires_at: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class ContentMoveRequest(BaseModel):
    new_path: str = Field(min_length=1, max_length=500)


class ContentOut(BaseModel):
    id: int
    product_id: int
    name: str
    original_filename: str
    file_type: str
    mime_type: str
    file_size: int
    file_hash: str
    is_primary: bool
    is_active: bool
    download_limit: Optional[int]
    download_count: int
    version: str
    description: Optional[str]
    expires_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class IntegrityOut(BaseModel):
    id: int
    valid: bool


class UsageStatsOut(BaseModel):
    file_count: int
    total_bytes: int
    total_size_formatted: str
    active_files: int
    active_bytes: int
    active_size_formatted: str
