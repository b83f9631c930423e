from typing import Literal, Optional

from pydantic import BaseModel, Field

from digivault.core.settings import settings


LicenseType = Literal["single_use", "multi_use", "subscription", "trial"]


class ProductCreate(BaseModel):
    id: Optional[int] = Field(default=None, gt=0)
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    is_digital: bool = True
    requires_license: bool = False
    license_type: LicenseType = "single_use"
    download_limit: int = Field(default=settings.grant_default_download_limit, gt=0)
    download_window_days: int = Field(default=settings.grant_default_window_days, gt=0)
    auto_delivery: bool = True
    latest_version: Optional[str] = Field(default=None, max_length=50)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = None
    is_digital: Optional[bool] = None
    requires_license: Optional[bool] = None
    license_type: Optional[LicenseType] = None
    download_limit: Optional[int] = Field(default=None, gt=0)
    download_window_days: Optional[int] = Field(default=None, gt=0)
    auto_delivery: Optional[bool] = None
    latest_version: Optional[str] = Field(default=None, max_length=50)


class ProductOut(BaseModel):
    id: int
    name: str
    description: Optional[str]
    is_digital: bool
    requires_license: bool
    license_type: str
    download_limit: int
    download_window_days: int
    auto_delivery: bool
    latest_version: Optional[str]

    class Config:
        from_attributes = True
