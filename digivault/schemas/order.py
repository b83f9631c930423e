from dataclasses import dataclass, field
from typing import Any, List, Optional

from pydantic import BaseModel, EmailStr, Field


class BuyerIn(BaseModel):
    id: int
    email: EmailStr
    name: Optional[str] = None


class LineItemIn(BaseModel):
    product_id: int
    quantity: int = Field(default=1, gt=0)


class OrderIn(BaseModel):
    """A confirmed order as handed over by the commerce pipeline."""

    id: int
    buyer: BuyerIn
    items: List[LineItemIn] = Field(min_length=1)
    total_formatted: Optional[str] = None
    placed_at: Optional[str] = None


@dataclass
class ItemSuccess:
    product_id: int
    product_name: str
    quantity: int
    grants: List[Any] = field(default_factory=list)
    licenses: List[Any] = field(default_factory=list)
    requires_license: bool = False
    auto_delivery: bool = False
    delivered: bool = False


@dataclass
class ItemFailure:
    product_id: int
    product_name: Optional[str]
    error: str


@dataclass
class FulfillmentReport:
    order_id: int
    successes: List[ItemSuccess] = field(default_factory=list)
    failures: List[ItemFailure] = field(default_factory=list)
    notification_failures: List[ItemFailure] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return len(self.successes)

    @property
    def error_count(self) -> int:
        return len(self.failures)


class ItemSuccessOut(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    grant_tokens: List[str]
    license_keys: List[str]
    delivered: bool


class ItemFailureOut(BaseModel):
    product_id: int
    product_name: Optional[str]
    error: str


class FulfillmentReportOut(BaseModel):
    order_id: int
    success_count: int
    error_count: int
    successes: List[ItemSuccessOut]
    failures: List[ItemFailureOut]
    notification_failures: List[ItemFailureOut]


class CleanupOut(BaseModel):
    expired_grants: int
    expired_licenses: int
