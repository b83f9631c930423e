from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, func

from digivault.core.clock import utcnow
from digivault.db.session import Base


class Product(Base):
    """Local mirror of a catalog product's digital-delivery policy.

    The commerce side owns products; this table only keeps what delivery
    needs to decide how to fulfil a line item.
    """

    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False, index=True)
    description = Column(Text, nullable=True)
    is_digital = Column(Boolean, nullable=False, default=True, server_default="1")
    requires_license = Column(Boolean, nullable=False, default=False, server_default="0")
    license_type = Column(String(20), nullable=False, default="single_use", server_default="single_use")
    download_limit = Column(Integer, nullable=False, default=5, server_default="5")
    download_window_days = Column(Integer, nullable=False, default=30, server_default="30")
    auto_delivery = Column(Boolean, nullable=False, default=True, server_default="1")
    latest_version = Column(String(50), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
