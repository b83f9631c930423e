from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, JSON, UniqueConstraint, func
from sqlalchemy.orm import relationship

from digivault.core.clock import utcnow
from digivault.db.session import Base


LICENSE_ACTIVE = "active"
LICENSE_EXPIRED = "expired"
LICENSE_REVOKED = "revoked"


class LicenseKey(Base):
    __tablename__ = "license_keys"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    buyer_id = Column(Integer, nullable=False, index=True)
    order_id = Column(Integer, nullable=False, index=True)
    license_key = Column(String(64), unique=True, nullable=False, index=True)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=LICENSE_ACTIVE, server_default=LICENSE_ACTIVE, index=True)
    activation_limit = Column(Integer, nullable=False)
    activations_used = Column(Integer, nullable=False, default=0, server_default="0")
    # NULL means perpetual
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    first_activated_at = Column(DateTime(timezone=True), nullable=True)
    last_activated_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    product = relationship("Product")
    devices = relationship(
        "LicenseActivation",
        back_populates="license",
        order_by="LicenseActivation.activated_at",
        cascade="all, delete-orphan",
    )

    @property
    def remaining_activations(self) -> int:
        return max(0, self.activation_limit - self.activations_used)


class LicenseActivation(Base):
    """One device currently holding an activation slot of a license."""

    __tablename__ = "license_activations"
    __table_args__ = (UniqueConstraint("license_id", "device_id", name="uq_license_device"),)

    id = Column(Integer, primary_key=True)
    license_id = Column(Integer, ForeignKey("license_keys.id", ondelete="CASCADE"), nullable=False, index=True)
    activation_id = Column(String(32), unique=True, nullable=False)
    device_id = Column(String(255), nullable=False)
    device_name = Column(String(255), nullable=True)
    device_info = Column(JSON, nullable=False, default=dict)
    ip_address = Column(String(45), nullable=True)
    product_version = Column(String(50), nullable=True)
    activation_count = Column(Integer, nullable=False, default=1, server_default="1")
    activated_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)

    license = relationship("LicenseKey", back_populates="devices")
