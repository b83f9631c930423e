from sqlalchemy import Column, Integer, BigInteger, Float, String, DateTime, Text, ForeignKey, JSON, func
from sqlalchemy.orm import relationship

from digivault.core.clock import utcnow
from digivault.db.session import Base


GRANT_ACTIVE = "active"
GRANT_EXPIRED = "expired"
GRANT_REVOKED = "revoked"

ATTEMPT_STARTED = "started"
ATTEMPT_COMPLETED = "completed"
ATTEMPT_FAILED = "failed"


class AccessGrant(Base):
    __tablename__ = "access_grants"

    id = Column(Integer, primary_key=True)
    # buyer/order ids belong to the commerce domain, no FK on purpose
    buyer_id = Column(Integer, nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(Integer, nullable=False, index=True)
    content_object_id = Column(Integer, ForeignKey("content_objects.id", ondelete="SET NULL"), nullable=True)
    token = Column(String(64), unique=True, nullable=False, index=True)
    download_limit = Column(Integer, nullable=False)
    downloads_used = Column(Integer, nullable=False, default=0, server_default="0")
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=GRANT_ACTIVE, server_default=GRANT_ACTIVE, index=True)
    allowed_ips = Column(JSON, nullable=False, default=list)
    first_downloaded_at = Column(DateTime(timezone=True), nullable=True)
    last_downloaded_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)

    product = relationship("Product")
    content_object = relationship("ContentObject")
    attempts = relationship("DownloadAttempt", back_populates="grant", order_by="DownloadAttempt.id")

    @property
    def remaining_downloads(self) -> int:
        return max(0, self.download_limit - self.downloads_used)


class DownloadAttempt(Base):
    __tablename__ = "download_attempts"

    id = Column(Integer, primary_key=True)
    grant_id = Column(Integer, ForeignKey("access_grants.id", ondelete="CASCADE"), nullable=False, index=True)
    content_object_id = Column(Integer, ForeignKey("content_objects.id", ondelete="SET NULL"), nullable=True)
    buyer_id = Column(Integer, nullable=False, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(String(500), nullable=True)
    status = Column(String(20), nullable=False, default=ATTEMPT_STARTED, server_default=ATTEMPT_STARTED)
    bytes_transferred = Column(BigInteger, nullable=False, default=0, server_default="0")
    total_size = Column(BigInteger, nullable=False, default=0, server_default="0")
    headers = Column(JSON, nullable=False, default=dict)
    failure_reason = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)
    speed_kbps = Column(Float, nullable=True)

    grant = relationship("AccessGrant", back_populates="attempts")
    content_object = relationship("ContentObject")
