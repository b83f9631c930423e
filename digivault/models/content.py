from sqlalchemy import Column, Integer, BigInteger, String, Boolean, DateTime, Text, ForeignKey, JSON, func
from sqlalchemy.orm import relationship

from digivault.core.clock import utcnow
from digivault.db.session import Base


class ContentObject(Base):
    __tablename__ = "content_objects"

    id = Column(Integer, primary_key=True)
    product_id = Column(Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    original_filename = Column(String(255), nullable=False)
    # Relative to the storage base path, never exposed to buyers
    file_path = Column(String(500), unique=True, nullable=False)
    file_type = Column(String(20), nullable=False)
    mime_type = Column(String(100), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_hash = Column(String(64), nullable=False)
    is_primary = Column(Boolean, nullable=False, default=False, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")
    download_limit = Column(Integer, nullable=True)
    download_count = Column(Integer, nullable=False, default=0, server_default="0")
    version = Column(String(50), nullable=False, default="1.0.0", server_default="1.0.0")
    description = Column(Text, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column("metadata", JSON, nullable=False, default=dict)
    # Soft-delete marker: set before the bytes are removed
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False)

    product = relationship("Product")
