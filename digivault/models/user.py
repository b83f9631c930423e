from sqlalchemy import Column, Integer, String, DateTime, func

from digivault.core.clock import utcnow
from digivault.db.session import Base


class User(Base):
    """Buyers and administrators. Buyer ids on grants/licenses match ``User.id``."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    full_name = Column(String(255), nullable=True)
    hashed_password = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="user", server_default="user")
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
