"""
User Model - Viewers, Creators and Platform Staff
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean

from app.db.database import Base, utcnow


class UserRole(str, enum.Enum):
    VIEWER = "viewer"
    CREATOR = "creator"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class User(Base):
    """Account identity. Profile data lives in the surrounding product."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False)
    display_name = Column(String(100), nullable=True)
    role = Column(SQLEnum(UserRole), default=UserRole.VIEWER, nullable=False)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_platform_admin(self) -> bool:
        return self.role in (UserRole.ADMIN, UserRole.SUPER_ADMIN)
