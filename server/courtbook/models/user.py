"""User model definition."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class UserRole(str, Enum):
    """User role enumeration."""
    USER = "user"
    STAFF = "staff"
    ADMIN = "admin"


class User(Base):
    """A person who books courts or staffs the front desk."""

    __tablename__ = "users"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    # Profile
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    role: Mapped[UserRole] = mapped_column(String(20), nullable=False, default=UserRole.USER)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)

    # Constraints
    __table_args__ = (
        CheckConstraint("length(email) > 0", name="ck_user_email_not_empty"),
    )

    @property
    def is_privileged(self) -> bool:
        """Staff and admins create transactions that never auto-expire."""
        return self.role in (UserRole.STAFF, UserRole.ADMIN)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role={self.role})>"
