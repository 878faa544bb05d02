"""Holiday model definition."""

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import Boolean, Date, DateTime, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class Holiday(Base):
    """
    A day the facility is closed.

    Recurring holidays match the same month and day in every year.
    """

    __tablename__ = "holidays"

    # Primary key
    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    holiday_date: Mapped[date] = mapped_column("date", Date, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_recurring: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.now)

    def __repr__(self) -> str:
        return f"<Holiday(date={self.holiday_date}, name='{self.name}', recurring={self.is_recurring})>"
