"""Calendar-related Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.config import Settings, settings as app_settings


class BusinessHours(BaseModel):
    """Read-only snapshot of the front desk's opening hours."""

    model_config = ConfigDict(frozen=True)

    start_hour: int = Field(8, ge=0, lt=24, description="Opening hour (inclusive)")
    end_hour: int = Field(17, ge=0, lt=24, description="Closing hour (exclusive)")

    @model_validator(mode="after")
    def validate_window(self) -> "BusinessHours":
        """Opening hour must come before closing hour."""
        if self.start_hour >= self.end_hour:
            raise ValueError("start_hour must be earlier than end_hour")
        return self

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "BusinessHours":
        config = config or app_settings
        return cls(start_hour=config.business_start_hour, end_hour=config.business_end_hour)
