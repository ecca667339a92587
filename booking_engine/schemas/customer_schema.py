"""Customer contact data attached to a booking request."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from booking_engine.utils import is_valid_email, is_valid_phone


class CustomerInfo(BaseModel):
    """Contact details submitted on the public booking form.

    The engine never interprets these fields beyond validating their shape.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=200)
    email: str
    phone: Optional[str] = Field(default=None, max_length=50)
    message: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Customer name is required")
        return value

    @field_validator("email")
    @classmethod
    def _check_email(cls, value: str) -> str:
        if not is_valid_email(value):
            raise ValueError(f"Invalid email format: {value!r}")
        return value.strip()

    @field_validator("phone")
    @classmethod
    def _check_phone(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        if not is_valid_phone(value):
            raise ValueError(f"Invalid phone number: {value!r}")
        return value.strip()
