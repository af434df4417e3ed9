"""
Base schemas with standardized configuration for consistent API payloads.
"""
from pydantic import BaseModel, ConfigDict


class StandardizedModel(BaseModel):
    """Response base that reads ORM rows and serializes enums by value."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True, from_attributes=True)


class StrictRequestModel(BaseModel):
    """Request DTO base that always forbids unexpected fields."""

    model_config = ConfigDict(
        extra="forbid",
        validate_default=True,
        validate_assignment=True,
    )


def clean_text(value: object) -> object:
    """Strip free-text input; blank strings become None."""
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value
