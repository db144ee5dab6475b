"""Base schema shared by request and response models."""

from pydantic import BaseModel, ConfigDict


class BaseSchema(BaseModel):
    """Reads ORM attributes and serializes enums by value."""

    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
