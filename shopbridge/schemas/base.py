"""
Base schemas with common functionality.
"""
from pydantic import BaseModel, ConfigDict
from typing import Type, TypeVar, Any

T = TypeVar('T', bound='BaseSchema')

class BaseSchema(BaseModel):
    """Base schema with common functionality for all schemas"""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True
    )

    @classmethod
    def from_orm_model(cls: Type[T], orm_model: Any) -> T:
        """Create a schema instance from an ORM model"""
        return cls.model_validate(orm_model)


class PlatformPayload(BaseModel):
    """
    Tolerant parser for platform objects.

    Known fields are typed and validated; anything else the platform sends is
    kept (extra="allow") so schema drift does not lose data.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def unmapped(self) -> dict:
        return dict(self.model_extra or {})
