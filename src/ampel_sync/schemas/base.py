"""Base schema class for API responses built from ORM rows."""

from typing import Any, Self

from pydantic import BaseModel, ConfigDict


class SchemaBase(BaseModel):
    """Base class for all response and request schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        str_strip_whitespace=True,
    )

    @classmethod
    def from_orm(cls, obj: Any) -> Self:
        """Build a schema from a SQLAlchemy model instance."""
        return cls.model_validate(obj)

    @classmethod
    def from_orm_list(cls, objs: list[Any]) -> list[Self]:
        return [cls.from_orm(obj) for obj in objs]

    def to_json_dict(self) -> dict[str, Any]:
        """JSON-compatible dict (enums as values, datetimes as ISO strings)."""
        return self.model_dump(mode="json")
