"""
Base model configuration
camelCase aliases on the wire and in stored documents, snake_case in Python
"""

from typing import Any, Dict

from pydantic import BaseModel as PydanticBaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class BaseModel(PydanticBaseModel):
    """Base model with camelCase conversion.

    This base model configuration:
    - Accepts camelCase documents and request bodies for snake_case python fields
    - Forbids unknown fields to ensure type safety
    """

    model_config = ConfigDict(
        # See: <https://docs.pydantic.dev/2.10/concepts/alias/#using-an-aliasgenerator>
        alias_generator=to_camel,
        # Allow populating by both field name and alias
        populate_by_name=True,
        # See: <https://docs.pydantic.dev/2.10/concepts/models/#extra-data>
        extra="forbid",
    )

    def model_dump(self, **kwargs):
        """Override model_dump to always use aliases (camelCase) by default."""
        kwargs.setdefault("by_alias", True)
        return super().model_dump(**kwargs)

    def to_document(self) -> Dict[str, Any]:
        """JSON-safe camelCase dict for storage"""
        return self.model_dump(mode="json")

    @classmethod
    def from_document(cls, doc: Dict[str, Any]):
        return cls.model_validate(doc)
