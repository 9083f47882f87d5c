"""Shared base for API models.

The mobile client speaks camelCase JSON; models use snake_case attributes
and camelCase aliases on the wire.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class Pagination(CamelModel):
    total: int
    limit: int
    offset: int
    has_more: bool
