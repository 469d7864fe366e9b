"""
Shared schema base.

WHY: The marketplace frontend speaks camelCase (userId, oldSubscriptionId).
Fields are declared in snake_case and exposed through camelCase aliases;
either spelling is accepted on input.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )
