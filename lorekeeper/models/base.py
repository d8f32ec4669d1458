"""
Shared model configuration for Lorekeeper.

World state arrives from the persistence layer and from LLM responses in
camelCase, while the Python side uses snake_case. Every model accepts both.
"""

from typing import Any, List

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class LoreModel(BaseModel):
    """
    Base class for all Lorekeeper data models.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict:
        """Dump the model using camelCase keys."""
        return self.model_dump(by_alias=True, mode="json")


def string_list(value: Any) -> List[str]:
    """
    Keep the non-empty scalar members of a list as stripped strings.

    Anything that is not a list becomes an empty list.
    """
    if not isinstance(value, list):
        return []
    return [
        str(v).strip() for v in value
        if isinstance(v, (str, int, float)) and not isinstance(v, bool) and str(v).strip()
    ]
