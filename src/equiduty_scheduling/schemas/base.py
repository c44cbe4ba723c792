"""
Base schemas shared by the availability and selection wire models.
"""

from datetime import datetime
from typing import Annotated, Any, Dict

from pydantic import BaseModel, BeforeValidator, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel

from ..time_utils import format_iso8601, parse_wire_datetime

# Reads every timestamp variant the backend emits, always writes ISO 8601 UTC.
WireDateTime = Annotated[
    datetime,
    BeforeValidator(parse_wire_datetime),
    PlainSerializer(format_iso8601, return_type=str, when_used="json"),
]


class WireModel(BaseModel):
    """Base model with camelCase aliases so backend payloads round-trip verbatim."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
