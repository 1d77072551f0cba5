"""Base schemas with camelCase field aliases and UTC datetime serialization."""

from datetime import datetime
from typing import Annotated

from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel

from mediaproc.utils.timezone import to_utc_isoformat

# Datetime that always serializes as ISO 8601 with a Z suffix
UTCDateTime = Annotated[
    datetime,
    PlainSerializer(to_utc_isoformat, return_type=str, when_used="json"),
]


class CamelModel(BaseModel):
    """Base model whose JSON form uses camelCase keys.

    Fields are still populated by their Python names, so code reads
    ``record.file_id`` while the file on disk carries ``fileId``.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_json(self) -> str:
        """Serialize using the camelCase aliases."""
        return self.model_dump_json(by_alias=True, indent=2)

