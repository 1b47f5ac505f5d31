from datetime import datetime
from typing import Annotated, Optional
from pydantic import BaseModel, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel

from formtester.utils.time import isoformat_utc

UtcDatetime = Annotated[datetime, PlainSerializer(isoformat_utc, return_type=Optional[str])]


class CamelModel(BaseModel):
    """Base for API payloads: camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
