from enum import Enum
from typing import Any, Optional, Union
from pydantic import Field, field_validator

from formtester.schemas.common import CamelModel

FieldValue = Union[bool, int, float, str, list[str]]


class FieldType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    PASSWORD = "password"
    NUMBER = "number"
    TEL = "tel"
    URL = "url"
    TEXTAREA = "textarea"
    SELECT = "select"
    CHECKBOX = "checkbox"
    RADIO = "radio"
    FILE = "file"


class FormField(CamelModel):
    name: str = Field(min_length=1)
    type: FieldType
    selector: str = Field(min_length=1)
    required: bool = False
    default_value: Optional[FieldValue] = None
    options: Optional[list[str]] = None
    label: Optional[str] = None


class SuccessIndicator(CamelModel):
    selector: str = Field(min_length=1)
    timeout: Optional[int] = Field(default=None, gt=0)


class FormConfig(CamelModel):
    fields: list[FormField] = Field(default_factory=list)
    submit_button_selector: str = Field(min_length=1)
    success_indicator: Optional[SuccessIndicator] = None

    @field_validator("fields")
    @classmethod
    def unique_field_names(cls, fields: list[FormField]) -> list[FormField]:
        seen = set()
        for field in fields:
            if field.name in seen:
                raise ValueError(f"Duplicate field name: {field.name}")
            seen.add(field.name)
        return fields

    def to_store(self) -> dict[str, Any]:
        """JSON-ready camelCase form, the shape kept in records and rule payloads."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")
