"""Pydantic models for per-category intake configuration.

One CategoryConfig per legal practice area: which fields a lead needs,
where each value comes from, the order in which missing fields are asked,
and the marketplace routing triple used at submission.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, field_validator


class FieldType(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    ZIP = "zip"
    STATE = "state"
    DATE = "date"
    ENUM = "enum"
    NUMERIC = "numeric"


class FieldSource(str, Enum):
    USER = "user"                # asked for / extracted from the conversation
    CONFIG = "config"            # static value from this file
    SERVER = "server"            # request metadata or session classification
    TRACKING = "tracking"        # opaque consent-proof ids from the client
    COMPLIANCE = "compliance"    # consent disclosure text


# Config spellings that collapse onto one of the FieldType rule kinds
_TYPE_ALIASES = {
    "postal_code": "zip",
    "city": "text",
    "ip": "text",
    "url": "text",
}


class FieldDefinition(BaseModel):
    """Declared shape and provenance of one lead field."""

    type: FieldType = FieldType.TEXT
    required: bool = False
    source: FieldSource = FieldSource.USER
    value: Any = None                          # static value (config / compliance)
    allowed_values: list[str] = []             # enum members, canonical casing
    format: Optional[str] = None               # marketplace output format
    max_length: Optional[int] = None
    description: str = ""
    example: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _alias_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _TYPE_ALIASES.get(v, v)
        return v

    @field_validator("source", mode="before")
    @classmethod
    def _default_source(cls, v: Any) -> Any:
        # Older configs tag optional user fields as source "optional"
        if v is None or v == "optional":
            return FieldSource.USER
        return v

    @property
    def is_user_field(self) -> bool:
        return self.source == FieldSource.USER


class FlowStep(BaseModel):
    """One entry of a category's conversation order."""

    order: int
    field: str


class MarketplaceRouting(BaseModel):
    """Campaign / supplier / key triple the marketplace routes on."""

    lp_campaign_id: int
    lp_supplier_id: int
    lp_key: str


class Personality(BaseModel):
    compassionate_intro: str = ""


class CategoryConfig(BaseModel):
    """A complete practice-area definition."""

    key: str
    name: str = ""
    description: str = ""
    subcategories: list[str] = []
    personality: Personality = Personality()
    field_questions: dict[str, Union[str, dict[str, str]]] = {}
    lead_prosper_config: Optional[MarketplaceRouting] = None
    chat_flow: list[FlowStep] = []
    required_fields: dict[str, FieldDefinition] = {}
    ai_detection_keywords: list[str] = []

    def ordered_flow(self) -> list[FlowStep]:
        return sorted(self.chat_flow, key=lambda step: step.order)

    def field(self, name: str) -> FieldDefinition | None:
        return self.required_fields.get(name)

    def user_fields(self) -> dict[str, FieldDefinition]:
        """Fields that may be solicited from or extracted out of the chat."""
        return {
            name: fd for name, fd in self.required_fields.items() if fd.is_user_field
        }

    def missing_required_user_fields(self, answers: dict[str, Any]) -> list[str]:
        """Required user-provided fields with no usable answer, in definition order."""
        missing = []
        for name, fd in self.required_fields.items():
            if not fd.required or not fd.is_user_field:
                continue
            value = answers.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing


class CategoryConfigSet(BaseModel):
    """Every configured category, in file order."""

    categories: dict[str, CategoryConfig] = {}
    source_path: str = ""
    loaded_at: float = 0.0

    def keys(self) -> list[str]:
        return list(self.categories)

    def get(self, key: str) -> CategoryConfig | None:
        return self.categories.get(key)
