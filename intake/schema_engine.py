"""Schema engine: validation rules generated from category field definitions.

Each FieldDefinition maps, through the pure function ``rule_for``, onto one
of a fixed set of rule kinds. A category's rules are compiled once into a
CategorySchema and memoized by SchemaRegistry until the config cache is
invalidated.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from intake.categories.loader import CategoryConfigLoader
from intake.categories.schema import CategoryConfig, FieldDefinition, FieldType
from intake.errors import ConfigurationError, ValidationError

log = logging.getLogger("intake.schema")

DEFAULT_TEXT_MAX_LENGTH = 255

EMAIL_RE = re.compile(
    r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
    r"(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$"
)
PHONE_PATTERNS = (
    re.compile(r"^\(\d{3}\) \d{3}-\d{4}$"),
    re.compile(r"^\d{10}$"),
    re.compile(r"^\d{3}-\d{3}-\d{4}$"),
)
ZIP_RE = re.compile(r"^\d{5}(?:-?\d{4})?$")
STATE_RE = re.compile(r"^[A-Z]{2}$")
INTEGER_RE = re.compile(r"^-?\d+$")

# Accepted literal date spellings (strptime also accepts unpadded M/D)
DATE_INPUT_FORMATS = ("%m/%d/%Y", "%Y-%m-%d", "%m-%d-%Y")


def parse_date(value: Any) -> date | None:
    """Parse a date in one of the accepted literal formats, else None."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None
    text = value.strip()
    for fmt in DATE_INPUT_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


class RuleKind(str, Enum):
    TEXT = "text"
    EMAIL = "email"
    PHONE = "phone"
    ZIP = "zip"
    STATE = "state"
    DATE = "date"
    ENUM = "enum"
    NUMERIC = "numeric"


_KIND_BY_TYPE = {
    FieldType.TEXT: RuleKind.TEXT,
    FieldType.EMAIL: RuleKind.EMAIL,
    FieldType.PHONE: RuleKind.PHONE,
    FieldType.ZIP: RuleKind.ZIP,
    FieldType.STATE: RuleKind.STATE,
    FieldType.DATE: RuleKind.DATE,
    FieldType.ENUM: RuleKind.ENUM,
    FieldType.NUMERIC: RuleKind.NUMERIC,
}


@dataclass
class FieldResult:
    valid: bool
    value: Any = None
    error: Optional[str] = None


@dataclass
class SubmissionReport:
    valid: bool
    errors: dict[str, str] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ValidationRule:
    """Compiled check for one field."""

    name: str
    kind: RuleKind
    required: bool = False
    max_length: int = DEFAULT_TEXT_MAX_LENGTH
    allowed_values: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return self.name.replace("_", " ")

    @property
    def hint(self) -> str:
        """One-line user-facing nudge shown when an answer didn't validate."""
        if self.kind == RuleKind.ENUM:
            return f"Please answer with one of: {', '.join(self.allowed_values)}."
        return _HINTS[self.kind]

    def check(self, value: Any) -> FieldResult:
        if value is None or (isinstance(value, str) and not value.strip()):
            if self.required:
                return FieldResult(False, error=f"{self.label} is required")
            return FieldResult(True, None)

        if self.kind == RuleKind.NUMERIC:
            return self._check_numeric(value)
        if self.kind == RuleKind.DATE:
            if parse_date(value) is None:
                return FieldResult(False, error=f"{self.label} must be a date like MM/DD/YYYY")
            return FieldResult(True, value.strip() if isinstance(value, str) else value)

        text = str(value).strip()
        if self.kind == RuleKind.TEXT:
            if len(text) > self.max_length:
                return FieldResult(
                    False, error=f"{self.label} must be at most {self.max_length} characters",
                )
            return FieldResult(True, text)
        if self.kind == RuleKind.EMAIL:
            if not EMAIL_RE.match(text):
                return FieldResult(False, error=f"{self.label} must be a valid email address")
            return FieldResult(True, text)
        if self.kind == RuleKind.PHONE:
            if not any(p.match(text) for p in PHONE_PATTERNS):
                return FieldResult(False, error=f"{self.label} must be a 10-digit phone number")
            return FieldResult(True, text)
        if self.kind == RuleKind.ZIP:
            if not ZIP_RE.match(text):
                return FieldResult(False, error=f"{self.label} must be a 5 or 9 digit ZIP code")
            return FieldResult(True, text)
        if self.kind == RuleKind.STATE:
            if not STATE_RE.match(text):
                return FieldResult(False, error=f"{self.label} must be a 2-letter state code")
            return FieldResult(True, text)
        if self.kind == RuleKind.ENUM:
            if text not in self.allowed_values:
                return FieldResult(
                    False,
                    error=f"{self.label} must be one of: {', '.join(self.allowed_values)}",
                )
            return FieldResult(True, text)
        raise ValueError(f"Unhandled rule kind {self.kind}")

    def _check_numeric(self, value: Any) -> FieldResult:
        if isinstance(value, bool):
            return FieldResult(False, error=f"{self.label} must be a whole number")
        if isinstance(value, int):
            return FieldResult(True, value)
        if isinstance(value, float) and value.is_integer():
            return FieldResult(True, int(value))
        text = str(value).strip().replace(",", "")
        if not INTEGER_RE.match(text):
            return FieldResult(False, error=f"{self.label} must be a whole number")
        return FieldResult(True, int(text))


_HINTS = {
    RuleKind.TEXT: "Sorry, I didn't quite catch that.",
    RuleKind.EMAIL: "That doesn't look like a valid email address.",
    RuleKind.PHONE: "Please share a 10-digit phone number.",
    RuleKind.ZIP: "Please share a 5-digit ZIP code.",
    RuleKind.STATE: "Please use the 2-letter state code.",
    RuleKind.DATE: "Please give the date as MM/DD/YYYY.",
    RuleKind.NUMERIC: "Please answer with a whole number.",
}


def rule_for(name: str, definition: FieldDefinition) -> ValidationRule:
    """Map one field definition onto its validation rule. Pure and deterministic."""
    return ValidationRule(
        name=name,
        kind=_KIND_BY_TYPE[definition.type],
        required=definition.required,
        max_length=definition.max_length or DEFAULT_TEXT_MAX_LENGTH,
        allowed_values=tuple(definition.allowed_values),
    )


class CategorySchema:
    """All compiled rules for one category."""

    def __init__(self, category_key: str, rules: dict[str, ValidationRule]) -> None:
        self.category_key = category_key
        self.rules = rules

    @classmethod
    def compile(cls, category: CategoryConfig) -> "CategorySchema":
        return cls(
            category.key,
            {name: rule_for(name, fd) for name, fd in category.required_fields.items()},
        )

    def validate_field(self, name: str, value: Any) -> FieldResult:
        rule = self.rules.get(name)
        if rule is None:
            return FieldResult(False, error=f"Unknown field: {name}")
        return rule.check(value)

    def validate_submission(self, payload: dict[str, Any]) -> SubmissionReport:
        """Check every defined field; one error per missing or invalid field."""
        errors: dict[str, str] = {}
        data = {k: v for k, v in payload.items() if k not in self.rules}
        for name, rule in self.rules.items():
            result = rule.check(payload.get(name))
            if not result.valid:
                errors[name] = result.error or f"{rule.label} is invalid"
            elif result.value is not None:
                data[name] = result.value
        if errors:
            return SubmissionReport(False, errors=errors)
        return SubmissionReport(True, data=data)

    def require_valid(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Validated payload data, or ValidationError listing every bad field."""
        report = self.validate_submission(payload)
        if not report.valid:
            raise ValidationError(report.errors)
        return report.data


# ── Registry ─────────────────────────────────────────────────────


class SchemaRegistry:
    """Memoizes CategorySchema per category, cleared on config invalidation."""

    def __init__(self, loader: CategoryConfigLoader) -> None:
        self._loader = loader
        self._schemas: dict[str, CategorySchema] = {}
        self._generation = loader.generation
        self.builds = 0
        loader.on_invalidate(self.clear)

    def schema_for(self, category_key: str) -> CategorySchema:
        category = self._loader.get_category(category_key)
        if category is None:
            raise ConfigurationError(f"Unknown category: {category_key!r}")
        if self._generation != self._loader.generation:
            self.clear()
        schema = self._schemas.get(category_key)
        if schema is None:
            schema = CategorySchema.compile(category)
            self._schemas[category_key] = schema
            self.builds += 1
            log.debug("Compiled schema for %s (%d rules)", category_key, len(schema.rules))
        return schema

    def validate_field(self, name: str, value: Any, category_key: str) -> FieldResult:
        return self.schema_for(category_key).validate_field(name, value)

    def validate_submission(
        self, payload: dict[str, Any], category_key: str,
    ) -> SubmissionReport:
        return self.schema_for(category_key).validate_submission(payload)

    def clear(self) -> None:
        self._schemas.clear()
        self._generation = self._loader.generation

    def stats(self) -> dict[str, Any]:
        return {
            "compiled": sorted(self._schemas),
            "builds": self.builds,
            "config_generation": self._generation,
        }
