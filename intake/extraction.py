"""Field extraction: free-text turn → typed field values.

One AI call tries every still-missing user field at once. If that call
fails outright, a regex pass covers names, email, phone and whatever the
currently prompted field looks like. Either way every value is re-checked
locally by ``clean_value`` and dropped (never coerced) if it doesn't fit its
declared type, so a hallucinated or partial value can't reach the answers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable

from intake.ai.client import CompletionClient
from intake.ai.fallback import attempt_with_fallback
from intake.categories.schema import CategoryConfig, FieldDefinition, FieldType
from intake.errors import CompletionError
from intake.geocoding import Geocoder
from intake.schema_engine import DEFAULT_TEXT_MAX_LENGTH, INTEGER_RE, parse_date

log = logging.getLogger("intake.extraction")

CONFIDENCE_LEVELS = ("high", "medium", "low")

NAME_FIELDS = ("first_name", "last_name")

_EMAIL_FIND_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}")
_PHONE_FIND_RE = re.compile(r"(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b")
_ZIP_FIND_RE = re.compile(r"\b\d{5}(?:-\d{4})?\b")
_DATE_FIND_RE = re.compile(r"\b(?:\d{1,2}/\d{1,2}/\d{4}|\d{4}-\d{1,2}-\d{1,2}|\d{1,2}-\d{1,2}-\d{4})\b")
_INT_FIND_RE = re.compile(r"\b\d{1,3}(?:,\d{3})+\b|\b\d+\b")
_NAME_INTRO_RE = re.compile(
    r"\bmy name(?: is|'s)\s+([A-Za-z][A-Za-z'\-]*)(?:\s+([A-Za-z][A-Za-z'\-]*))?",
    re.IGNORECASE,
)
_SELF_INTRO_RE = re.compile(
    r"^\s*(?:i am|i'm|im|this is|it's|it is)\s+([A-Za-z][A-Za-z'\-]*)(?:\s+([A-Za-z][A-Za-z'\-]*))?\s*[.!]?\s*$",
    re.IGNORECASE,
)
_BARE_NAME_RE = re.compile(r"^\s*([A-Za-z][A-Za-z'\-]*(?:\s+[A-Za-z][A-Za-z'\-]*){0,2})\s*[.!]?\s*$")
_RELATIVE_DAYS_RE = re.compile(r"\b(\d+|a|one|two|three|four|five|six|seven)\s+(day|week)s?\s+ago\b", re.IGNORECASE)

_AFFIRMATIVE_WORDS = {"yes", "yeah", "yep", "yup", "sure", "correct", "true", "affirmative", "y"}
_NEGATIVE_WORDS = {"no", "nope", "nah", "not", "negative", "false", "n", "never"}
_WORD_NUMBERS = {"a": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5, "six": 6, "seven": 7}

US_STATES = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA", "kansas": "KS",
    "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK",
    "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI", "south carolina": "SC",
    "south dakota": "SD", "tennessee": "TN", "texas": "TX", "utah": "UT",
    "vermont": "VT", "virginia": "VA", "washington": "WA", "west virginia": "WV",
    "wisconsin": "WI", "wyoming": "WY",
}
_STATE_CODES = set(US_STATES.values())


@dataclass
class ExtractionResult:
    fields: dict[str, Any] = field(default_factory=dict)
    confidence: str = "low"
    method: str = "none"                          # "ai", "patterns" or "none"
    enriched: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.fields


# ── Local re-validation ──────────────────────────────────────────


def clean_value(definition: FieldDefinition, value: Any) -> Any | None:
    """Return the value in canonical form if it fits its type, else None."""
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    if not text:
        return None

    kind = definition.type
    if kind == FieldType.EMAIL:
        local, _, domain = text.partition("@")
        if local and "." in domain and not domain.startswith(".") and " " not in text:
            return text.lower()
        return None
    if kind == FieldType.PHONE:
        digits = re.sub(r"\D", "", text)
        if len(digits) == 11 and digits.startswith("1"):
            digits = digits[1:]
        return digits if len(digits) >= 10 else None
    if kind == FieldType.ZIP:
        digits = re.sub(r"\D", "", text)
        return digits if len(digits) in (5, 9) else None
    if kind == FieldType.STATE:
        if len(text) == 2 and text.isalpha():
            return text.upper()
        return US_STATES.get(text.lower())
    if kind == FieldType.ENUM:
        for allowed in definition.allowed_values:
            if allowed.lower() == text.lower():
                return allowed
        return None
    if kind == FieldType.DATE:
        return text if parse_date(text) is not None else None
    if kind == FieldType.NUMERIC:
        if isinstance(value, bool):
            return None
        if isinstance(value, float):
            return int(value) if value.is_integer() else None
        compact = text.replace(",", "")
        return int(compact) if INTEGER_RE.match(compact) else None

    # text
    limit = definition.max_length or DEFAULT_TEXT_MAX_LENGTH
    return text if len(text) <= limit else None


def clean_fields(
    raw: dict[str, Any], targets: dict[str, FieldDefinition],
) -> dict[str, Any]:
    """Keep only target fields whose values survive ``clean_value``."""
    cleaned: dict[str, Any] = {}
    for name, value in raw.items():
        definition = targets.get(name)
        if definition is None:
            log.debug("Ignoring extracted field outside the requested set: %s", name)
            continue
        result = clean_value(definition, value)
        if result is None:
            log.info("Discarded invalid %s value for %s", definition.type.value, name)
            continue
        cleaned[name] = result
    return cleaned


# ── Deterministic fallback ───────────────────────────────────────


def resolve_relative_date(text: str, today: date) -> date | None:
    """'today', 'yesterday', 'N days/weeks ago', 'last week/month' → a date."""
    lowered = text.lower()
    if re.search(r"\btoday\b", lowered):
        return today
    if re.search(r"\byesterday\b", lowered):
        return today - timedelta(days=1)
    match = _RELATIVE_DAYS_RE.search(lowered)
    if match:
        count_text = match.group(1)
        count = int(count_text) if count_text.isdigit() else _WORD_NUMBERS[count_text]
        days = count * (7 if match.group(2) == "week" else 1)
        return today - timedelta(days=days)
    if re.search(r"\blast week\b", lowered):
        return today - timedelta(days=7)
    if re.search(r"\blast month\b", lowered):
        return today - timedelta(days=30)
    return None


def _title(word: str) -> str:
    return word[:1].upper() + word[1:] if word.islower() else word


def _match_enum(message: str, definition: FieldDefinition) -> str | None:
    lowered = message.lower()
    words = re.findall(r"[a-z']+", lowered)
    for allowed in definition.allowed_values:
        if re.search(r"\b" + re.escape(allowed.lower()) + r"\b", lowered):
            # "no" inside a yes/no enum is handled by the word scan below
            if allowed.lower() not in ("yes", "no"):
                return allowed
    allowed_lower = {v.lower(): v for v in definition.allowed_values}
    if "yes" in allowed_lower and "no" in allowed_lower:
        for word in words:
            if word in _AFFIRMATIVE_WORDS:
                return allowed_lower["yes"]
            if word in _NEGATIVE_WORDS or word.endswith("n't"):
                return allowed_lower["no"]
    return None


def _extract_names(
    message: str, targets: dict[str, FieldDefinition], current_field: str | None,
) -> dict[str, str]:
    names: dict[str, str] = {}
    first = last = None

    match = _NAME_INTRO_RE.search(message)
    if match is None and current_field in NAME_FIELDS:
        match = _SELF_INTRO_RE.match(message)
    if match:
        first, last = match.group(1), match.group(2)
    elif current_field in NAME_FIELDS:
        bare = _BARE_NAME_RE.match(message)
        if bare:
            words = bare.group(1).split()
            if current_field == "last_name":
                last = words[-1]
            else:
                first = words[0]
                last = words[-1] if len(words) > 1 else None

    if first and "first_name" in targets:
        names["first_name"] = _title(first)
    if last and "last_name" in targets:
        names["last_name"] = _title(last)
    return names


def _extract_for_current(
    message: str, name: str, definition: FieldDefinition, today: date,
) -> Any | None:
    """Type-specific pattern for the field the user was just asked about."""
    kind = definition.type
    if kind == FieldType.ZIP:
        match = _ZIP_FIND_RE.search(message)
        return match.group(0) if match else None
    if kind == FieldType.DATE:
        match = _DATE_FIND_RE.search(message)
        if match:
            return match.group(0)
        relative = resolve_relative_date(message, today)
        return relative.strftime("%m/%d/%Y") if relative else None
    if kind == FieldType.ENUM:
        return _match_enum(message, definition)
    if kind == FieldType.STATE:
        stripped = message.strip().strip(".!")
        if len(stripped) == 2 and stripped.upper() in _STATE_CODES:
            return stripped.upper()
        lowered = message.lower()
        for state_name in sorted(US_STATES, key=len, reverse=True):
            if re.search(r"\b" + re.escape(state_name) + r"\b", lowered):
                return US_STATES[state_name]
        return None
    if kind == FieldType.NUMERIC:
        match = _INT_FIND_RE.search(message)
        return match.group(0) if match else None
    if kind == FieldType.TEXT and name not in NAME_FIELDS:
        text = message.strip()
        return text if len(text) >= 2 else None
    return None


def extract_with_patterns(
    message: str,
    targets: dict[str, FieldDefinition],
    current_field: str | None = None,
    today: date | None = None,
) -> ExtractionResult:
    """Regex-only extraction used when the AI strategy is unavailable."""
    today = today or date.today()
    raw: dict[str, Any] = {}

    raw.update(_extract_names(message, targets, current_field))

    for name, definition in targets.items():
        if definition.type == FieldType.EMAIL:
            match = _EMAIL_FIND_RE.search(message)
            if match:
                raw[name] = match.group(0)
        elif definition.type == FieldType.PHONE:
            match = _PHONE_FIND_RE.search(message)
            if match:
                raw[name] = match.group(0)

    if current_field in targets and current_field not in raw:
        value = _extract_for_current(message, current_field, targets[current_field], today)
        if value is not None:
            raw[current_field] = value

    fields = clean_fields(raw, targets)
    return ExtractionResult(
        fields=fields,
        confidence="medium" if fields else "low",
        method="patterns",
    )


# ── Extractor ────────────────────────────────────────────────────

EXTRACTION_SYSTEM_PROMPT = (
    "You are an expert at extracting structured data from conversational text "
    "in a legal intake chat. Always respond with valid JSON only."
)


def build_extraction_prompt(
    message: str,
    targets: dict[str, FieldDefinition],
    context: dict[str, Any],
    category: CategoryConfig,
    current_field: str | None,
    today: date,
) -> str:
    lines = []
    for name, fd in targets.items():
        desc = f"- {name} (type: {fd.type.value}, required: {str(fd.required).lower()})"
        if fd.description:
            desc += f" - {fd.description}"
        if fd.allowed_values:
            desc += f" - allowed values: {', '.join(fd.allowed_values)}"
        if fd.format:
            desc += f" - format: {fd.format}"
        lines.append(desc)
    collected = ", ".join(sorted(context)) or "nothing yet"

    return (
        "Extract structured data from a legal intake conversation.\n\n"
        f"Practice area: {category.name}\n"
        f"Currently asking for: {current_field or 'any of the fields below'}\n"
        f"Already collected: {collected}\n"
        f"Today's date: {today.strftime('%m/%d/%Y')}\n\n"
        "Fields you may extract (no others):\n"
        + "\n".join(lines)
        + "\n\nRules:\n"
        "1. Only extract a field if the user's message clearly states it. "
        "Never guess or invent a value; omit anything not evidenced.\n"
        "2. Names: \"John Smith\" → first_name=\"John\", last_name=\"Smith\".\n"
        "3. Dates: MM/DD/YYYY. Convert relative dates (\"yesterday\", "
        "\"2 days ago\") using today's date.\n"
        "4. Phone: digits only.\n"
        "5. Enum fields: use one of the allowed values exactly.\n\n"
        "Respond with JSON only:\n"
        '{"extractedFields": {"field_name": "value"}, "confidence": "high|medium|low"}\n\n'
        f"User message: {json.dumps(message)}"
    )


class FieldExtractor:
    """AI-first field extraction with regex fallback and ZIP enrichment."""

    def __init__(
        self,
        client: CompletionClient | None = None,
        geocoder: Geocoder | None = None,
        geocode_timeout: float = 5.0,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._client = client
        self._geocoder = geocoder
        self._geocode_timeout = geocode_timeout
        self._today = today

    async def extract(
        self,
        message: str,
        fields_to_fill: list[str],
        context: dict[str, Any],
        category: CategoryConfig,
        current_field: str | None = None,
    ) -> ExtractionResult:
        """Extract any of ``fields_to_fill`` (user-provided only) from one message."""
        targets = {
            name: category.required_fields[name]
            for name in fields_to_fill
            if name in category.required_fields and category.required_fields[name].is_user_field
        }
        if not targets or not message.strip():
            return ExtractionResult()

        today = self._today()
        primary = None
        if self._client is not None:
            async def primary() -> ExtractionResult:
                return await self._extract_with_ai(
                    message, targets, context, category, current_field, today,
                )

        result, _ = await attempt_with_fallback(
            primary,
            lambda: extract_with_patterns(message, targets, current_field, today),
            label="field extraction",
        )
        await self._enrich_location(result, targets, context)
        if result.fields:
            log.info(
                "Extracted %s via %s (confidence %s)",
                sorted(result.fields), result.method, result.confidence,
            )
        return result

    async def _extract_with_ai(
        self,
        message: str,
        targets: dict[str, FieldDefinition],
        context: dict[str, Any],
        category: CategoryConfig,
        current_field: str | None,
        today: date,
    ) -> ExtractionResult:
        prompt = build_extraction_prompt(message, targets, context, category, current_field, today)
        reply = await self._client.complete_json(EXTRACTION_SYSTEM_PROMPT, prompt)

        raw = reply.get("extractedFields")
        if not isinstance(raw, dict):
            raise CompletionError("Extraction reply has no extractedFields object")
        confidence = str(reply.get("confidence", "medium")).lower()
        if confidence not in CONFIDENCE_LEVELS:
            confidence = "medium"
        return ExtractionResult(
            fields=clean_fields(raw, targets), confidence=confidence, method="ai",
        )

    async def _enrich_location(
        self,
        result: ExtractionResult,
        targets: dict[str, FieldDefinition],
        context: dict[str, Any],
    ) -> None:
        """Fill city/state from a freshly extracted ZIP code, best-effort."""
        if self._geocoder is None:
            return
        zip_value = next(
            (result.fields[n] for n, fd in targets.items()
             if fd.type == FieldType.ZIP and n in result.fields),
            None,
        )
        if not zip_value:
            return
        needs_city = "city" in targets and "city" not in result.fields and not context.get("city")
        needs_state = "state" in targets and "state" not in result.fields and not context.get("state")
        if not (needs_city or needs_state):
            return

        try:
            location = await asyncio.wait_for(
                self._geocoder.lookup_zip(str(zip_value)), timeout=self._geocode_timeout,
            )
        except asyncio.TimeoutError:
            log.warning("Geocoding timed out; city/state will be asked instead")
            return
        if location is None:
            return

        if needs_city:
            city = clean_value(targets["city"], location.city)
            if city:
                result.fields["city"] = city
                result.enriched.append("city")
        if needs_state:
            state = clean_value(targets["state"], location.state)
            if state:
                result.fields["state"] = state
                result.enriched.append("state")
        if result.enriched:
            log.info("Auto-populated %s from ZIP code", ", ".join(result.enriched))
