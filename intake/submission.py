"""Lead submission pipeline: assemble, normalize, validate, submit, reconcile.

The pipeline never retries on its own. A failed attempt is recorded on the
session and reported back; the conversation engine moves the session to
FAILED_SUBMISSION and only a user-confirmed retry sends again.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from intake.categories.loader import CategoryConfigLoader
from intake.categories.schema import CategoryConfig, FieldDefinition, FieldSource, FieldType
from intake.detection import DEFAULT_SUBCATEGORY
from intake.errors import ConfigurationError, SubmissionError
from intake.marketplace.base import MarketplaceClient, MarketplaceResponse
from intake.models.session import LeadSession, Stage
from intake.schema_engine import INTEGER_RE, SchemaRegistry, parse_date
from intake.store.base import SessionStore

log = logging.getLogger("intake.submission")


@dataclass
class TrackingIds:
    """Opaque consent-proof identifiers passed through from the client."""

    jornaya_leadid: Optional[str] = None
    trustedform_cert_url: Optional[str] = None
    extra: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, str]:
        values = dict(self.extra)
        if self.jornaya_leadid:
            values["jornaya_leadid"] = self.jornaya_leadid
        if self.trustedform_cert_url:
            values["trustedform_cert_url"] = self.trustedform_cert_url
        return values


@dataclass
class RequestContext:
    """Server-derived values for the request that confirmed submission."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    landing_page_url: Optional[str] = None


@dataclass
class SubmissionOutcome:
    success: bool
    lead_id: Optional[str] = None
    error: Optional[str] = None
    field_errors: dict[str, str] = field(default_factory=dict)


# ── Normalization ────────────────────────────────────────────────

DEFAULT_PHONE_FORMAT = "(XXX) XXX-XXXX"
PHONE_FORMATS = {
    "(XXX) XXX-XXXX": "({0}) {1}-{2}",
    "XXXXXXXXXX": "{0}{1}{2}",
    "XXX-XXX-XXXX": "{0}-{1}-{2}",
}

DEFAULT_DATE_FORMAT = "MM/DD/YYYY"
DATE_OUTPUT_FORMATS = {
    "MM/DD/YYYY": "%m/%d/%Y",
    "YYYY-MM-DD": "%Y-%m-%d",
    "MM-DD-YYYY": "%m-%d-%Y",
}


def format_phone(value: Any, fmt: str | None = None) -> Any:
    """Reformat a 10-digit US number to the marketplace pattern."""
    digits = re.sub(r"\D", "", str(value))
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) != 10:
        return value
    template = PHONE_FORMATS.get(fmt or DEFAULT_PHONE_FORMAT, PHONE_FORMATS[DEFAULT_PHONE_FORMAT])
    return template.format(digits[:3], digits[3:6], digits[6:])


def format_date(value: Any, fmt: str | None = None) -> Any:
    """Reformat through a real calendar date; unparseable values pass through."""
    parsed = parse_date(value)
    if parsed is None:
        return value
    pattern = DATE_OUTPUT_FORMATS.get(fmt or DEFAULT_DATE_FORMAT, DATE_OUTPUT_FORMATS[DEFAULT_DATE_FORMAT])
    return parsed.strftime(pattern)


def format_enum(value: Any, allowed_values: list[str]) -> Any:
    text = str(value).strip()
    for allowed in allowed_values:
        if allowed.lower() == text.lower():
            return allowed
    return value


def format_zip(value: Any) -> Any:
    digits = re.sub(r"\D", "", str(value))
    if len(digits) == 9:
        return f"{digits[:5]}-{digits[5:]}"
    if len(digits) == 5:
        return digits
    return value


def normalize_value(definition: FieldDefinition, value: Any) -> Any:
    """Bring one value to its marketplace encoding. Idempotent."""
    if value is None:
        return None
    kind = definition.type
    if kind == FieldType.PHONE:
        return format_phone(value, definition.format)
    if kind == FieldType.DATE:
        return format_date(value, definition.format)
    if kind == FieldType.ENUM:
        return format_enum(value, definition.allowed_values)
    if kind == FieldType.ZIP:
        return format_zip(value)
    if kind == FieldType.STATE:
        text = str(value).strip()
        return text.upper() if len(text) == 2 else value
    if kind == FieldType.NUMERIC:
        text = str(value).strip().replace(",", "")
        return int(text) if not isinstance(value, bool) and INTEGER_RE.match(text) else value
    if isinstance(value, str):
        return value.strip()
    return value


def normalize_payload(payload: dict[str, Any], category: CategoryConfig) -> dict[str, Any]:
    normalized = dict(payload)
    for name, definition in category.required_fields.items():
        if name in normalized:
            normalized[name] = normalize_value(definition, normalized[name])
    return normalized


def build_payload(
    session: LeadSession,
    category: CategoryConfig,
    tracking: TrackingIds,
    request: RequestContext | None,
    default_tcpa_text: str = "",
) -> dict[str, Any]:
    """Union of user answers, config values, server values and tracking ids."""
    request = request or RequestContext()
    server_values = {
        "ip_address": request.ip_address or session.client.ip_address,
        "user_agent": request.user_agent or session.client.user_agent,
        "landing_page_url": request.landing_page_url or session.client.landing_page_url,
        "sub_category": session.sub_category or DEFAULT_SUBCATEGORY,
        "main_category": category.name,
    }
    tracking_values = tracking.as_dict()

    payload: dict[str, Any] = {}
    for name, definition in category.required_fields.items():
        source = definition.source
        if source == FieldSource.USER:
            value = session.answers.get(name)
        elif source == FieldSource.CONFIG:
            value = definition.value
        elif source == FieldSource.SERVER:
            value = server_values.get(name)
        elif source == FieldSource.TRACKING:
            value = tracking_values.get(name)
        else:
            value = definition.value or default_tcpa_text
        if value is not None and value != "":
            payload[name] = value
    return payload


# ── Pipeline ─────────────────────────────────────────────────────


class LeadSubmissionPipeline:
    """Turns a READY_TO_SUBMIT session into one marketplace submission."""

    def __init__(
        self,
        store: SessionStore,
        loader: CategoryConfigLoader,
        schemas: SchemaRegistry,
        marketplace: MarketplaceClient,
        default_tcpa_text: str = "",
        timeout: float = 15.0,
    ) -> None:
        self._store = store
        self._loader = loader
        self._schemas = schemas
        self._marketplace = marketplace
        self._default_tcpa_text = default_tcpa_text
        self._timeout = timeout

    async def submit(
        self,
        session: LeadSession,
        tracking: TrackingIds | None = None,
        request: RequestContext | None = None,
    ) -> SubmissionOutcome:
        if session.stage == Stage.SUBMITTED or session.lead_id:
            raise SubmissionError(f"Session {session.id} was already submitted")

        category = self._loader.get_category(session.main_category)
        if category is None:
            raise ConfigurationError(
                f"Session {session.id} has no configured category ({session.main_category!r})"
            )
        routing = category.lead_prosper_config
        if routing is None:
            raise ConfigurationError(f"Category {category.key} has no marketplace routing")

        payload = build_payload(
            session, category, tracking or TrackingIds(), request, self._default_tcpa_text,
        )
        payload = normalize_payload(payload, category)

        report = self._schemas.validate_submission(payload, category.key)
        if not report.valid:
            log.warning(
                "Lead for session %s failed validation: %s", session.id, sorted(report.errors),
            )
            await self._record(session.id, MarketplaceResponse(
                success=False,
                status="INVALID",
                message="; ".join(f"{k}: {v}" for k, v in sorted(report.errors.items())),
                raw={"errors": report.errors},
            ))
            return SubmissionOutcome(
                False, error="Lead failed validation", field_errors=report.errors,
            )

        try:
            response = await asyncio.wait_for(
                self._marketplace.submit(report.data, routing), timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            log.error("Marketplace submission for session %s timed out", session.id)
            response = MarketplaceResponse(
                success=False, status="TRANSPORT_ERROR",
                message=f"Timed out after {self._timeout}s",
            )

        await self._record(session.id, response)
        if response.success:
            log.info("Session %s submitted as lead %s", session.id, response.lead_id)
            return SubmissionOutcome(True, lead_id=response.lead_id)

        log.warning(
            "Submission for session %s failed: %s %s",
            session.id, response.status, response.message,
        )
        return SubmissionOutcome(False, error=response.message or response.status)

    async def _record(self, session_id: str, response: MarketplaceResponse) -> None:
        """Persist the marketplace outcome onto the session for operators."""
        changes: dict[str, Any] = {
            "submission_status": response.status,
            "submission_code": response.code,
            "submission_message": response.message,
            "submission_response": response.raw,
        }
        if response.success:
            changes["lead_id"] = response.lead_id
            changes["submitted_at"] = time.time()
        if await self._store.update(session_id, changes) is None:
            log.error(
                "Session %s vanished before the submission result (%s) could be stored",
                session_id, response.status,
            )
