"""Conversation engine: drives one intake session turn by turn.

Each inbound message is routed by the session's stage:

  COLLECTING         detect the category, extract answers, ask the next question
  READY_TO_SUBMIT    wait for consent, then submit exactly once
  FAILED_SUBMISSION  offer a retry; on "yes" go back to READY and submit
  SUBMITTED          terminal, nothing changes

Handlers never hold a session snapshot across an AI or network call for
writing. Every change goes through the store's atomic operations, so two
concurrent requests for the same session cannot clobber each other.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from intake.categories.loader import CategoryConfigLoader
from intake.categories.schema import CategoryConfig
from intake.detection import DEFAULT_SUBCATEGORY, CategoryDetector
from intake.errors import IntakeError, SessionNotFound
from intake.extraction import FieldExtractor
from intake.models.session import ClientMeta, LeadSession, Stage, TranscriptTurn
from intake.prompts import (
    ALREADY_SUBMITTED,
    CLARIFYING_PROMPT,
    DECLINED,
    IN_PROGRESS,
    RETRY_OFFER,
    SUBMIT_FAILED,
    SUBMIT_SUCCESS,
    completion_prompt,
    field_question,
    is_affirmative,
    is_negative,
)
from intake.schema_engine import SchemaRegistry
from intake.store.base import SessionStore
from intake.submission import LeadSubmissionPipeline, RequestContext, TrackingIds

log = logging.getLogger("intake.conversation")


def redact_pii(value: str) -> str:
    """Mask PII for logging: show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


@dataclass
class TurnResult:
    reply: str
    session_id: str
    complete: bool
    stage: Stage


class ConversationEngine:
    """Stateless turn handler over an injected session store."""

    def __init__(
        self,
        store: SessionStore,
        loader: CategoryConfigLoader,
        detector: CategoryDetector,
        extractor: FieldExtractor,
        schemas: SchemaRegistry,
        pipeline: LeadSubmissionPipeline,
        claim_timeout: float = 120.0,
    ) -> None:
        self.store = store
        self.loader = loader
        self.detector = detector
        self.extractor = extractor
        self.schemas = schemas
        self.pipeline = pipeline
        self._claim_timeout = claim_timeout

    async def startup(self) -> None:
        """Load category config (fails closed) and prepare the store."""
        config = self.loader.load()
        await self.store.initialize()
        log.info("Conversation engine ready (%d categories)", len(config.categories))

    async def shutdown(self) -> None:
        await self.store.close()

    # ── Turn handling ────────────────────────────────────────────

    async def handle_message(
        self,
        session_id: str | None,
        message: str,
        client_meta: ClientMeta | None = None,
        tracking: TrackingIds | None = None,
    ) -> TurnResult:
        session = await self.store.get(session_id) if session_id else None
        if session is None:
            if session_id:
                log.info("Session %s unknown or expired, starting a new one", session_id)
            session = await self.store.create(client_meta)

        log.info(
            "Turn for session %s (stage %s): %s",
            session.id, session.stage.value, redact_pii(message),
        )
        await self.store.append_transcript(session.id, TranscriptTurn(role="user", text=message))

        if session.stage == Stage.COLLECTING:
            reply = await self._handle_collecting(session, message)
        elif session.stage == Stage.READY_TO_SUBMIT:
            reply = await self._handle_ready(session, message, client_meta, tracking)
        elif session.stage == Stage.FAILED_SUBMISSION:
            reply = await self._handle_failed(session, message, client_meta, tracking)
        else:
            reply = ALREADY_SUBMITTED

        await self.store.append_transcript(
            session.id, TranscriptTurn(role="assistant", text=reply),
        )
        latest = await self.store.get(session.id)
        stage = latest.stage if latest is not None else session.stage
        return TurnResult(
            reply=reply,
            session_id=session.id,
            complete=stage == Stage.SUBMITTED,
            stage=stage,
        )

    async def reset(self, session_id: str) -> bool:
        """Forget a conversation: clear its transcript and delete the record."""
        await self.store.clear_transcript(session_id)
        deleted = await self.store.delete(session_id)
        if deleted:
            log.info("Session reset: %s", session_id)
        return deleted

    # ── Stage handlers ───────────────────────────────────────────

    async def _handle_collecting(self, session: LeadSession, message: str) -> str:
        category = self.loader.get_category(session.main_category)
        if session.main_category and category is None:
            log.warning(
                "Session %s category %r is no longer configured, detecting again",
                session.id, session.main_category,
            )

        if category is None:
            detection = await self.detector.detect(message)
            if not detection.detected:
                return CLARIFYING_PROMPT
            category = self.loader.get_category(detection.main_category)
            sub_category = (
                detection.sub_category
                or self.detector.detect_subcategory(message, category)
                or DEFAULT_SUBCATEGORY
            )
            session = _live(await self.store.update(session.id, {
                "main_category": category.key,
                "sub_category": sub_category,
                "detection_confidence": detection.confidence.value,
            }), session.id)

        missing = category.missing_required_user_fields(session.answers)
        awaiting = session.awaiting_field if session.awaiting_field in missing else None

        result = await self.extractor.extract(
            message, missing, session.answers, category, current_field=awaiting,
        )
        accepted = {}
        for name, value in result.fields.items():
            check = self.schemas.validate_field(name, value, category.key)
            if check.valid and check.value is not None:
                accepted[name] = check.value
            else:
                log.info("Session %s: dropped %s (%s)", session.id, name, check.error)
        if accepted:
            session = _live(await self.store.merge_answers(session.id, accepted), session.id)
            log.info("Session %s: collected %s", session.id, sorted(accepted))

        missing = category.missing_required_user_fields(session.answers)
        if not missing:
            await self.store.transition_stage(
                session.id, Stage.COLLECTING, Stage.READY_TO_SUBMIT,
            )
            return completion_prompt(category, session.answers)

        next_field = self._next_field(category, missing)
        question = field_question(category, next_field, session.answers)
        await self.store.mark_asked(session.id, next_field)

        if awaiting == next_field and next_field not in accepted:
            hint = self.schemas.schema_for(category.key).rules[next_field].hint
            return f"{hint} {question}"
        return question

    async def _handle_ready(
        self,
        session: LeadSession,
        message: str,
        client_meta: ClientMeta | None,
        tracking: TrackingIds | None,
    ) -> str:
        if is_affirmative(message):
            return await self._submit(session.id, client_meta, tracking)
        if is_negative(message):
            log.info("Session %s: user declined submission", session.id)
            return DECLINED
        category = self.loader.get_category(session.main_category)
        if category is None:
            return DECLINED
        return completion_prompt(category, session.answers)

    async def _handle_failed(
        self,
        session: LeadSession,
        message: str,
        client_meta: ClientMeta | None,
        tracking: TrackingIds | None,
    ) -> str:
        if not is_affirmative(message):
            return RETRY_OFFER
        await self.store.transition_stage(
            session.id, Stage.FAILED_SUBMISSION, Stage.READY_TO_SUBMIT,
        )
        return await self._submit(session.id, client_meta, tracking)

    # ── Submission ───────────────────────────────────────────────

    async def _submit(
        self,
        session_id: str,
        client_meta: ClientMeta | None,
        tracking: TrackingIds | None,
    ) -> str:
        claimed = await self.store.claim_submission(session_id, stale_after=self._claim_timeout)
        if claimed is None:
            current = await self.store.get(session_id)
            if current is not None and current.stage == Stage.SUBMITTED:
                return ALREADY_SUBMITTED
            log.info("Session %s: submission already in flight", session_id)
            return IN_PROGRESS

        request = RequestContext(**client_meta.model_dump()) if client_meta else None
        try:
            outcome = await self.pipeline.submit(claimed, tracking, request)
        except IntakeError:
            await self.store.release_claim(session_id)
            raise

        if outcome.success:
            await self.store.transition_stage(
                session_id, Stage.READY_TO_SUBMIT, Stage.SUBMITTED,
                {"submission_claimed_at": None},
            )
            return SUBMIT_SUCCESS

        if outcome.field_errors:
            log.warning(
                "Session %s: lead failed validation on %s",
                session_id, sorted(outcome.field_errors),
            )
        await self.store.transition_stage(
            session_id, Stage.READY_TO_SUBMIT, Stage.FAILED_SUBMISSION,
            {"submission_claimed_at": None},
        )
        return SUBMIT_FAILED

    @staticmethod
    def _next_field(category: CategoryConfig, missing: list[str]) -> str:
        """First chat-flow field still missing, else first missing by definition order."""
        for step in category.ordered_flow():
            if step.field in missing:
                return step.field
        return missing[0]


def _live(session: Optional[LeadSession], session_id: str) -> LeadSession:
    if session is None:
        raise SessionNotFound(session_id)
    return session
