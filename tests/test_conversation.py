"""Tests for the conversation engine: ordering, stages and exactly-once submission."""

import asyncio
import json
import os
import sys

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from fakes import PI_ANSWERS, FakeGeocoder, FakeMarketplace, build_test_engine
from intake.conversation import redact_pii
from intake.errors import ConfigurationError
from intake.geocoding import ZipLocation
from intake.marketplace.base import MarketplaceResponse
from intake.models.session import ClientMeta, Stage
from intake.prompts import (
    ALREADY_SUBMITTED,
    CLARIFYING_PROMPT,
    DECLINED,
    IN_PROGRESS,
    RETRY_OFFER,
    SUBMIT_FAILED,
    SUBMIT_SUCCESS,
    is_affirmative,
    is_negative,
)
from intake.submission import TrackingIds

CLIENT = ClientMeta(ip_address="203.0.113.7", user_agent="pytest-browser")

FAILURE = MarketplaceResponse(
    success=False, status="ERROR", code=200, message="Campaign paused", raw={"status": "ERROR"},
)


async def _ready(engine, answers=PI_ANSWERS):
    """A personal-injury session with every answer collected."""
    session = await engine.store.create(CLIENT)
    await engine.store.update(session.id, {
        "main_category": "personal_injury_law",
        "sub_category": "car accident",
        "answers": dict(answers),
    })
    await engine.store.transition_stage(session.id, Stage.COLLECTING, Stage.READY_TO_SUBMIT)
    return session.id


def _widget_category(tmp_path, flow, field_order):
    """A minimal category whose definition order differs from its flow order."""
    definitions = {
        "first_name": {"type": "text", "required": True},
        "email": {"type": "email", "required": True},
        "zip_code": {"type": "postal_code", "required": True},
    }
    category = {
        "key": "widget_law",
        "name": "Widget Law",
        "lead_prosper_config": {"lp_campaign_id": 1, "lp_supplier_id": 2, "lp_key": "k"},
        "chat_flow": [{"order": i, "field": f} for i, f in enumerate(flow, start=1)],
        "field_questions": {"email": "{name_prefix}what's your email?"},
        "required_fields": {name: definitions[name] for name in field_order},
        "ai_detection_keywords": ["widget"],
    }
    path = tmp_path / "widget.jsonl"
    path.write_text(json.dumps(category) + "\n")
    return path


def test_redact_pii():
    assert redact_pii("john.smith@example.com") == "joh***om"
    assert redact_pii("abc") == "***"


class TestConsentWords:

    @pytest.mark.parametrize("message", [
        "yes", "Yes, go ahead", "yes please", "Sure!", "go ahead and submit it",
        "ok", "sounds good to me", "oh yes",
    ])
    def test_consent(self, message):
        assert is_affirmative(message)

    @pytest.mark.parametrize("message", [
        "Please do not submit my information", "I'm not ok with that",
        "yes, but wait", "no thanks", "I'd rather not", "don't send it",
    ])
    def test_refusal(self, message):
        assert is_negative(message)
        assert not is_affirmative(message)

    @pytest.mark.parametrize("message", [
        "Can you please change my email first", "please", "submit", "send",
        "what happens next?", "",
    ])
    def test_neither(self, message):
        assert not is_affirmative(message)


# ── Collecting ─────────────────────────────────────────────────────

class TestCollecting:

    async def test_unclear_first_message(self):
        engine = build_test_engine()
        result = await engine.handle_message(None, "hello", CLIENT)
        assert result.reply == CLARIFYING_PROMPT
        assert result.stage == Stage.COLLECTING
        session = await engine.store.get(result.session_id)
        assert session.main_category is None

    async def test_detects_category_and_asks_first_field(self):
        engine = build_test_engine()
        result = await engine.handle_message(None, "I was in a car accident and got hurt", CLIENT)
        session = await engine.store.get(result.session_id)
        assert session.main_category == "personal_injury_law"
        assert session.sub_category == "car accident"
        assert session.detection_confidence == "medium"
        assert result.reply.endswith("To get started, what is your first name?")
        assert session.asked == ["first_name"]

    async def test_flow_order_determinism(self, tmp_path):
        path = _widget_category(
            tmp_path, ["first_name", "email", "zip_code"], ["zip_code", "email", "first_name"],
        )
        for _ in range(2):
            engine = build_test_engine(path=path)
            first = await engine.handle_message(None, "I have a widget problem", CLIENT)
            assert first.reply == "What is your first name?"
            second = await engine.handle_message(first.session_id, "Ann", CLIENT)
            assert second.reply == "Ann, what's your email?"
            third = await engine.handle_message(first.session_id, "ann@example.com", CLIENT)
            assert third.reply == "Ann, what is your zip code?"

    async def test_definition_order_when_flow_is_silent(self, tmp_path):
        path = _widget_category(tmp_path, ["first_name"], ["zip_code", "email", "first_name"])
        engine = build_test_engine(path=path)
        first = await engine.handle_message(None, "widget trouble", CLIENT)
        second = await engine.handle_message(first.session_id, "Ann", CLIENT)
        assert second.reply == "Ann, what is your zip code?"

    async def test_retry_hint_when_answer_unusable(self):
        engine = build_test_engine()
        first = await engine.handle_message(None, "I was in a car accident", CLIENT)
        await engine.handle_message(first.session_id, "John Smith", CLIENT)
        result = await engine.handle_message(first.session_id, "I don't remember", CLIENT)
        assert result.reply.startswith("Please give the date as MM/DD/YYYY.")
        assert "when did the incident happen" in result.reply

    async def test_opportunistic_extraction(self):
        engine = build_test_engine()
        first = await engine.handle_message(None, "I was in a car accident", CLIENT)
        result = await engine.handle_message(
            first.session_id, "My name is John Smith, email john@example.com", CLIENT,
        )
        session = await engine.store.get(first.session_id)
        assert session.answers == {
            "first_name": "John", "last_name": "Smith", "email": "john@example.com",
        }
        assert "when did the incident happen" in result.reply

    async def test_partial_phone_not_accepted(self):
        engine = build_test_engine()
        session_id = await _ready(engine, {k: v for k, v in PI_ANSWERS.items() if k != "phone"})
        await engine.store.update(session_id, {"stage": Stage.COLLECTING})
        await engine.store.mark_asked(session_id, "phone")
        result = await engine.handle_message(session_id, "call me at 555", CLIENT)
        session = await engine.store.get(session_id)
        assert "phone" not in session.answers
        assert result.stage == Stage.COLLECTING
        assert result.reply.startswith("Please share a 10-digit phone number.")

    async def test_zip_fills_city_and_state(self):
        engine = build_test_engine(geocoder=FakeGeocoder(ZipLocation("Palo Alto", "CA")))
        answers = {k: PI_ANSWERS[k] for k in (
            "first_name", "last_name", "date_of_incident", "bodily_injury",
            "at_fault", "has_attorney", "describe",
        )}
        session_id = await _ready(engine, answers)
        await engine.store.update(session_id, {"stage": Stage.COLLECTING})
        await engine.store.mark_asked(session_id, "zip_code")
        result = await engine.handle_message(session_id, "94301", CLIENT)
        session = await engine.store.get(session_id)
        assert session.answers["city"] == "Palo Alto"
        assert session.answers["state"] == "CA"
        assert result.reply == "What is the best email address to reach you?"

    async def test_transcript_records_both_sides(self):
        engine = build_test_engine()
        result = await engine.handle_message(None, "I was in a car accident", CLIENT)
        session = await engine.store.get(result.session_id)
        assert [t.role for t in session.transcript] == ["user", "assistant"]
        assert session.transcript[1].text == result.reply


# ── Full conversation ──────────────────────────────────────────────

class TestEndToEnd:

    async def test_personal_injury_to_submitted(self):
        marketplace = FakeMarketplace()
        engine = build_test_engine(marketplace=marketplace)
        tracking = TrackingIds(jornaya_leadid="JL-42")

        script = [
            ("I was in a car accident and got hurt", "what is your first name?"),
            ("John Smith", "John, when did the incident happen?"),
            ("03/15/2024", "Were you physically injured?"),
            ("yes", "Were you at fault"),
            ("no", "Do you already have an attorney"),
            ("no", "Could you briefly describe what happened?"),
            ("I was rear-ended at a stop light.", "What is your ZIP code?"),
            ("94301", "What city do you live in?"),
            ("Palo Alto", "Which state do you live in?"),
            ("CA", "What is the best email address"),
            ("john.smith@example.com", "John, what is the best phone number"),
            ("(650) 327-1100", "Would you like me to submit your information?"),
        ]
        session_id = None
        for message, expected in script:
            result = await engine.handle_message(session_id, message, CLIENT, tracking)
            session_id = result.session_id
            assert expected in result.reply, (message, result.reply)
        assert result.stage == Stage.READY_TO_SUBMIT
        assert "qualified personal injury attorneys" in result.reply

        done = await engine.handle_message(session_id, "Yes, go ahead", CLIENT, tracking)
        assert done.reply == SUBMIT_SUCCESS
        assert done.complete
        assert done.stage == Stage.SUBMITTED

        session = await engine.store.get(session_id)
        assert session.lead_id == "LP-1001"
        assert session.submission_claimed_at is None

        payload, routing = marketplace.calls[0]
        assert routing.lp_key == "pi4m9x2kq7"
        assert payload["phone"] == "(650) 327-1100"
        assert payload["sub_category"] == "car accident"
        assert payload["main_category"] == "Personal Injury"
        assert payload["ip_address"] == "203.0.113.7"
        assert payload["jornaya_leadid"] == "JL-42"


# ── Ready / failed / submitted ─────────────────────────────────────

class TestSubmissionStages:

    async def test_decline_keeps_ready(self):
        marketplace = FakeMarketplace()
        engine = build_test_engine(marketplace=marketplace)
        session_id = await _ready(engine)
        result = await engine.handle_message(session_id, "no, not yet", CLIENT)
        assert result.reply == DECLINED
        assert result.stage == Stage.READY_TO_SUBMIT
        assert marketplace.calls == []

    async def test_unclear_reply_restates_consent(self):
        engine = build_test_engine()
        session_id = await _ready(engine)
        result = await engine.handle_message(session_id, "what happens next?", CLIENT)
        assert "Would you like me to submit your information?" in result.reply
        assert result.stage == Stage.READY_TO_SUBMIT

    @pytest.mark.parametrize("message,reply", [
        ("Please do not submit my information", DECLINED),
        ("I'm not ok with that", DECLINED),
        ("Can you please change my email first", None),
    ])
    async def test_refusal_or_request_never_submits(self, message, reply):
        marketplace = FakeMarketplace()
        engine = build_test_engine(marketplace=marketplace)
        session_id = await _ready(engine)
        result = await engine.handle_message(session_id, message, CLIENT)
        assert result.stage == Stage.READY_TO_SUBMIT
        assert marketplace.calls == []
        if reply is None:
            assert "Would you like me to submit your information?" in result.reply
        else:
            assert result.reply == reply

    async def test_refusal_does_not_retry_failed_submission(self):
        marketplace = FakeMarketplace(FAILURE)
        engine = build_test_engine(marketplace=marketplace)
        session_id = await _ready(engine)
        await engine.handle_message(session_id, "yes", CLIENT)
        result = await engine.handle_message(session_id, "please don't send it again", CLIENT)
        assert result.reply == RETRY_OFFER
        assert result.stage == Stage.FAILED_SUBMISSION
        assert len(marketplace.calls) == 1

    async def test_failure_then_retry(self):
        marketplace = FakeMarketplace(FAILURE)
        engine = build_test_engine(marketplace=marketplace)
        session_id = await _ready(engine)

        failed = await engine.handle_message(session_id, "yes", CLIENT)
        assert failed.reply == SUBMIT_FAILED
        assert failed.stage == Stage.FAILED_SUBMISSION
        session = await engine.store.get(session_id)
        assert session.submission_message == "Campaign paused"
        assert session.answers["first_name"] == "John"

        offered = await engine.handle_message(session_id, "hmm", CLIENT)
        assert offered.reply == RETRY_OFFER
        assert offered.stage == Stage.FAILED_SUBMISSION

        marketplace.response = FakeMarketplace().response
        retried = await engine.handle_message(session_id, "yes please", CLIENT)
        assert retried.reply == SUBMIT_SUCCESS
        assert retried.stage == Stage.SUBMITTED
        assert len(marketplace.calls) == 2

    async def test_invalid_lead_fails_without_network(self):
        marketplace = FakeMarketplace()
        engine = build_test_engine(marketplace=marketplace)
        session_id = await _ready(engine, dict(PI_ANSWERS, email="nope"))
        result = await engine.handle_message(session_id, "yes", CLIENT)
        assert result.stage == Stage.FAILED_SUBMISSION
        assert marketplace.calls == []

    async def test_submitted_is_terminal(self):
        marketplace = FakeMarketplace()
        engine = build_test_engine(marketplace=marketplace)
        session_id = await _ready(engine)
        await engine.handle_message(session_id, "yes", CLIENT)

        for message in ("yes", "submit again", "no"):
            result = await engine.handle_message(session_id, message, CLIENT)
            assert result.reply == ALREADY_SUBMITTED
            assert result.stage == Stage.SUBMITTED
        assert len(marketplace.calls) == 1

    async def test_concurrent_confirmations_submit_once(self):
        marketplace = FakeMarketplace(delay=0.05)
        engine = build_test_engine(marketplace=marketplace)
        session_id = await _ready(engine)

        results = await asyncio.gather(*(
            engine.handle_message(session_id, "yes", CLIENT) for _ in range(3)
        ))
        assert len(marketplace.calls) == 1
        replies = sorted(r.reply for r in results)
        assert replies.count(SUBMIT_SUCCESS) == 1
        assert all(r in (SUBMIT_SUCCESS, IN_PROGRESS, ALREADY_SUBMITTED) for r in replies)
        session = await engine.store.get(session_id)
        assert session.stage == Stage.SUBMITTED
        assert session.lead_id == "LP-1001"

    async def test_configuration_error_releases_claim(self):
        engine = build_test_engine()
        session_id = await _ready(engine)
        engine.loader.get_category("personal_injury_law").lead_prosper_config = None
        with pytest.raises(ConfigurationError):
            await engine.handle_message(session_id, "yes", CLIENT)
        session = await engine.store.get(session_id)
        assert session.stage == Stage.READY_TO_SUBMIT
        assert session.submission_claimed_at is None


# ── Session identity ───────────────────────────────────────────────

class TestSessionIdentity:

    async def test_unknown_session_starts_new(self):
        engine = build_test_engine()
        result = await engine.handle_message("made-up-id", "I was arrested", CLIENT)
        assert result.session_id != "made-up-id"
        assert (await engine.store.get(result.session_id)).main_category == "criminal_law"

    async def test_reset(self):
        engine = build_test_engine()
        first = await engine.handle_message(None, "I was in a car accident", CLIENT)
        assert await engine.reset(first.session_id) is True
        assert await engine.store.get(first.session_id) is None
        assert await engine.reset(first.session_id) is False

        again = await engine.handle_message(first.session_id, "hello", CLIENT)
        assert again.session_id != first.session_id

    async def test_startup_loads_config(self):
        engine = build_test_engine()
        await engine.startup()
        assert engine.loader.load_count == 1
        await engine.shutdown()
