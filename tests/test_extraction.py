"""Tests for field extraction, local re-validation and ZIP enrichment."""

import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(__file__))
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest

from fakes import FakeCompletionClient, FakeGeocoder
from intake.categories.schema import FieldDefinition
from intake.errors import CompletionError
from intake.extraction import (
    FieldExtractor,
    clean_value,
    extract_with_patterns,
    resolve_relative_date,
)
from intake.geocoding import GoogleGeocoder, ZipLocation

TODAY = date(2024, 6, 10)


def _extractor(*replies, geocoder=None):
    client = FakeCompletionClient(*replies) if replies else None
    return FieldExtractor(client, geocoder, geocode_timeout=0.1, today=lambda: TODAY)


class TestCleanValue:

    def test_email_lowercased(self):
        assert clean_value(FieldDefinition(type="email"), "John@Example.COM") == "john@example.com"

    def test_email_rejected(self):
        assert clean_value(FieldDefinition(type="email"), "john at example") is None

    def test_phone_country_code(self):
        assert clean_value(FieldDefinition(type="phone"), "+1 (650) 327-1100") == "6503271100"

    def test_partial_phone_dropped(self):
        assert clean_value(FieldDefinition(type="phone"), "555") is None

    def test_state_name(self):
        assert clean_value(FieldDefinition(type="state"), "california") == "CA"

    def test_enum_canonical(self):
        fd = FieldDefinition(type="enum", allowed_values=["Yes", "No"])
        assert clean_value(fd, "no") == "No"
        assert clean_value(fd, "maybe") is None

    def test_date_must_parse(self):
        assert clean_value(FieldDefinition(type="date"), "03/15/2024") == "03/15/2024"
        assert clean_value(FieldDefinition(type="date"), "last spring") is None

    def test_text_limit(self):
        assert clean_value(FieldDefinition(type="text", max_length=3), "abcd") is None


class TestPatterns:

    def test_call_me_at_555_never_fills_phone(self, pi_category):
        result = extract_with_patterns(
            "call me at 555", pi_category.user_fields(), current_field="phone", today=TODAY,
        )
        assert "phone" not in result.fields

    def test_full_name_splits(self, pi_category):
        result = extract_with_patterns(
            "John Smith", pi_category.user_fields(), current_field="first_name",
        )
        assert result.fields == {"first_name": "John", "last_name": "Smith"}
        assert result.confidence == "medium"

    def test_my_name_is(self, pi_category):
        result = extract_with_patterns("Hi, my name is jane doe", pi_category.user_fields())
        assert result.fields["first_name"] == "Jane"
        assert result.fields["last_name"] == "Doe"

    def test_bare_words_ignored_off_name_prompt(self, pi_category):
        result = extract_with_patterns("Palo Alto", pi_category.user_fields(), current_field="zip_code")
        assert result.fields == {}
        assert result.confidence == "low"

    def test_email_and_phone_anywhere(self, pi_category):
        result = extract_with_patterns(
            "reach me at jo@example.com or 650-327-1100", pi_category.user_fields(),
        )
        assert result.fields["email"] == "jo@example.com"
        assert result.fields["phone"] == "6503271100"

    def test_relative_date(self, pi_category):
        result = extract_with_patterns(
            "it happened two days ago", pi_category.user_fields(),
            current_field="date_of_incident", today=TODAY,
        )
        assert result.fields["date_of_incident"] == "06/08/2024"

    @pytest.mark.parametrize("reply,expected", [
        ("yes I was", "Yes"), ("Nope", "No"), ("I wasn't", "No"),
    ])
    def test_yes_no(self, pi_category, reply, expected):
        result = extract_with_patterns(
            reply, pi_category.user_fields(), current_field="bodily_injury",
        )
        assert result.fields["bodily_injury"] == expected

    def test_state_name_in_sentence(self, pi_category):
        result = extract_with_patterns(
            "I live in New York", pi_category.user_fields(), current_field="state",
        )
        assert result.fields["state"] == "NY"

    def test_free_text_answer(self, pi_category):
        result = extract_with_patterns(
            "A truck ran a red light.", pi_category.user_fields(), current_field="describe",
        )
        assert result.fields["describe"] == "A truck ran a red light."

    def test_numeric(self, loader):
        ssd = loader.get_category("social_security_disability")
        result = extract_with_patterns("I'm 54 years old", ssd.user_fields(), current_field="age")
        assert result.fields["age"] == 54

    def test_relative_dates(self):
        assert resolve_relative_date("yesterday", TODAY) == date(2024, 6, 9)
        assert resolve_relative_date("a week ago", TODAY) == date(2024, 6, 3)
        assert resolve_relative_date("a while back", TODAY) is None


class TestFieldExtractor:

    async def test_ai_fields_revalidated(self, pi_category):
        extractor = _extractor({
            "extractedFields": {
                "first_name": "John",
                "phone": "555",
                "email": "JOHN@EXAMPLE.COM",
                "favorite_color": "blue",
            },
            "confidence": "high",
        })
        result = await extractor.extract(
            "I'm John, email JOHN@EXAMPLE.COM, call me at 555",
            ["first_name", "phone", "email"], {}, pi_category,
        )
        assert result.method == "ai"
        assert result.fields == {"first_name": "John", "email": "john@example.com"}

    async def test_only_requested_fields(self, pi_category):
        extractor = _extractor({"extractedFields": {"first_name": "John", "last_name": "Smith"}})
        result = await extractor.extract("John Smith", ["last_name"], {}, pi_category)
        assert result.fields == {"last_name": "Smith"}

    async def test_ai_failure_falls_back(self, pi_category):
        extractor = _extractor(CompletionError("boom"))
        result = await extractor.extract(
            "94301", ["zip_code"], {}, pi_category, current_field="zip_code",
        )
        assert result.method == "patterns"
        assert result.fields == {"zip_code": "94301"}

    async def test_malformed_reply_falls_back(self, pi_category):
        extractor = _extractor({"fields": {}})
        result = await extractor.extract(
            "jo@example.com", ["email"], {}, pi_category, current_field="email",
        )
        assert result.method == "patterns"

    async def test_server_fields_never_targeted(self, pi_category):
        result = await _extractor().extract("203.0.113.7", ["ip_address"], {}, pi_category)
        assert result.is_empty

    async def test_zip_enriches_city_and_state(self, pi_category):
        geocoder = FakeGeocoder(ZipLocation(city="Palo Alto", state="CA"))
        extractor = _extractor(geocoder=geocoder)
        result = await extractor.extract(
            "94301", ["zip_code", "city", "state", "email"], {}, pi_category,
            current_field="zip_code",
        )
        assert result.fields == {"zip_code": "94301", "city": "Palo Alto", "state": "CA"}
        assert sorted(result.enriched) == ["city", "state"]
        assert geocoder.lookups == ["94301"]

    async def test_geocoder_timeout_is_not_fatal(self, pi_category):
        extractor = _extractor(geocoder=FakeGeocoder(ZipLocation("Palo Alto", "CA"), delay=1.0))
        result = await extractor.extract(
            "94301", ["zip_code", "city", "state"], {}, pi_category, current_field="zip_code",
        )
        assert result.fields == {"zip_code": "94301"}

    async def test_no_lookup_when_city_state_known(self, pi_category):
        geocoder = FakeGeocoder(ZipLocation("Palo Alto", "CA"))
        extractor = _extractor(geocoder=geocoder)
        await extractor.extract(
            "94301", ["zip_code"], {"city": "Palo Alto", "state": "CA"}, pi_category,
            current_field="zip_code",
        )
        assert geocoder.lookups == []


class TestGoogleGeocoder:

    async def test_parses_locality(self):
        def handler(request):
            assert request.url.params["address"] == "94301"
            return httpx.Response(200, json={
                "status": "OK",
                "results": [{"address_components": [
                    {"long_name": "Palo Alto", "short_name": "Palo Alto", "types": ["locality"]},
                    {"long_name": "California", "short_name": "CA",
                     "types": ["administrative_area_level_1"]},
                ]}],
            })

        geocoder = GoogleGeocoder("key", transport=httpx.MockTransport(handler))
        assert await geocoder.lookup_zip("94301") == ZipLocation("Palo Alto", "CA")

    async def test_http_failure_returns_none(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        assert await GoogleGeocoder("key", transport=transport).lookup_zip("94301") is None

    async def test_zero_results(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"status": "ZERO_RESULTS", "results": []}),
        )
        assert await GoogleGeocoder("key", transport=transport).lookup_zip("00000") is None
