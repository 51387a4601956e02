"""Tests for the completion client, reply parsing and the fallback combinator."""

import asyncio
import os
import sys
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import anthropic
import httpx
import pytest

from intake.ai.client import AnthropicCompletionClient, parse_json_reply, strip_json_comments
from intake.ai.fallback import attempt_with_fallback
from intake.errors import CompletionError, DetectionFailure


def _sdk_reply(text):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)])


def _client(create):
    sdk = MagicMock()
    sdk.messages.create = create
    return AnthropicCompletionClient("key", "claude-test", timeout=0.05, client=sdk), sdk


class TestParseJsonReply:

    def test_plain(self):
        assert parse_json_reply('{"a": 1}') == {"a": 1}

    def test_fenced(self):
        assert parse_json_reply('Here you go:\n```json\n{"a": 1}\n```') == {"a": 1}

    def test_prose_around_object(self):
        assert parse_json_reply('Sure! {"a": {"b": 2}} Hope that helps.') == {"a": {"b": 2}}

    def test_comments_and_trailing_commas(self):
        text = '{\n  "a": 1, // first\n  /* block */ "b": [1, 2,],\n}'
        assert parse_json_reply(text) == {"a": 1, "b": [1, 2]}

    def test_comment_markers_inside_strings_kept(self):
        assert strip_json_comments('{"url": "http://x.test/*y*/"}') == '{"url": "http://x.test/*y*/"}'

    @pytest.mark.parametrize("text", ["", "no json here", "{not: valid}"])
    def test_invalid(self, text):
        with pytest.raises(CompletionError):
            parse_json_reply(text)


class TestAnthropicCompletionClient:

    async def test_joins_text_blocks(self):
        create = AsyncMock(return_value=_sdk_reply('{"main_category": "family_law"}'))
        client, sdk = _client(create)
        assert await client.complete_json("sys", "prompt") == {"main_category": "family_law"}
        kwargs = create.call_args.kwargs
        assert kwargs["temperature"] == 0
        assert kwargs["model"] == "claude-test"

    async def test_timeout(self):
        async def slow(**kwargs):
            await asyncio.sleep(1)

        client, _ = _client(slow)
        with pytest.raises(CompletionError, match="timed out"):
            await client.complete_json("sys", "prompt")

    async def test_api_error(self):
        error = anthropic.APIConnectionError(
            request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"),
        )
        client, _ = _client(AsyncMock(side_effect=error))
        with pytest.raises(CompletionError):
            await client.complete_json("sys", "prompt")


class TestAttemptWithFallback:

    async def test_primary_accepted(self):
        async def primary():
            return "ai"

        assert await attempt_with_fallback(primary, lambda: "rules") == ("ai", False)

    async def test_no_primary(self):
        assert await attempt_with_fallback(None, lambda: "rules") == ("rules", True)

    @pytest.mark.parametrize("error", [CompletionError("x"), DetectionFailure("y")])
    async def test_strategy_failure(self, error):
        async def primary():
            raise error

        assert await attempt_with_fallback(primary, lambda: "rules") == ("rules", True)

    async def test_rejected_result(self):
        async def primary():
            return "weak"

        result = await attempt_with_fallback(primary, lambda: "rules", accept=lambda r: r != "weak")
        assert result == ("rules", True)

    async def test_other_errors_propagate(self):
        async def primary():
            raise KeyError("bug")

        with pytest.raises(KeyError):
            await attempt_with_fallback(primary, lambda: "rules")
