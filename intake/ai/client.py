"""Text-in / JSON-out completion client used by detection and extraction.

The model is asked for a constrained JSON shape, but its reply is parsed
leniently: code fences and ``//`` or ``/* */`` comments are stripped and
anything that still isn't a JSON object raises CompletionError, which the
callers treat as "AI unavailable" and fall back to deterministic matching.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import anthropic

from intake.errors import CompletionError

log = logging.getLogger("intake.ai")


class CompletionClient(ABC):
    """Abstract AI completion backend."""

    @abstractmethod
    async def complete_json(
        self, system: str, prompt: str, *, max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """Return the model's reply parsed as a JSON object.

        Raises:
            CompletionError: on transport failure, timeout, or a reply that
                is not a JSON object.
        """


class AnthropicCompletionClient(CompletionClient):
    """Claude via the Anthropic SDK, temperature 0, bounded by a hard timeout."""

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout: float = 10.0,
        max_tokens: int = 600,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key, timeout=timeout, max_retries=0,
        )
        self._model = model
        self._timeout = timeout
        self._max_tokens = max_tokens

    async def complete_json(
        self, system: str, prompt: str, *, max_tokens: int | None = None,
    ) -> dict[str, Any]:
        try:
            response = await asyncio.wait_for(
                self._client.messages.create(
                    model=self._model,
                    max_tokens=max_tokens or self._max_tokens,
                    temperature=0,
                    system=system,
                    messages=[{"role": "user", "content": prompt}],
                ),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise CompletionError(f"AI completion timed out after {self._timeout}s") from exc
        except anthropic.APIError as exc:
            raise CompletionError(f"AI completion failed: {exc}") from exc

        raw_text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        log.debug("Raw completion: %s", raw_text)
        return parse_json_reply(raw_text)


# ── Reply parsing ────────────────────────────────────────────────

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?\s*```", re.DOTALL)


def strip_json_comments(text: str) -> str:
    """Remove // line comments and /* */ block comments outside string literals."""
    out: list[str] = []
    i, n = 0, len(text)
    in_string = False
    while i < n:
        ch = text[i]
        if in_string:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(text[i + 1])
                i += 2
                continue
            if ch == '"':
                in_string = False
            i += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            i += 1
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def parse_json_reply(text: str) -> dict[str, Any]:
    """Extract a JSON object from a model reply, or raise CompletionError."""
    if not text or not text.strip():
        raise CompletionError("AI completion returned an empty reply")

    match = _FENCE_RE.search(text)
    candidate = match.group(1) if match else text
    candidate = strip_json_comments(candidate).strip()

    # Tolerate prose around the object: take the outermost braces
    start, end = candidate.find("{"), candidate.rfind("}")
    if start == -1 or end <= start:
        raise CompletionError("AI completion contained no JSON object")
    candidate = candidate[start:end + 1]
    # Trailing commas are the other common defect after comment removal
    candidate = re.sub(r",\s*([}\]])", r"\1", candidate)

    try:
        result = json.loads(candidate)
    except json.JSONDecodeError as exc:
        log.warning("Malformed JSON from AI completion: %s", exc)
        raise CompletionError(f"AI completion returned invalid JSON: {exc}") from exc
    if not isinstance(result, dict):
        raise CompletionError("AI completion JSON was not an object")
    return result
