"""Category detection: which practice area is this conversation about?

AI classification first, constrained to the configured category keys; a
reply naming any other key is a DetectionFailure, never coerced. When the AI
is unavailable or not confident, keyword matching decides, and a keyword
match is always reported as ``medium``. Sub-category is a second, narrower
pass over the chosen category's sub-category list.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from intake.ai.client import CompletionClient
from intake.ai.fallback import attempt_with_fallback
from intake.categories.loader import CategoryConfigLoader
from intake.categories.schema import CategoryConfig
from intake.errors import DetectionFailure

log = logging.getLogger("intake.detection")

DEFAULT_SUBCATEGORY = "other"
SUBCATEGORY_MIN_SCORE = 2
_PHRASE_SCORE = 3
_WORD_SCORE = 1


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class DetectionResult:
    main_category: Optional[str]
    sub_category: Optional[str]
    confidence: Confidence

    @property
    def detected(self) -> bool:
        return self.main_category is not None


DETECTION_SYSTEM_PROMPT = (
    "You are a legal intake specialist categorizing client inquiries into "
    "practice areas. Respond with valid JSON only."
)


def build_detection_prompt(message: str, summaries: list[dict]) -> str:
    areas = "\n".join(
        f"{i}. {area['name']} (KEY: {area['key']}) - Includes: {', '.join(area['subcategories'])}"
        for i, area in enumerate(summaries, start=1)
    )
    return (
        f"Available practice areas:\n{areas}\n\n"
        f"User message: {json.dumps(message)}\n\n"
        "Instructions:\n"
        "- main_category MUST be one of the exact KEY values above.\n"
        "- sub_category: one of that area's listed types if the message makes "
        "it clear, otherwise null.\n"
        '- confidence: "high" (very clear), "medium" (somewhat clear) or "low" (ambiguous).\n\n'
        "Return ONLY JSON in this shape:\n"
        '{"main_category": "personal_injury_law", "sub_category": "car accident", '
        '"confidence": "high"}'
    )


def _contains(haystack: str, phrase: str) -> bool:
    return re.search(r"\b" + re.escape(phrase.lower()) + r"\b", haystack) is not None


def keyword_category(message: str, categories: list[CategoryConfig]) -> str | None:
    """Category with the most keyword hits; ties go to configuration order."""
    lowered = message.lower()
    best_key, best_hits = None, 0
    for category in categories:
        hits = sum(1 for kw in category.ai_detection_keywords if _contains(lowered, kw))
        if hits > best_hits:
            best_key, best_hits = category.key, hits
    return best_key


def match_subcategory(message: str, category: CategoryConfig) -> str:
    """Score each sub-category by phrase and word presence; below threshold → "other"."""
    lowered = message.lower()
    best, best_score = DEFAULT_SUBCATEGORY, 0
    for sub in category.subcategories:
        score = _PHRASE_SCORE if _contains(lowered, sub) else 0
        score += sum(
            _WORD_SCORE for word in sub.lower().split()
            if len(word) >= 4 and _contains(lowered, word)
        )
        if score > best_score:
            best, best_score = sub, score
    return best if best_score >= SUBCATEGORY_MIN_SCORE else DEFAULT_SUBCATEGORY


class CategoryDetector:
    """Classifies a message into one configured category."""

    def __init__(
        self,
        loader: CategoryConfigLoader,
        client: CompletionClient | None = None,
    ) -> None:
        self._loader = loader
        self._client = client

    async def detect(self, message: str) -> DetectionResult:
        primary = None
        if self._client is not None:
            async def primary() -> DetectionResult:
                return await self._detect_with_ai(message)

        result, used_fallback = await attempt_with_fallback(
            primary,
            lambda: self._detect_with_keywords(message),
            accept=lambda r: r.confidence != Confidence.LOW,
            label="category detection",
        )
        if result.detected:
            log.info(
                "Detected category %s / %s (confidence %s, %s)",
                result.main_category, result.sub_category, result.confidence.value,
                "keywords" if used_fallback else "ai",
            )
        else:
            log.info("Category detection inconclusive")
        return result

    def detect_subcategory(self, message: str, category: CategoryConfig) -> str:
        return match_subcategory(message, category)

    # ── Strategies ───────────────────────────────────────────────

    async def _detect_with_ai(self, message: str) -> DetectionResult:
        summaries = self._loader.summaries()
        reply = await self._client.complete_json(
            DETECTION_SYSTEM_PROMPT, build_detection_prompt(message, summaries),
        )

        key = reply.get("main_category")
        category = self._loader.get_category(key) if isinstance(key, str) else None
        if category is None:
            log.warning("AI returned an unknown category key: %r", key)
            raise DetectionFailure(f"Invalid category key from AI: {key!r}")

        try:
            confidence = Confidence(str(reply.get("confidence", "")).lower())
        except ValueError:
            confidence = Confidence.LOW

        sub = reply.get("sub_category")
        sub_category = None
        if isinstance(sub, str):
            sub_category = next(
                (s for s in category.subcategories if s.lower() == sub.strip().lower()),
                None,
            )
        if sub_category is None:
            sub_category = match_subcategory(message, category)
        return DetectionResult(category.key, sub_category, confidence)

    def _detect_with_keywords(self, message: str) -> DetectionResult:
        categories = list(self._loader.load().categories.values())
        key = keyword_category(message, categories)
        if key is None:
            return DetectionResult(None, None, Confidence.LOW)
        category = self._loader.get_category(key)
        return DetectionResult(key, match_subcategory(message, category), Confidence.MEDIUM)
