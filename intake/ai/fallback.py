"""AI-first, deterministic-fallback combinator.

Category detection and field extraction both try the AI strategy first and
fall back to a deterministic matcher when it fails or isn't confident
enough. This module holds that shape once.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from intake.errors import CompletionError, DetectionFailure

log = logging.getLogger("intake.ai")

T = TypeVar("T")

# Errors that mean "the primary strategy produced nothing usable"
FALLBACK_ERRORS = (CompletionError, DetectionFailure)


async def attempt_with_fallback(
    primary: Optional[Callable[[], Awaitable[T]]],
    fallback: Callable[[], T],
    *,
    accept: Callable[[T], bool] | None = None,
    label: str = "strategy",
) -> tuple[T, bool]:
    """Run ``primary``; use ``fallback`` if it is absent, fails, or is rejected.

    Returns ``(result, used_fallback)``. Only the strategy failures in
    FALLBACK_ERRORS trigger the fallback; anything else propagates.
    """
    if primary is not None:
        try:
            result = await primary()
        except FALLBACK_ERRORS as exc:
            log.warning("%s: primary failed (%s), using fallback", label, exc)
        else:
            if accept is None or accept(result):
                return result, False
            log.info("%s: primary result not accepted, using fallback", label)
    return fallback(), True
