"""AI completion client and the fallback combinator built on it."""

from .client import AnthropicCompletionClient, CompletionClient, parse_json_reply
from .fallback import attempt_with_fallback

__all__ = [
    "AnthropicCompletionClient",
    "CompletionClient",
    "attempt_with_fallback",
    "parse_json_reply",
]
