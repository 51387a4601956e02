"""User-facing wording: field questions, consent, and yes/no recognition.

Templates come from each category's ``field_questions`` and may use the
closed placeholder set ``{first_name}``, ``{name_prefix}`` and
``{compassionate_intro}``. Substitution is plain string replacement, never
``str.format``, so stray braces in config text are harmless.
"""

from __future__ import annotations

import re
from typing import Any

from intake.categories.schema import CategoryConfig

DEFAULT_INTRO = "I'm here to help you find the right attorney."

CLARIFYING_PROMPT = (
    "I'd be happy to help you find legal assistance. "
    "Can you tell me what type of legal issue you're facing?"
)

ALREADY_SUBMITTED = (
    "Your information has already been sent to our attorney network. "
    "A qualified attorney will be in touch with you soon."
)

IN_PROGRESS = (
    "I'm already sending your information over. "
    "Please give it a moment."
)

SUBMIT_SUCCESS = (
    "Thank you! Your information has been submitted. "
    "A qualified attorney from our network will contact you shortly."
)

SUBMIT_FAILED = (
    "I'm sorry, something went wrong while submitting your information. "
    "Would you like me to try again?"
)

DECLINED = (
    "No problem. Your information has not been sent. "
    "Just let me know whenever you'd like me to submit it."
)

RETRY_OFFER = (
    "Your information hasn't been submitted yet. "
    "Would you like me to try sending it again?"
)

_AFFIRMATIVE = {
    "yes", "yeah", "yep", "yup", "sure", "ok", "okay", "absolutely",
    "definitely", "correct", "y", "alright",
}
# Replies that may open with these count as consent
_AFFIRMATIVE_OPENERS = (
    "go ahead", "do it", "sounds good", "please do", "please submit", "please send",
    "submit it", "send it", "of course", "that's fine",
)
_NEGATIVE = {
    "no", "nope", "nah", "not", "never", "don't", "dont", "stop", "wait", "cancel",
    "n", "hold", "later",
}
_NEGATIVE_PHRASES = ("not yet", "not now", "hold on", "no thanks", "rather not")
# Longer replies only count as consent when they open with a yes
_SHORT_REPLY_WORDS = 4


def template_variables(category: CategoryConfig, answers: dict[str, Any]) -> dict[str, str]:
    first_name = str(answers.get("first_name") or "").strip()
    return {
        "first_name": first_name,
        "name_prefix": f"{first_name}, " if first_name else "",
        "compassionate_intro": category.personality.compassionate_intro or DEFAULT_INTRO,
    }


def render_template(template: str, answers: dict[str, Any], category: CategoryConfig) -> str:
    text = template
    for key, value in template_variables(category, answers).items():
        text = text.replace("{" + key + "}", value)
    text = re.sub(r"\s{2,}", " ", text).strip()
    return text[:1].upper() + text[1:]


def _select_template(entry: str | dict[str, str], answers: dict[str, Any], variant: str | None) -> str | None:
    if isinstance(entry, str):
        return entry
    if variant and variant in entry:
        return entry[variant]
    # Contextual variants are keyed by a word that appears in the description
    describe = str(answers.get("describe") or "").lower()
    for key, template in entry.items():
        if key != "default" and key in describe:
            return template
    return entry.get("default") or next(iter(entry.values()), None)


def field_question(
    category: CategoryConfig,
    field: str,
    answers: dict[str, Any],
    variant: str | None = None,
) -> str:
    """The question that asks the user for ``field``."""
    entry = category.field_questions.get(field)
    template = _select_template(entry, answers, variant) if entry else None
    if not template:
        template = "{name_prefix}what is your " + field.replace("_", " ") + "?"
    return render_template(template, answers, category)


def completion_prompt(category: CategoryConfig, answers: dict[str, Any]) -> str:
    return render_template(
        "Excellent! {name_prefix}I have all the information I need to connect you "
        f"with qualified {category.name.lower()} attorneys in your area. "
        "Would you like me to submit your information?",
        answers,
        category,
    )


def _words(message: str) -> list[str]:
    return re.findall(r"[a-z']+", message.lower().replace("’", "'"))


def is_negative(message: str) -> bool:
    """True if any refusal word or phrase appears anywhere in the reply."""
    words = _words(message)
    text = " ".join(words)
    if any(re.search(r"\b" + re.escape(p) + r"\b", text) for p in _NEGATIVE_PHRASES):
        return True
    return any(w in _NEGATIVE or w.endswith("n't") for w in words)


def is_affirmative(message: str) -> bool:
    """Consent: a reply opening with a yes, or a short reply containing one.

    Any refusal anywhere vetoes, so "please do not submit" is never consent.
    """
    if is_negative(message):
        return False
    words = _words(message)
    if not words:
        return False
    text = " ".join(words)
    if words[0] in _AFFIRMATIVE or text.startswith(_AFFIRMATIVE_OPENERS):
        return True
    return len(words) <= _SHORT_REPLY_WORDS and any(w in _AFFIRMATIVE for w in words)
