"""
Intent classification and the tool-use gate.

The gate only bounds token spend: a wrong guess costs a cheaper or a more
expensive completion, never a wrong answer. Swap in another IntentClassifier
to tune it.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional, Protocol, Sequence

INTENT_CONVERSATIONAL = "conversational"

# Order matters: the first intent with a matching keyword wins.
DEFAULT_INTENT_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("memory_store", ("remember", "save", "store", "note", "write down", "keep track", "record")),
    ("memory_search", ("find", "search", "look for", "recall", "what did", "do i have", "show me")),
    ("memory_update", ("change", "update", "modify", "edit", "correct", "fix")),
    ("api_call", ("weather", "call", "get data", "check", "fetch")),
    ("schedule", ("remind me", "schedule", "set reminder", "notify me")),
    (INTENT_CONVERSATIONAL, ("hello", "hi", "how are you", "thanks", "thank you", "bye")),
)

DEFAULT_GREETINGS: tuple[str, ...] = (
    "hello", "hi", "hey", "good morning", "good afternoon", "good evening",
    "how are you", "what's up", "thanks", "thank you", "bye", "goodbye",
    "ok", "okay", "sure", "alright", "got it", "understood",
)

DEFAULT_TOOL_INTENTS = frozenset({"memory_store", "memory_search", "memory_update", "api_call", "schedule"})

SHORT_MESSAGE_WORDS = 3
LONG_MESSAGE_WORDS = 8


class IntentClassifier(Protocol):
    def classify(self, text: str) -> str: ...

    def needs_tools(self, text: str, intent: str) -> bool: ...


def _phrase_pattern(phrases: Iterable[str]) -> re.Pattern:
    alternatives = "|".join(re.escape(phrase) for phrase in sorted(phrases, key=len, reverse=True))
    return re.compile(rf"(?<![\w'])(?:{alternatives})(?![\w'])")


class KeywordIntentClassifier:
    """Fixed keyword lookup; keywords match on word boundaries."""

    def __init__(
        self,
        intent_keywords: Optional[Sequence[tuple[str, Sequence[str]]]] = None,
        greetings: Optional[Sequence[str]] = None,
        tool_intents: Optional[Iterable[str]] = None,
    ):
        keywords = intent_keywords if intent_keywords is not None else DEFAULT_INTENT_KEYWORDS
        self._intents = [(intent, _phrase_pattern(words)) for intent, words in keywords if words]
        self._greetings = _phrase_pattern(greetings if greetings is not None else DEFAULT_GREETINGS)
        self.tool_intents = frozenset(tool_intents if tool_intents is not None else DEFAULT_TOOL_INTENTS)

    def classify(self, text: str) -> str:
        lowered = text.lower()
        for intent, pattern in self._intents:
            if pattern.search(lowered):
                return intent
        return INTENT_CONVERSATIONAL

    def needs_tools(self, text: str, intent: str) -> bool:
        if intent == INTENT_CONVERSATIONAL:
            return False
        word_count = len(text.split())
        if word_count <= SHORT_MESSAGE_WORDS and self._greetings.search(text.lower()):
            return False
        if intent in self.tool_intents:
            return True
        return word_count > LONG_MESSAGE_WORDS
