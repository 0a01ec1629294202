import pytest

from core.services.intent import KeywordIntentClassifier


@pytest.fixture
def classifier():
    return KeywordIntentClassifier()


@pytest.mark.parametrize(
    "text,intent",
    [
        ("Remember that my passport expires in May", "memory_store"),
        ("What did I say about the trip?", "memory_search"),
        ("Please update the grocery list", "memory_update"),
        ("What's the weather in Oslo", "api_call"),
        ("Remind me to call mum", "api_call"),
        ("Set reminder for Friday", "schedule"),
        ("hello", "conversational"),
        ("Tell me a story about dragons", "conversational"),
    ],
)
def test_classify(classifier, text, intent):
    assert classifier.classify(text) == intent


def test_keywords_match_whole_words(classifier):
    # "hi" inside "this" and "note" inside "notebook" are not keywords.
    assert classifier.classify("this notebook is great") == "conversational"


def test_needs_tools(classifier):
    assert classifier.needs_tools("remember my locker code is 4411", "memory_store")
    assert not classifier.needs_tools("hello there", "conversational")
    assert not classifier.needs_tools("ok thanks", "memory_search")
    assert not classifier.needs_tools("please tell me a story", "storytelling")
    assert classifier.needs_tools("tell me a long story about a dragon and a knight", "storytelling")


def test_custom_keywords():
    classifier = KeywordIntentClassifier(
        intent_keywords=[("billing", ("invoice",))],
        tool_intents={"billing"},
    )
    assert classifier.classify("send me the invoice") == "billing"
    assert classifier.needs_tools("send me the invoice", "billing")
