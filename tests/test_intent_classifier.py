import asyncio

from storefront_chat.core.intent_classifier import (
    SOURCE_LLM,
    SOURCE_REGEX,
    SOURCE_REGEX_FALLBACK,
    IntentMatch,
    IntentResult,
    classify_intent,
    describe_intent,
    hybrid_classify,
    llm_signals,
    map_llm_intent,
    should_use_llm,
)
from storefront_chat.core.llm_client import CompletionError
from storefront_chat.core.settings import DialogueSettings


class _FakeCompletionClient:
    def __init__(self, content=None, error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def complete(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        if self.error is not None:
            raise self.error
        return self.content


def test_greeting_is_terminal_with_pattern_score():
    for message in ("Hej", "Hello!"):
        result = classify_intent(message)
        assert result.primary == "greeting"
        assert result.is_terminal is True
        assert result.confidence >= 10
        assert result.source == SOURCE_REGEX


def test_swedish_price_question_is_price_check():
    result = classify_intent("vad kostar den?")

    assert result.primary == "price_check"
    assert result.confidence >= 10


def test_affirmative_without_context_is_capped():
    bare = classify_intent("yes")
    with_question = classify_intent("yes", last_question="Vill du se några alternativ?")

    assert bare.primary == "affirmative"
    assert bare.confidence <= 5
    assert with_question.confidence > 5


def test_product_context_boosts_purchase_confidence():
    plain = classify_intent("add to cart please")
    boosted = classify_intent("add to cart please", last_products=("Ametist kluster",))

    assert plain.primary == "purchase"
    assert boosted.confidence == plain.confidence + 3


def test_unmatched_message_is_unclear_and_asks_llm():
    result = classify_intent("zzz")

    assert result.primary == "unclear"
    assert result.confidence == 0
    assert result.all_matches == ()
    assert should_use_llm(result, "zzz", DialogueSettings()) is True


def test_map_llm_intent_folds_extended_labels():
    assert map_llm_intent("off_topic") == "unclear"
    assert map_llm_intent("price_objection") == "price_check"
    assert map_llm_intent("complaint") == "contact"
    assert map_llm_intent("SEARCH") == "search"
    assert map_llm_intent("made_up") == "unclear"
    assert map_llm_intent(None) == "unclear"


def test_hybrid_without_client_returns_regex_result():
    result = asyncio.run(hybrid_classify("zzz"))

    assert result.source == SOURCE_REGEX
    assert result.degraded is False


def test_hybrid_uses_llm_label_from_fenced_json():
    client = _FakeCompletionClient(
        content='```json\n{"primary_intent": "off_topic", "confidence": 0.8, "sentiment": "neutral", '
        '"reasoning": "asks about the weather"}\n```'
    )

    result = asyncio.run(hybrid_classify("how is the weather", client, settings=DialogueSettings()))

    assert client.calls
    assert result.source == SOURCE_LLM
    assert result.primary == "unclear"
    assert result.llm_intent == "off_topic"
    assert result.confidence == 12
    assert result.sentiment == "neutral"


def test_hybrid_missing_confidence_defaults_to_half():
    client = _FakeCompletionClient(content='{"primary_intent": "search"}')

    result = asyncio.run(hybrid_classify("zzz", client, settings=DialogueSettings()))

    assert result.primary == "search"
    assert result.llm_confidence == 0.5
    assert result.confidence == 8


def test_hybrid_degrades_to_regex_when_llm_fails():
    client = _FakeCompletionClient(error=CompletionError("timeout"))

    result = asyncio.run(hybrid_classify("zzz", client, settings=DialogueSettings()))

    assert result.source == SOURCE_REGEX_FALLBACK
    assert result.degraded is True
    assert result.primary == "unclear"


def test_hybrid_degrades_when_llm_confidence_too_low():
    client = _FakeCompletionClient(content='{"primary_intent": "browse", "confidence": 0.2}')

    result = asyncio.run(hybrid_classify("zzz", client, settings=DialogueSettings()))

    assert result.source == SOURCE_REGEX_FALLBACK
    assert result.primary == "unclear"


def test_hybrid_degrades_on_malformed_json():
    client = _FakeCompletionClient(content="not json at all")

    result = asyncio.run(hybrid_classify("zzz", client, settings=DialogueSettings()))

    assert result.source == SOURCE_REGEX_FALLBACK


class _HangingCompletionClient:
    async def complete(self, messages, **kwargs):
        await asyncio.sleep(10)


def _search(confidence, *scores):
    matches = tuple(IntentMatch(intent=f"i{index}", score=score) for index, score in enumerate(scores or (confidence,)))
    return IntentResult(primary="search", confidence=confidence, all_matches=matches)


def test_low_confidence_asks_llm():
    message = "I am looking for a nice gift"

    assert should_use_llm(_search(6), message, DialogueSettings()) is True
    assert should_use_llm(_search(13), message, DialogueSettings()) is False


def test_short_message_with_modest_confidence_asks_llm():
    assert should_use_llm(_search(9), "ametist kluster", DialogueSettings()) is True
    assert should_use_llm(_search(9), "a ring for my mother", DialogueSettings()) is False


def test_close_top_three_scores_ask_llm():
    message = "show me something nice please"

    assert should_use_llm(_search(13, 13, 12, 11), message, DialogueSettings()) is True
    assert should_use_llm(_search(13, 13, 6, 3), message, DialogueSettings()) is False


def test_long_compound_question_asks_llm():
    question = "I am looking for a bracelet for my sister and wonder which stones would suit her best?"
    statement = question.replace("?", ".")

    assert should_use_llm(_search(13), question, DialogueSettings()) is True
    assert should_use_llm(_search(13), statement, DialogueSettings()) is False


def test_hybrid_degrades_when_llm_hangs():
    settings = DialogueSettings(llm_timeout_sec=0.01)

    result = asyncio.run(hybrid_classify("zzz", _HangingCompletionClient(), settings=settings))

    assert result.source == SOURCE_REGEX_FALLBACK
    assert result.primary == "unclear"


def test_llm_signals_only_for_llm_results():
    result = IntentResult(
        primary="price_check",
        source=SOURCE_LLM,
        llm_intent="price_objection",
        sentiment="negative",
        entities={"time_constraint": "before Friday", "product_mentioned": "Ametist"},
    )

    assert llm_signals(result) == {
        "price_objection": True,
        "urgency": "before Friday",
        "sentiment": "negative",
        "product_mentioned": "Ametist",
    }
    assert llm_signals(classify_intent("vad kostar den?")) == {}


def test_describe_intent_falls_back_for_unknown_labels():
    assert describe_intent("price_check") == "User is asking about price"
    assert describe_intent("made_up") == "Unknown intent"
