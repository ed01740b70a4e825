from storefront_chat.core import discovery_gate
from storefront_chat.core.conversation import Message
from storefront_chat.core.conversation_state import build_conversation_state
from storefront_chat.core.discovery_gate import (
    REASON_DISCOVERY_COMPLETE,
    REASON_DISCOVERY_INCOMPLETE,
    REASON_EXCLUDED_INTENT,
    REASON_EXPLICIT_PRODUCT_INTENT,
    REASON_INSUFFICIENT_NEEDS,
    REASON_MINIMUM_EXCHANGES,
    REASON_PRODUCT_CONFIRMATION,
    REASON_TURN_COUNT_OVERRIDE,
    DiscoveryStatus,
    assess_needs,
    discovery_prompt_addition,
    extract_product_markers,
    is_discovery_complete,
    should_allow_product_cards,
    should_include_products_in_context,
    strip_product_markers,
)
from storefront_chat.core.intent_classifier import IntentResult
from storefront_chat.core.metrics import metrics
from storefront_chat.core.settings import DialogueSettings

UNCLEAR = IntentResult(primary="unclear", confidence=0)


def _history(user_texts):
    history = []
    for content in user_texts:
        history.append(Message(role="user", content=content))
        history.append(Message(role="assistant", content="Okay."))
    return history


def _state(history, message, intent=UNCLEAR):
    return build_conversation_state(history, message, intent, "en")


def test_first_turns_never_complete_discovery():
    settings = DialogueSettings()
    for turns in range(0, 3):
        history = _history(["I want a gift for my mom, her birthday, max 200 kr"] * turns)
        status = is_discovery_complete(_state(history, "hello"), history, "hello", settings)
        assert status.complete is False
        assert status.reason == REASON_MINIMUM_EXCHANGES
        assert status.turn_count == turns


def test_clear_needs_after_three_turns_complete_discovery():
    history = _history(["Hej", "I need something for my mom", "It's her birthday"])
    message = "around 200 kr"

    status = is_discovery_complete(_state(history, message), history, message, DialogueSettings())

    assert status.complete is True
    assert status.reason == REASON_DISCOVERY_COMPLETE
    assert status.needs.score >= 3
    assert {"recipient", "occasion", "budget"} <= set(status.needs.categories)


def test_vague_conversation_is_insufficient_before_override_turn():
    history = _history(["Hej", "ok", "hmm"])

    status = is_discovery_complete(_state(history, "ok"), history, "ok", DialogueSettings())

    assert status.complete is False
    assert status.reason == REASON_INSUFFICIENT_NEEDS
    assert status.needs.score == 0


def test_turn_count_override_is_flagged_and_counted():
    metrics.reset()
    history = _history(["Hej", "ok", "hmm", "ok", "hmm"])

    status = is_discovery_complete(_state(history, "ok"), history, "ok", DialogueSettings())

    assert status.complete is True
    assert status.reason == REASON_TURN_COUNT_OVERRIDE
    assert status.override is True
    assert status.warning
    assert metrics.snapshot().get("sc_discovery_override_total") == 1


def test_needs_score_never_drops_when_messages_are_added():
    texts = ["a gift please", "for my dad", "christmas", "hmm", "under 500", "blue colour", "ok"]
    previous = 0
    for index in range(1, len(texts) + 1):
        score = assess_needs(_history(texts[:index])).score
        assert score >= previous
        previous = score


def test_recipient_words_are_word_bounded():
    assert "recipient" not in assess_needs([], "many options").categories
    assert "recipient" in assess_needs([], "it is for my husband").categories


def test_context_gate_excludes_and_bypasses_by_intent():
    history = _history(["Hej"])
    state = _state(history, "hi")

    greeting = should_include_products_in_context(state, IntentResult(primary="greeting"), history, "hi")
    price = should_include_products_in_context(state, IntentResult(primary="price_check"), history, "hi")

    assert greeting.allowed is False
    assert greeting.reason == REASON_EXCLUDED_INTENT
    assert price.allowed is True
    assert price.bypass_discovery is True
    assert price.reason == REASON_EXPLICIT_PRODUCT_INTENT


def test_premature_product_markers_are_stripped():
    metrics.reset()
    history = _history(["Hej"])
    reply = "You might like {{Rosenkvarts}} and {{Ametist}}."

    decision = should_allow_product_cards(_state(history, "hmm"), UNCLEAR, reply, history, "hmm", DialogueSettings())

    assert decision.allowed is False
    assert decision.suppress_cards is True
    assert decision.reason == REASON_DISCOVERY_INCOMPLETE
    assert "{{" not in decision.response
    assert metrics.snapshot().get("sc_cards_suppressed_total{reason=minimum_exchanges}") == 1


def test_affirmative_after_products_allows_cards():
    history = [Message(role="user", content="hi"), Message(role="assistant", content="Look", products_shown=("Ametist",))]
    intent = IntentResult(primary="affirmative", confidence=13)

    decision = should_allow_product_cards(_state(history, "yes", intent), intent, "{{Ametist}}", history, "yes")

    assert decision.allowed is True
    assert decision.reason == REASON_PRODUCT_CONFIRMATION


def test_marker_helpers():
    reply = "Try {{Citrin}} or {{ Citrin }} and {{Ametist}}!"

    assert extract_product_markers(reply) == ["Citrin", "Ametist"]
    assert strip_product_markers(reply) == "Try or and!"


def test_prompt_addition_names_missing_needs():
    history = _history(["Hej", "ok", "hmm"])
    status = is_discovery_complete(_state(history, "ok"), history, "ok", DialogueSettings())

    addition = discovery_prompt_addition(status, "en", DialogueSettings())

    assert addition
    assert discovery_prompt_addition(DiscoveryStatus(True, REASON_DISCOVERY_COMPLETE, 3, status.needs), "en") == ""


def test_override_turn_is_configurable():
    settings = DialogueSettings(needs_score_override_turn=8)
    history = _history(["Hej", "ok", "hmm", "ok", "hmm"])

    status = discovery_gate.is_discovery_complete(_state(history, "ok"), history, "ok", settings)

    assert status.complete is False
    assert status.reason == REASON_INSUFFICIENT_NEEDS
