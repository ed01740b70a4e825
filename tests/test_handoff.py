from storefront_chat.core.cache import CacheClient
from storefront_chat.core.conversation_state import build_conversation_state
from storefront_chat.core.handoff import (
    HANDOFF_ACCOUNT_ISSUE,
    HANDOFF_CUSTOMER_REQUEST,
    HANDOFF_FRUSTRATION,
    HANDOFF_LOW_CONFIDENCE,
    HANDOFF_OFF_TOPIC,
    HANDOFF_REPEATED_FAILURE,
    ConfidenceObserved,
    HandoffTracker,
    ReplyObserved,
    SentimentObserved,
    evaluate_handoff,
    handoff_message,
    is_sentiment_declining,
    load_tracker,
    risk_level,
    save_tracker,
    transition,
)
from storefront_chat.core.intent_classifier import IntentResult
from storefront_chat.core.settings import DialogueSettings

CONFIDENT = IntentResult(primary="search", confidence=13)


def _evaluate(message, tracker=None, intent=CONFIDENT, settings=None):
    state = build_conversation_state([], message, intent, "en")
    return evaluate_handoff(message, state, intent, tracker or HandoffTracker(), settings or DialogueSettings())


def test_explicit_human_request_wins():
    decision, _ = _evaluate("I want to talk to a human please")

    assert decision.needed is True
    assert decision.reason == HANDOFF_CUSTOMER_REQUEST
    assert decision.confidence == 1.0


def test_account_issue_needs_handoff():
    decision, _ = _evaluate("Where is my package? I ordered last week")

    assert decision.needed is True
    assert decision.reason == HANDOFF_ACCOUNT_ISSUE


def test_single_frustration_only_suggests():
    decision, tracker = _evaluate("This is useless")

    assert decision.needed is False
    assert decision.suggest_handoff is True
    assert decision.reason == HANDOFF_FRUSTRATION
    assert tracker.negative_sentiment_count == 1


def test_second_frustration_needs_handoff():
    _, tracker = _evaluate("This is useless")
    decision, tracker = _evaluate("I'm so frustrated, this is not helping", tracker)

    assert decision.needed is True
    assert decision.reason == HANDOFF_FRUSTRATION
    assert tracker.negative_sentiment_count == 2


def test_repeated_low_confidence_needs_handoff():
    weak = IntentResult(primary="unclear", confidence=0)
    tracker = HandoffTracker()
    reasons = []
    for _ in range(3):
        decision, tracker = _evaluate("zzz", tracker, intent=weak)
        reasons.append(decision.reason)

    assert reasons[:2] == [None, None]
    assert reasons[2] == HANDOFF_LOW_CONFIDENCE
    assert tracker.low_confidence_count == 3


def test_confident_turn_decays_low_confidence_count():
    tracker = HandoffTracker(low_confidence_count=2)

    _, tracker = _evaluate("crystals for meditation", tracker)

    assert tracker.low_confidence_count == 1


def test_uncertain_replies_lead_to_repeated_failure():
    settings = DialogueSettings()
    tracker = HandoffTracker()
    tracker = transition(tracker, ReplyObserved("I'm not sure about that one."), settings)
    tracker = transition(tracker, ReplyObserved("Here are some options."), settings)
    tracker = transition(tracker, ReplyObserved("Unfortunately we do not stock that."), settings)

    decision, _ = _evaluate("ok what else", tracker)

    assert tracker.uncertain_response_count == 2
    assert decision.needed is True
    assert decision.reason == HANDOFF_REPEATED_FAILURE


def test_off_topic_llm_label_suggests_handoff():
    intent = IntentResult(primary="unclear", confidence=12, source="llm", llm_intent="off_topic")

    decision, _ = _evaluate("what's the weather in Paris", intent=intent)

    assert decision.needed is False
    assert decision.suggest_handoff is True
    assert decision.reason == HANDOFF_OFF_TOPIC


def test_declining_sentiment_needs_three_samples():
    tracker = HandoffTracker(sentiment_history=("positive", "neutral"))
    assert is_sentiment_declining(tracker) is False

    tracker = transition(tracker, SentimentObserved("negative"), DialogueSettings())
    assert is_sentiment_declining(tracker) is True
    assert is_sentiment_declining(HandoffTracker(sentiment_history=("neutral", "neutral", "neutral"))) is False


def test_sentiment_history_is_bounded():
    settings = DialogueSettings(sentiment_window=5)
    tracker = HandoffTracker()
    for sample in ("positive", "neutral", "negative", "neutral", "positive", "frustrated", "negative"):
        tracker = transition(tracker, SentimentObserved(sample), settings)

    assert len(tracker.sentiment_history) == 5
    assert tracker.sentiment_history[-1] == "negative"
    assert tracker.negative_sentiment_count == 3


def test_risk_level_uses_configured_weights():
    tracker = HandoffTracker(low_confidence_count=2, uncertain_response_count=2)
    settings = DialogueSettings(handoff_risk_weights={"low_confidence": 1, "uncertain_response": 4})

    assert risk_level(tracker, settings) == 5
    assert risk_level(HandoffTracker(), settings) == 0


def test_tracker_round_trip():
    tracker = transition(HandoffTracker(), ConfidenceObserved(2), DialogueSettings())
    tracker = transition(tracker, SentimentObserved("frustrated"), DialogueSettings())

    assert HandoffTracker.from_dict(tracker.to_dict()) == tracker
    assert HandoffTracker.from_dict(None) == HandoffTracker()
    assert HandoffTracker.from_dict({"low_confidence_count": "-3"}).low_confidence_count == 0


def test_tracker_persists_through_cache():
    cache = CacheClient(None)
    tracker = HandoffTracker(low_confidence_count=1, sentiment_history=("neutral",))

    assert save_tracker("conv-1", tracker, cache, DialogueSettings()) is True
    assert load_tracker("conv-1", cache) == tracker
    assert load_tracker("conv-unknown", cache) == HandoffTracker()


def test_tracker_load_failure_starts_fresh():
    class _BrokenCache:
        def get_json(self, key):
            raise RuntimeError("down")

    assert load_tracker("conv-1", _BrokenCache()) == HandoffTracker()


def test_handoff_message_is_localized_with_contact():
    english = handoff_message(HANDOFF_CUSTOMER_REQUEST, "en", {"email": "hej@shop.se"})
    swedish = handoff_message(HANDOFF_CUSTOMER_REQUEST, "Swedish", {"email": "hej@shop.se", "phone": "08-123"})

    assert "hej@shop.se" in english
    assert "08-123" in swedish
    assert english != swedish
