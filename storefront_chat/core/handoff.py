"""Decides when a conversation should be handed over to a human.

The per-conversation `HandoffTracker` is an immutable record. Every observation
produces a new tracker through `transition`, and the caller persists it between
turns with `save_tracker` / `load_tracker`.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional, Union

from storefront_chat.core.cache import CacheClient, get_cache
from storefront_chat.core.conversation_state import ConversationState
from storefront_chat.core.intent_classifier import IntentResult
from storefront_chat.core.localization import resolve_language, text
from storefront_chat.core.metrics import metrics
from storefront_chat.core.settings import DialogueSettings, get_settings

logger = logging.getLogger(__name__)

HANDOFF_CUSTOMER_REQUEST = "customer_request"
HANDOFF_ACCOUNT_ISSUE = "account_issue"
HANDOFF_FRUSTRATION = "frustration"
HANDOFF_LOW_CONFIDENCE = "low_confidence"
HANDOFF_REPEATED_FAILURE = "repeated_failure"
HANDOFF_OFF_TOPIC = "off_topic"

SENTIMENT_SCORES = {"positive": 3, "neutral": 2, "negative": 1, "frustrated": 0}
_NEGATIVE_SENTIMENTS = {"negative", "frustrated"}

TRACKER_KEY_PREFIX = "sc:handoff:"


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


HUMAN_REQUEST_PATTERNS = _compile(
    r"prata med (en )?(människa|person|någon|agent|support)",
    r"kan jag (få )?(prata|tala|snacka) med",
    r"finns det (någon|en) (människa|person)",
    r"riktig person",
    r"human support",
    r"kontakta (er|dig|support|kundtjänst)",
    r"ring(a)? (mig|er)",
    r"nå (en|någon) (person|människa)",
    r"talk to (a )?(human|person|someone|agent|representative)",
    r"speak (to|with) (a )?(human|person|someone|real)",
    r"can i (get|have|speak|talk)",
    r"real person",
    r"human (support|agent|help)",
    r"contact (support|someone|you)",
    r"call (me|you)",
    r"reach (a |an )?(person|human|agent)",
    r"customer service",
    r"live (chat|agent|support)",
)

FRUSTRATION_PATTERNS = _compile(
    r"fungerar inte",
    r"förstår (du )?(inte|ingenting)",
    r"hjälper (inte|mig inte)",
    r"värdelös",
    r"dålig",
    r"irriterad",
    r"frustrerad",
    r"\barg\b",
    r"trött på",
    r"ge upp",
    r"meningslös",
    r"hopplös",
    r"not (working|helping)",
    r"(don't|doesn't) understand",
    r"useless",
    r"terrible",
    r"frustrated",
    r"annoyed",
    r"angry",
    r"giving up",
    r"waste of time",
    r"hopeless",
    r"this is ridiculous",
    r"what('s| is) wrong with",
)

ACCOUNT_ISSUE_PATTERNS = _compile(
    r"min (beställning|order)",
    r"var är (mitt|min|mina) (paket|order)",
    r"leverans(problem|status)",
    r"reklamation",
    r"klagomål",
    r"återbetalning",
    r"pengarna tillbaka",
    r"trasig|skadad|defekt",
    r"fel (produkt|vara)",
    r"my (order|package|delivery)",
    r"where is my",
    r"delivery (problem|status|issue)",
    r"complaint",
    r"refund",
    r"money back",
    r"broken|damaged|defective",
    r"wrong (product|item)",
    r"cancel (my |the )?order",
    r"tracking (number|info)",
)

UNCERTAIN_REPLY_PATTERNS = _compile(
    r"jag (vet inte|är inte säker|kan inte)",
    r"\bi( don't know|'m not sure| can't| cannot)",
    r"tyvärr (kan jag inte|vet jag inte)",
    r"unfortunately",
    r"outside (what i|my)",
    r"utanför (vad jag|mitt)",
)


@dataclass(frozen=True)
class HandoffTracker:
    low_confidence_count: int = 0
    uncertain_response_count: int = 0
    negative_sentiment_count: int = 0
    sentiment_history: tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "low_confidence_count": self.low_confidence_count,
            "uncertain_response_count": self.uncertain_response_count,
            "negative_sentiment_count": self.negative_sentiment_count,
            "sentiment_history": list(self.sentiment_history),
        }

    @classmethod
    def from_dict(cls, raw: Optional[Mapping[str, Any]]) -> "HandoffTracker":
        if not isinstance(raw, Mapping):
            return cls()
        history = raw.get("sentiment_history") or []
        samples = tuple(str(item) for item in history if isinstance(item, str))
        return cls(
            low_confidence_count=_non_negative(raw.get("low_confidence_count")),
            uncertain_response_count=_non_negative(raw.get("uncertain_response_count")),
            negative_sentiment_count=_non_negative(raw.get("negative_sentiment_count")),
            sentiment_history=samples[-get_settings().sentiment_window :],
        )


def _non_negative(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


@dataclass(frozen=True)
class ConfidenceObserved:
    confidence: int


@dataclass(frozen=True)
class ReplyObserved:
    reply: str


@dataclass(frozen=True)
class SentimentObserved:
    sentiment: str


TrackerEvent = Union[ConfidenceObserved, ReplyObserved, SentimentObserved]


def transition(
    tracker: HandoffTracker,
    event: TrackerEvent,
    settings: Optional[DialogueSettings] = None,
) -> HandoffTracker:
    settings = settings or get_settings()
    if isinstance(event, ConfidenceObserved):
        if event.confidence < settings.llm_fallback_confidence:
            return replace(tracker, low_confidence_count=tracker.low_confidence_count + 1)
        return replace(tracker, low_confidence_count=max(0, tracker.low_confidence_count - 1))
    if isinstance(event, ReplyObserved):
        if is_uncertain_reply(event.reply):
            return replace(tracker, uncertain_response_count=tracker.uncertain_response_count + 1)
        return tracker
    if isinstance(event, SentimentObserved):
        history = (tracker.sentiment_history + (event.sentiment,))[-settings.sentiment_window :]
        negative = tracker.negative_sentiment_count
        if event.sentiment in _NEGATIVE_SENTIMENTS:
            negative += 1
        return replace(tracker, sentiment_history=history, negative_sentiment_count=negative)
    raise TypeError(f"unsupported tracker event: {type(event).__name__}")


def record_confidence(tracker: HandoffTracker, confidence: int, settings: Optional[DialogueSettings] = None) -> HandoffTracker:
    return transition(tracker, ConfidenceObserved(confidence), settings)


def record_uncertain_response(
    tracker: HandoffTracker, reply: str, settings: Optional[DialogueSettings] = None
) -> HandoffTracker:
    return transition(tracker, ReplyObserved(reply), settings)


def record_sentiment(tracker: HandoffTracker, sentiment: str, settings: Optional[DialogueSettings] = None) -> HandoffTracker:
    return transition(tracker, SentimentObserved(sentiment), settings)


def is_sentiment_declining(tracker: HandoffTracker) -> bool:
    if len(tracker.sentiment_history) < 3:
        return False
    first, middle, last = (SENTIMENT_SCORES.get(sample, 2) for sample in tracker.sentiment_history[-3:])
    return middle <= first and last <= middle and last < first


def risk_level(tracker: HandoffTracker, settings: Optional[DialogueSettings] = None) -> int:
    weights = (settings or get_settings()).handoff_risk_weights
    risk = 0
    if tracker.low_confidence_count >= 2:
        risk += weights.get("low_confidence", 0)
    if tracker.uncertain_response_count >= 2:
        risk += weights.get("uncertain_response", 0)
    if tracker.negative_sentiment_count >= 2:
        risk += weights.get("negative_sentiment", 0)
    if is_sentiment_declining(tracker):
        risk += weights.get("declining_sentiment", 0)
    return risk


@dataclass(frozen=True)
class HandoffDecision:
    needed: bool = False
    suggest_handoff: bool = False
    reason: Optional[str] = None
    confidence: float = 0.0
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needed": self.needed,
            "suggest_handoff": self.suggest_handoff,
            "reason": self.reason,
            "confidence": self.confidence,
            "message": self.message,
        }


NO_HANDOFF = HandoffDecision()


def _matches_any(patterns: tuple[re.Pattern[str], ...], message: str) -> bool:
    return any(pattern.search(message or "") for pattern in patterns)


def is_explicit_human_request(message: str) -> bool:
    return _matches_any(HUMAN_REQUEST_PATTERNS, message)


def detect_frustration(message: str) -> bool:
    return _matches_any(FRUSTRATION_PATTERNS, message)


def is_account_issue(message: str) -> bool:
    return _matches_any(ACCOUNT_ISSUE_PATTERNS, message)


def is_uncertain_reply(reply: str) -> bool:
    return _matches_any(UNCERTAIN_REPLY_PATTERNS, reply)


def evaluate_handoff(
    message: str,
    state: Optional[ConversationState],
    intent: IntentResult,
    tracker: HandoffTracker,
    settings: Optional[DialogueSettings] = None,
) -> tuple[HandoffDecision, HandoffTracker]:
    """Run the escalation checks in priority order; the first one that fires wins.

    Not idempotent: call once per user turn and persist the returned tracker.
    """
    settings = settings or get_settings()
    tracker = record_confidence(tracker, intent.confidence, settings)

    if is_explicit_human_request(message):
        return (
            HandoffDecision(True, False, HANDOFF_CUSTOMER_REQUEST, 1.0, "Customer explicitly requested human assistance"),
            tracker,
        )

    if is_account_issue(message):
        return (
            HandoffDecision(True, False, HANDOFF_ACCOUNT_ISSUE, 0.9, "Customer has order/account issue requiring human help"),
            tracker,
        )

    if detect_frustration(message):
        tracker = record_sentiment(tracker, "frustrated", settings)
        if tracker.negative_sentiment_count >= 2:
            return (
                HandoffDecision(True, False, HANDOFF_FRUSTRATION, 0.85, "Multiple frustration signals detected"),
                tracker,
            )
        return (
            HandoffDecision(False, True, HANDOFF_FRUSTRATION, 0.6, "Frustration detected - consider offering human support"),
            tracker,
        )

    if intent.sentiment in _NEGATIVE_SENTIMENTS:
        tracker = record_sentiment(tracker, intent.sentiment, settings)

    if tracker.low_confidence_count >= settings.handoff_low_confidence_limit:
        return (
            HandoffDecision(True, False, HANDOFF_LOW_CONFIDENCE, 0.8, "Multiple low-confidence responses"),
            tracker,
        )

    if tracker.uncertain_response_count >= settings.handoff_uncertain_limit:
        return (
            HandoffDecision(True, False, HANDOFF_REPEATED_FAILURE, 0.85, "Assistant has been unable to help multiple times"),
            tracker,
        )

    if is_sentiment_declining(tracker) and risk_level(tracker, settings) >= settings.handoff_risk_suggest:
        return (
            HandoffDecision(False, True, HANDOFF_FRUSTRATION, 0.7, "Customer sentiment is declining"),
            tracker,
        )

    if intent.llm_intent == "off_topic" or "off-topic" in (intent.reasoning or "").lower():
        return (
            HandoffDecision(False, True, HANDOFF_OFF_TOPIC, 0.6, "Query appears to be off-topic"),
            tracker,
        )

    return NO_HANDOFF, tracker


def _contact_string(contact: Optional[Mapping[str, Any]], language: str) -> str:
    parts = []
    if contact:
        email = contact.get("email")
        phone = contact.get("phone")
        if email:
            parts.append(text("contact.email", language, value=email))
        if phone:
            parts.append(text("contact.phone", language, value=phone))
    if not parts:
        return text("contact.fallback", language)
    return text("or", language).join(parts)


def handoff_message(
    reason: Optional[str],
    language: Optional[str] = None,
    contact: Optional[Mapping[str, Any]] = None,
) -> str:
    lang = resolve_language(language)
    key = f"handoff.{reason}"
    if reason not in (
        HANDOFF_CUSTOMER_REQUEST,
        HANDOFF_ACCOUNT_ISSUE,
        HANDOFF_FRUSTRATION,
        HANDOFF_LOW_CONFIDENCE,
        HANDOFF_REPEATED_FAILURE,
        HANDOFF_OFF_TOPIC,
    ):
        key = f"handoff.{HANDOFF_CUSTOMER_REQUEST}"
    return text(key, lang, contact=_contact_string(contact, lang))


def soft_handoff_suggestion(language: Optional[str] = None) -> str:
    return text("handoff.soft_suggestion", resolve_language(language))


def load_tracker(conversation_id: str, cache: Optional[CacheClient] = None) -> HandoffTracker:
    cache = cache or get_cache()
    try:
        raw = cache.get_json(f"{TRACKER_KEY_PREFIX}{conversation_id}")
    except Exception as exc:
        logger.warning("handoff tracker load failed: %s", exc)
        metrics.inc("sc_handoff_tracker_errors_total", {"op": "load"})
        return HandoffTracker()
    return HandoffTracker.from_dict(raw)


def save_tracker(
    conversation_id: str,
    tracker: HandoffTracker,
    cache: Optional[CacheClient] = None,
    settings: Optional[DialogueSettings] = None,
) -> bool:
    cache = cache or get_cache()
    ttl = (settings or get_settings()).tracker_ttl_sec
    try:
        cache.set_json(f"{TRACKER_KEY_PREFIX}{conversation_id}", tracker.to_dict(), ttl=ttl)
    except Exception as exc:
        logger.warning("handoff tracker save failed: %s", exc)
        metrics.inc("sc_handoff_tracker_errors_total", {"op": "save"})
        return False
    return True


def clear_tracker(conversation_id: str, cache: Optional[CacheClient] = None) -> None:
    cache = cache or get_cache()
    try:
        cache.delete(f"{TRACKER_KEY_PREFIX}{conversation_id}")
    except Exception as exc:
        logger.warning("handoff tracker clear failed: %s", exc)
        metrics.inc("sc_handoff_tracker_errors_total", {"op": "clear"})
