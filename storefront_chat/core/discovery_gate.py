"""Discovery gate: decides when the assistant has learned enough to show products.

Recommending too early is blocked structurally. The generation layer only sees
catalog items once the gate opens, and product markers written before that are
stripped from the reply.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from storefront_chat.core.conversation import ROLE_USER, Message
from storefront_chat.core.conversation_state import ConversationState
from storefront_chat.core.intent_classifier import IntentResult
from storefront_chat.core.intent_rules import (
    INTENT_AFFIRMATIVE,
    INTENT_AVAILABILITY,
    INTENT_COMPARE,
    INTENT_CONTACT,
    INTENT_GOODBYE,
    INTENT_GREETING,
    INTENT_PRICE_CHECK,
    INTENT_PRODUCT_INFO,
    INTENT_PURCHASE,
    INTENT_RETURNS,
    INTENT_SHIPPING,
    INTENT_THANKS,
)
from storefront_chat.core.localization import resolve_language, text
from storefront_chat.core.metrics import metrics
from storefront_chat.core.settings import DialogueSettings, get_settings

logger = logging.getLogger(__name__)

REASON_MINIMUM_EXCHANGES = "minimum_exchanges"
REASON_INSUFFICIENT_NEEDS = "insufficient_needs"
REASON_TURN_COUNT_OVERRIDE = "turn_count_override"
REASON_DISCOVERY_COMPLETE = "discovery_complete"
REASON_EXCLUDED_INTENT = "excluded_intent"
REASON_EXPLICIT_PRODUCT_INTENT = "explicit_product_intent"
REASON_PURCHASE_INTENT = "purchase_intent"
REASON_PRODUCT_CONFIRMATION = "product_confirmation"
REASON_DISCOVERY_INCOMPLETE = "discovery_incomplete"
REASON_NO_PRODUCTS_IN_RESPONSE = "no_products_in_response"

EXPLICIT_PRODUCT_INTENTS = frozenset(
    {INTENT_PRODUCT_INFO, INTENT_PRICE_CHECK, INTENT_AVAILABILITY, INTENT_PURCHASE, INTENT_COMPARE}
)
NO_PRODUCT_INTENTS = frozenset(
    {INTENT_GREETING, INTENT_THANKS, INTENT_GOODBYE, INTENT_CONTACT, INTENT_SHIPPING, INTENT_RETURNS}
)

OVERRIDE_WARNING = "Customer hasn't expressed clear needs despite many exchanges"

_MARKER_RE = re.compile(r"\{\{([^}]+)\}\}")
_MARKER_STRIP_RE = re.compile(r"\s*\{\{[^}]+\}\}")
_PROMPTED_NEEDS = ("recipient", "occasion", "budget", "preference")


@dataclass(frozen=True)
class NeedsSignal:
    category: str
    weight: int
    pattern: re.Pattern[str]


def _signal(category: str, weight: int, pattern: str) -> NeedsSignal:
    return NeedsSignal(category=category, weight=weight, pattern=re.compile(pattern, re.IGNORECASE))


NEEDS_SIGNALS: tuple[NeedsSignal, ...] = (
    _signal("purpose", 2, r"present|gift|gåva"),
    _signal("recipient", 2, r"for (my|a|an|the|min|mitt|mina|en|ett)\s+\w+"),
    _signal(
        "recipient",
        2,
        r"\b(mom|mamma|dad|pappa|friend|vän|wife|fru|husband|man|girlfriend|boyfriend|partner|son|daughter|"
        r"dotter|barn|child)\b",
    ),
    _signal("recipient", 1, r"myself|mig själv|åt mig"),
    _signal(
        "occasion",
        2,
        r"birthday|christmas|wedding|anniversary|valentine|mother'?s day|father'?s day|jul|födelsedag|bröllop|"
        r"årsdag|graduation|exam",
    ),
    _signal("budget", 3, r"budget|under \d+|max(imum)? \d+|around \d+|cirka \d+|ungefär \d+|runt \d+"),
    _signal("budget", 2, r"\d+\s*(kr|sek|kronor|\$|€|euro)"),
    _signal("budget", 1, r"cheap|billig|expensive|dyr|afford|råd"),
    _signal("preference", 1, r"colou?r|färg|size|storlek|style|stil|type|typ|sort|kind"),
    _signal("preference", 1, r"prefer|föredrar|like|gillar|love|älskar|want|vill ha|looking for|letar efter"),
    _signal("preference", 1, r"small|liten|big|stor|medium|large|tiny|huge"),
    _signal(
        "usecase",
        2,
        r"meditation|healing|decoration|dekoration|collection|samling|everyday|vardag|spiritual|andlig",
    ),
    _signal("experience", 2, r"beginner|nybörjare|first time|första gången|experienced|erfaren|advanced|expert"),
    _signal("location", 1, r"home|hemma|office|kontor|bedroom|sovrum|living room|vardagsrum|garden|trädgård"),
    _signal(
        "category",
        1,
        r"crystal|kristall|stone|sten|jewelry|smycke|necklace|halsband|bracelet|armband|ring",
    ),
)


@dataclass(frozen=True)
class MatchedSignal:
    category: str
    weight: int

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "weight": self.weight}


@dataclass(frozen=True)
class NeedsAssessment:
    score: int
    matched_signals: tuple[MatchedSignal, ...] = ()
    categories: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "matched_signals": [signal.to_dict() for signal in self.matched_signals],
            "categories": sorted(self.categories),
        }


@dataclass(frozen=True)
class DiscoveryStatus:
    complete: bool
    reason: str
    turn_count: int
    needs: NeedsAssessment
    override: bool = False
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "complete": self.complete,
            "reason": self.reason,
            "turn_count": self.turn_count,
            "needs": self.needs.to_dict(),
            "override": self.override,
            "warning": self.warning,
        }


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: str
    bypass_discovery: bool = False
    suppress_cards: bool = False
    response: Optional[str] = None
    discovery: Optional[DiscoveryStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "bypass_discovery": self.bypass_discovery,
            "suppress_cards": self.suppress_cards,
            "discovery": self.discovery.to_dict() if self.discovery else None,
        }


def _user_texts(history: Sequence[Message], current_message: str) -> List[str]:
    texts = [message.content for message in history if message.role == ROLE_USER]
    if current_message:
        texts.append(current_message)
    return texts


def assess_needs(history: Sequence[Message], current_message: str = "") -> NeedsAssessment:
    """Score the signal table against every user message.

    Each signal counts once if any single user message matches it, so adding
    messages can only add matches.
    """
    texts = _user_texts(history, current_message)
    score = 0
    matched: List[MatchedSignal] = []
    categories: set[str] = set()
    for signal in NEEDS_SIGNALS:
        if any(signal.pattern.search(content or "") for content in texts):
            score += signal.weight
            matched.append(MatchedSignal(signal.category, signal.weight))
            categories.add(signal.category)
    return NeedsAssessment(score=score, matched_signals=tuple(matched), categories=frozenset(categories))


def is_discovery_complete(
    state: ConversationState,
    history: Sequence[Message] = (),
    current_message: str = "",
    settings: Optional[DialogueSettings] = None,
) -> DiscoveryStatus:
    settings = settings or get_settings()
    turn_count = state.turn_count
    needs = assess_needs(history, current_message)

    if turn_count < settings.min_exchanges:
        return DiscoveryStatus(False, REASON_MINIMUM_EXCHANGES, turn_count, needs)

    if needs.score < settings.min_needs_score:
        if turn_count < settings.needs_score_override_turn:
            return DiscoveryStatus(False, REASON_INSUFFICIENT_NEEDS, turn_count, needs)
        logger.warning(
            "discovery gate override: turn_count=%s needs_score=%s min_needs_score=%s",
            turn_count,
            needs.score,
            settings.min_needs_score,
        )
        metrics.inc("sc_discovery_override_total")
        return DiscoveryStatus(
            True,
            REASON_TURN_COUNT_OVERRIDE,
            turn_count,
            needs,
            override=True,
            warning=OVERRIDE_WARNING,
        )

    return DiscoveryStatus(True, REASON_DISCOVERY_COMPLETE, turn_count, needs)


def should_include_products_in_context(
    state: ConversationState,
    intent: IntentResult,
    history: Sequence[Message] = (),
    current_message: str = "",
    settings: Optional[DialogueSettings] = None,
) -> GateDecision:
    if intent.primary in NO_PRODUCT_INTENTS:
        return GateDecision(False, REASON_EXCLUDED_INTENT)
    if intent.primary in EXPLICIT_PRODUCT_INTENTS:
        return GateDecision(True, REASON_EXPLICIT_PRODUCT_INTENT, bypass_discovery=True)
    discovery = is_discovery_complete(state, history, current_message, settings)
    return GateDecision(discovery.complete, discovery.reason, discovery=discovery)


def should_allow_product_cards(
    state: ConversationState,
    intent: IntentResult,
    response: str,
    history: Sequence[Message] = (),
    current_message: str = "",
    settings: Optional[DialogueSettings] = None,
) -> GateDecision:
    if intent.primary == INTENT_PURCHASE:
        return GateDecision(True, REASON_PURCHASE_INTENT, response=response)
    if intent.primary == INTENT_AFFIRMATIVE and state.last_products:
        return GateDecision(True, REASON_PRODUCT_CONFIRMATION, response=response)
    if intent.primary in EXPLICIT_PRODUCT_INTENTS:
        return GateDecision(True, REASON_EXPLICIT_PRODUCT_INTENT, bypass_discovery=True, response=response)

    discovery = is_discovery_complete(state, history, current_message, settings)
    if discovery.complete:
        return GateDecision(True, discovery.reason, response=response, discovery=discovery)

    if _MARKER_RE.search(response or ""):
        logger.warning(
            "suppressing premature product cards: turn_count=%s needs_score=%s",
            state.turn_count,
            discovery.needs.score,
        )
        metrics.inc("sc_cards_suppressed_total", {"reason": discovery.reason})
        return GateDecision(
            False,
            REASON_DISCOVERY_INCOMPLETE,
            suppress_cards=True,
            response=strip_product_markers(response),
            discovery=discovery,
        )
    return GateDecision(True, REASON_NO_PRODUCTS_IN_RESPONSE, response=response, discovery=discovery)


def strip_product_markers(response: str) -> str:
    return _MARKER_STRIP_RE.sub("", response or "").strip()


def extract_product_markers(response: str) -> List[str]:
    titles: List[str] = []
    for marker in _MARKER_RE.findall(response or ""):
        title = marker.strip()
        if title and title not in titles:
            titles.append(title)
    return titles


def missing_needs(categories: frozenset[str] | set[str]) -> List[str]:
    return [category for category in _PROMPTED_NEEDS if category not in categories]


def discovery_prompt_addition(
    status: DiscoveryStatus,
    language: Optional[str] = None,
    settings: Optional[DialogueSettings] = None,
) -> str:
    if status.complete:
        return ""
    lang = resolve_language(language)
    if status.reason == REASON_MINIMUM_EXCHANGES:
        return text(
            "discovery.minimum_exchanges",
            lang,
            turn_count=status.turn_count,
            min_exchanges=(settings or get_settings()).min_exchanges,
        )
    if status.reason == REASON_INSUFFICIENT_NEEDS:
        missing = [text(f"needs.{category}", lang) for category in missing_needs(status.needs.categories)[:2]]
        return text("discovery.insufficient_needs", lang, missing=text("or", lang).join(missing))
    return ""
