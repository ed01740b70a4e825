from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from storefront_chat.core.conversation import ROLE_ASSISTANT, ROLE_USER, Message
from storefront_chat.core.intent_classifier import IntentResult
from storefront_chat.core.intent_rules import (
    INTENT_AFFIRMATIVE,
    INTENT_COMPARE,
    INTENT_CONTACT,
    INTENT_DECISION_HELP,
    INTENT_FOLLOWUP,
    INTENT_GOODBYE,
    INTENT_NEGATIVE,
    INTENT_PRICE_CHECK,
    INTENT_PRODUCT_INFO,
    INTENT_PURCHASE,
    INTENT_RETURNS,
    INTENT_SHIPPING,
    INTENT_THANKS,
)
from storefront_chat.core.localization import join_list, resolve_language, text

STAGE_EXPLORING = "exploring"
STAGE_INTERESTED = "interested"
STAGE_COMPARING = "comparing"
STAGE_DECIDING = "deciding"
STAGE_READY_TO_BUY = "ready_to_buy"
STAGE_SEEKING_HELP = "seeking_help"
STAGE_CLOSING = "closing"

JOURNEY_STAGES = (
    STAGE_EXPLORING,
    STAGE_INTERESTED,
    STAGE_COMPARING,
    STAGE_DECIDING,
    STAGE_READY_TO_BUY,
    STAGE_SEEKING_HELP,
    STAGE_CLOSING,
)

QUESTION_OFFER = "offer"
QUESTION_PREFERENCE = "preference"
QUESTION_CLARIFICATION = "clarification"
QUESTION_BUDGET = "budget"
QUESTION_GIFT_INQUIRY = "gift_inquiry"
QUESTION_GENERAL = "general"

FOLLOWUP_QUESTION_RESPONSE = "question_response"
FOLLOWUP_PRODUCT_CONFIRMATION = "product_confirmation"
FOLLOWUP_PRODUCT_REJECTION = "product_rejection"
FOLLOWUP_PRODUCT = "product_followup"
FOLLOWUP_CONTINUATION = "continuation"

SENTIMENT_POSITIVE = "positive"
SENTIMENT_NEUTRAL = "neutral"
SENTIMENT_NEGATIVE = "negative"

_STAGE_BY_INTENT = {
    INTENT_PURCHASE: STAGE_READY_TO_BUY,
    INTENT_CONTACT: STAGE_SEEKING_HELP,
    INTENT_SHIPPING: STAGE_SEEKING_HELP,
    INTENT_RETURNS: STAGE_SEEKING_HELP,
    INTENT_GOODBYE: STAGE_CLOSING,
    INTENT_THANKS: STAGE_CLOSING,
    INTENT_COMPARE: STAGE_COMPARING,
    INTENT_DECISION_HELP: STAGE_DECIDING,
}
_DECIDING_INTENTS = {INTENT_PRODUCT_INFO, INTENT_PRICE_CHECK}

_PRODUCT_MARKER_RE = re.compile(r"\{\{([^}]+)\}\}")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_ASK_VERB_RE = re.compile(
    r"\b(vill du|ska jag|kan jag|berätta gärna|låt mig veta|would you like|shall i|can i|do you want|"
    r"let me know|tell me)\b",
    re.IGNORECASE,
)

_QUESTION_TYPE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        QUESTION_OFFER,
        re.compile(
            r"\b(vill du (att jag|ha|se)|ska jag|kan jag visa|would you like|shall i|want me to|can i show)\b",
            re.IGNORECASE,
        ),
    ),
    (
        QUESTION_PREFERENCE,
        re.compile(
            r"\b(föredrar|prefer|gillar du|do you like|vilken (färg|stil|typ|storlek)|"
            r"which (colou?r|style|type|size))\b",
            re.IGNORECASE,
        ),
    ),
    (
        QUESTION_CLARIFICATION,
        re.compile(
            r"\b(menar du|vad menar|kan du förtydliga|mer specifik|do you mean|what do you mean|"
            r"could you clarify|more specific)\b",
            re.IGNORECASE,
        ),
    ),
    (
        QUESTION_BUDGET,
        re.compile(r"\b(budget|prisklass|prisnivå|price range|how much .*spend|hur mycket .*lägga)\b", re.IGNORECASE),
    ),
    (
        QUESTION_GIFT_INQUIRY,
        re.compile(
            r"\b(present|gift|gåva|till vem|vem är|who is it for|for whom|occasion|tillfälle)\b",
            re.IGNORECASE,
        ),
    ),
)

_AMOUNT_RE = re.compile(r"(\d+)\s*(kronor|kr|sek|\$|€|usd|eur)(?!\w)|(\$|€)\s*(\d+)", re.IGNORECASE)
_CURRENCIES = {"kr": "SEK", "sek": "SEK", "kronor": "SEK", "$": "USD", "usd": "USD", "€": "EUR", "eur": "EUR"}
_BUDGET_FRAMING_RE = re.compile(r"\b(billig\w*|budget|prisvärd\w*|cheap|affordable|inexpensive)\b", re.IGNORECASE)
_PREMIUM_FRAMING_RE = re.compile(r"\b(premium|exklusiv\w*|lyx\w*|luxury|high-end|finaste|best quality)\b", re.IGNORECASE)
_GIFT_RE = re.compile(r"\b(present|presenter|gift|gåva|gåvor)\b", re.IGNORECASE)
_RECIPIENT_RE = re.compile(
    r"\b(mom|mamma|dad|pappa|friend|vän|väninna|wife|fru|husband|girlfriend|flickvän|boyfriend|pojkvän|"
    r"partner|son|daughter|dotter|sister|syster|brother|bror|myself|mig själv)\b",
    re.IGNORECASE,
)
_INTEREST_RE = re.compile(
    r"\b(meditation|healing|yoga|decoration|dekoration|inredning|collection|samling|jewelry|smycken|"
    r"crystals?|kristaller|stenar|candles?|ljus|books?|böcker)\b",
    re.IGNORECASE,
)

_POSITIVE_WORDS = (
    "tack", "bra", "perfekt", "toppen", "älskar", "fint", "underbar", "jättebra", "great", "perfect",
    "love", "thanks", "awesome", "nice", "wonderful", "excellent",
)
_NEGATIVE_WORDS = (
    "dålig", "dyrt", "för dyr", "inte bra", "frustrer", "irriter", "besvik", "värdelös", "hatar",
    "bad", "terrible", "disappointed", "annoying", "useless", "hate", "too expensive", "awful",
)


@dataclass(frozen=True)
class PriceRange:
    amount: Optional[int] = None
    currency: Optional[str] = None
    framing: Optional[str] = None

    def describe(self) -> Optional[str]:
        if self.amount is not None:
            return f"{self.amount} {self.currency}" if self.currency else str(self.amount)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {"amount": self.amount, "currency": self.currency, "framing": self.framing}


@dataclass(frozen=True)
class Preferences:
    price_range: Optional[PriceRange] = None
    for_whom: Optional[str] = None
    is_gift: bool = False
    interests: tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price_range": self.price_range.to_dict() if self.price_range else None,
            "for_whom": self.for_whom,
            "is_gift": self.is_gift,
            "interests": list(self.interests),
        }


@dataclass(frozen=True)
class FollowUp:
    type: str
    explanation: str
    referent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "explanation": self.explanation, "referent": self.referent}


@dataclass(frozen=True)
class HistoryContext:
    turn_count: int = 0
    last_products: tuple[str, ...] = ()
    all_products_discussed: Dict[str, int] = field(default_factory=dict)
    last_question: Optional[str] = None
    last_question_type: Optional[str] = None
    last_assistant_message: str = ""


@dataclass(frozen=True)
class ConversationState:
    journey_stage: str
    turn_count: int
    all_products_discussed: Dict[str, int]
    last_products: tuple[str, ...]
    last_question: Optional[str]
    last_question_type: Optional[str]
    preferences: Preferences
    user_sentiment: str
    context_summary: str
    follow_up: Optional[FollowUp]
    language: str
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "journey_stage": self.journey_stage,
            "turn_count": self.turn_count,
            "all_products_discussed": dict(self.all_products_discussed),
            "last_products": list(self.last_products),
            "last_question": self.last_question,
            "last_question_type": self.last_question_type,
            "preferences": self.preferences.to_dict(),
            "user_sentiment": self.user_sentiment,
            "context_summary": self.context_summary,
            "follow_up": self.follow_up.to_dict() if self.follow_up else None,
            "language": self.language,
            "message_count": self.message_count,
        }


def _products_in(message: Message) -> List[str]:
    found: List[str] = []
    for product in message.products_shown:
        if product not in found:
            found.append(product)
    for marker in _PRODUCT_MARKER_RE.findall(message.content or ""):
        name = marker.strip()
        if name and name not in found:
            found.append(name)
    return found


def _question_type(sentence: str) -> str:
    for question_type, pattern in _QUESTION_TYPE_RULES:
        if pattern.search(sentence):
            return question_type
    return QUESTION_GENERAL


def extract_last_question(message: Optional[Message]) -> tuple[Optional[str], Optional[str]]:
    """Return the pending question of an assistant turn and its type, or (None, None)."""
    if message is None or message.role != ROLE_ASSISTANT:
        return None, None
    content = (message.content or "").strip()
    if not content:
        return None, None
    has_mark = "?" in content
    if not has_mark and not _ASK_VERB_RE.search(content):
        return None, None
    sentences = [sentence.strip() for sentence in _SENTENCE_SPLIT_RE.split(content) if sentence.strip()]
    question: Optional[str] = None
    for sentence in reversed(sentences):
        if (has_mark and "?" in sentence) or (not has_mark and _ASK_VERB_RE.search(sentence)):
            question = sentence
            break
    if question is None:
        return None, None
    return question, _question_type(question)


def summarize_history(history: Sequence[Message]) -> HistoryContext:
    counts: Dict[str, int] = {}
    last_products: List[str] = []
    last_assistant: Optional[Message] = None
    for message in history:
        if message.role != ROLE_ASSISTANT:
            continue
        last_assistant = message
        shown = _products_in(message)
        for product in shown:
            counts[product] = counts.get(product, 0) + 1
        if shown:
            last_products = shown
    question, question_type = extract_last_question(last_assistant)
    return HistoryContext(
        turn_count=len(history) // 2,
        last_products=tuple(last_products),
        all_products_discussed=counts,
        last_question=question,
        last_question_type=question_type,
        last_assistant_message=last_assistant.content if last_assistant else "",
    )


def extract_preferences(user_texts: Sequence[str]) -> Preferences:
    amount: Optional[int] = None
    currency: Optional[str] = None
    framing: Optional[str] = None
    for_whom: Optional[str] = None
    is_gift = False
    interests: List[str] = []
    for content in user_texts:
        lowered = (content or "").lower()
        amount_match = _AMOUNT_RE.search(lowered)
        if amount_match:
            if amount_match.group(1):
                amount = int(amount_match.group(1))
                currency = _CURRENCIES.get(amount_match.group(2).lower())
            else:
                amount = int(amount_match.group(4))
                currency = _CURRENCIES.get(amount_match.group(3))
        if _PREMIUM_FRAMING_RE.search(lowered):
            framing = "premium"
        elif _BUDGET_FRAMING_RE.search(lowered):
            framing = "budget"
        if _GIFT_RE.search(lowered):
            is_gift = True
        recipient = _RECIPIENT_RE.search(lowered)
        if recipient:
            for_whom = recipient.group(1)
        for interest in _INTEREST_RE.findall(lowered):
            if interest not in interests:
                interests.append(interest)
    price_range = PriceRange(amount, currency, framing) if amount is not None or framing else None
    return Preferences(price_range=price_range, for_whom=for_whom, is_gift=is_gift, interests=tuple(interests))


def _turn_sentiment(content: str) -> str:
    lowered = (content or "").lower()
    positive = sum(1 for word in _POSITIVE_WORDS if word in lowered)
    negative = sum(1 for word in _NEGATIVE_WORDS if word in lowered)
    if positive > negative:
        return SENTIMENT_POSITIVE
    if negative > positive:
        return SENTIMENT_NEGATIVE
    return SENTIMENT_NEUTRAL


def user_sentiment(user_texts: Sequence[str]) -> str:
    votes = [_turn_sentiment(content) for content in user_texts]
    positive = votes.count(SENTIMENT_POSITIVE)
    negative = votes.count(SENTIMENT_NEGATIVE)
    if positive > negative:
        return SENTIMENT_POSITIVE
    if negative > positive:
        return SENTIMENT_NEGATIVE
    return SENTIMENT_NEUTRAL


def journey_stage(intent: str, products_discussed: int, turn_count: int) -> str:
    if intent in _STAGE_BY_INTENT:
        return _STAGE_BY_INTENT[intent]
    if products_discussed == 0:
        return STAGE_EXPLORING
    if products_discussed >= 2:
        return STAGE_COMPARING
    if turn_count >= 3 and intent in _DECIDING_INTENTS:
        return STAGE_DECIDING
    return STAGE_INTERESTED


def follow_up_context(
    intent: str,
    last_products: Sequence[str],
    last_question: Optional[str],
    language: str,
) -> Optional[FollowUp]:
    latest = last_products[-1] if last_products else None
    recent = join_list(list(last_products[-2:]), language) if last_products else None
    if intent == INTENT_AFFIRMATIVE:
        if last_question:
            return FollowUp(
                FOLLOWUP_QUESTION_RESPONSE,
                text("followup.yes_to_question", language, referent=last_question),
                last_question,
            )
        if latest:
            return FollowUp(
                FOLLOWUP_PRODUCT_CONFIRMATION,
                text("followup.product_confirmation", language, referent=latest),
                latest,
            )
    if intent == INTENT_NEGATIVE:
        if latest:
            return FollowUp(
                FOLLOWUP_PRODUCT_REJECTION,
                text("followup.product_rejection", language, referent=latest),
                latest,
            )
        if last_question:
            return FollowUp(
                FOLLOWUP_QUESTION_RESPONSE,
                text("followup.no_to_question", language, referent=last_question),
                last_question,
            )
    if intent == INTENT_PRODUCT_INFO and latest:
        return FollowUp(FOLLOWUP_PRODUCT, text("followup.product_followup", language, referent=recent), latest)
    if intent == INTENT_FOLLOWUP:
        if recent:
            return FollowUp(
                FOLLOWUP_CONTINUATION,
                text("followup.continuation_products", language, referent=recent),
                recent,
            )
        return FollowUp(FOLLOWUP_CONTINUATION, text("followup.continuation", language))
    return None


def _context_summary(
    last_products: Sequence[str],
    last_question: Optional[str],
    preferences: Preferences,
    stage: str,
    sentiment: str,
    follow_up: Optional[FollowUp],
    language: str,
) -> str:
    parts: List[str] = []
    if last_products:
        parts.append(text("summary.products", language, products=join_list(list(last_products[-3:]), language)))
    if last_question:
        parts.append(text("summary.question", language, question=last_question))
    price_range = preferences.price_range
    if price_range is not None:
        budget = price_range.describe()
        if budget:
            parts.append(text("summary.budget", language, budget=budget))
        if price_range.framing:
            parts.append(text("summary.framing", language, framing=price_range.framing))
    if preferences.is_gift and preferences.for_whom:
        parts.append(text("summary.gift_for", language, recipient=preferences.for_whom))
    elif preferences.is_gift:
        parts.append(text("summary.gift", language))
    elif preferences.for_whom:
        parts.append(text("summary.for_whom", language, recipient=preferences.for_whom))
    if preferences.interests:
        parts.append(text("summary.interests", language, interests=join_list(list(preferences.interests), language)))
    parts.append(text("summary.stage", language, stage=text(f"stage.{stage}", language)))
    if sentiment != SENTIMENT_NEUTRAL:
        parts.append(text("summary.sentiment", language, sentiment=sentiment))
    if follow_up is not None:
        parts.append(follow_up.explanation)
    return " | ".join(parts)


def build_conversation_state(
    history: Sequence[Message],
    current_message: str,
    intent: IntentResult,
    language: Optional[str] = None,
) -> ConversationState:
    """Reduce the message history plus the classified current message into a ConversationState.

    Pure: identical inputs always yield an identical state.
    """
    lang = resolve_language(language)
    context = summarize_history(history)
    user_texts = [message.content for message in history if message.role == ROLE_USER]
    user_texts.append(current_message or "")
    preferences = extract_preferences(user_texts)
    sentiment = user_sentiment(user_texts)
    stage = journey_stage(intent.primary, len(context.all_products_discussed), context.turn_count)
    follow_up = follow_up_context(intent.primary, context.last_products, context.last_question, lang)
    summary = _context_summary(
        context.last_products,
        context.last_question,
        preferences,
        stage,
        sentiment,
        follow_up,
        lang,
    )
    return ConversationState(
        journey_stage=stage,
        turn_count=context.turn_count,
        all_products_discussed=dict(context.all_products_discussed),
        last_products=context.last_products,
        last_question=context.last_question,
        last_question_type=context.last_question_type,
        preferences=preferences,
        user_sentiment=sentiment,
        context_summary=summary,
        follow_up=follow_up,
        language=lang,
        message_count=len(history),
    )
