from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from storefront_chat.core.intent_rules import (
    INTENT_AFFIRMATIVE,
    INTENT_DESCRIPTIONS,
    INTENT_GOODBYE,
    INTENT_NEGATIVE,
    INTENT_PRICE_CHECK,
    INTENT_PRODUCT_INFO,
    INTENT_PURCHASE,
    INTENT_RULES,
    INTENT_THANKS,
    INTENT_UNCLEAR,
    LLM_INTENT_MAP,
    RULES_BY_INTENT,
)
from storefront_chat.core.llm_client import CompletionClient, CompletionError, parse_json_reply
from storefront_chat.core.metrics import metrics
from storefront_chat.core.settings import DialogueSettings, get_settings

logger = logging.getLogger(__name__)

SOURCE_REGEX = "regex"
SOURCE_LLM = "llm"
SOURCE_REGEX_FALLBACK = "regex_fallback"

PATTERN_SCORE = 10
KEYWORD_SCORE = 3
CONTEXT_BOOST = 3
NO_CONTEXT_CAP = 5
SHORT_MESSAGE_WORDS = 2
SHORT_MESSAGE_CONFIDENCE = 10
AMBIGUOUS_SPREAD = 3
LONG_MESSAGE_WORDS = 15
DEFAULT_LLM_CONFIDENCE = 0.5

_BOOSTED_WITH_PRODUCTS = {INTENT_PRODUCT_INFO, INTENT_PRICE_CHECK, INTENT_PURCHASE, INTENT_AFFIRMATIVE}
_CONTEXT_LABELS = {"affirmative", "negative", "soft_affirmative", "soft_negative"}
_TERMINAL_LABELS = {INTENT_THANKS, INTENT_GOODBYE}
_CONJUNCTION_RE = re.compile(r"\b(and|och|but|men)\b", re.IGNORECASE)
_SENTIMENTS = {"positive", "neutral", "negative", "frustrated"}

_LLM_SYSTEM_PROMPT = (
    "You are an expert at understanding customer intent in e-commerce conversations. "
    "Always respond with valid JSON only, no markdown."
)

_LLM_INTENT_MENU = """Available intents:
- greeting: Hello, hi, hey
- browse: Want to look around, see what's available
- search: Looking for something specific
- product_info: Asking about product details
- compare: Comparing products
- price_check: Asking about price
- availability: Asking if something is in stock
- recommendation: Want suggestions
- decision_help: Need help choosing
- purchase: Ready to buy
- contact: Want contact information
- shipping: Asking about delivery
- returns: Asking about returns/refunds
- affirmative: Yes, confirming something
- negative: No, declining something
- soft_affirmative: Maybe, possibly interested
- soft_negative: Uncertain, hesitant
- price_objection: Finding something too expensive
- followup: Want more information
- thanks: Thanking
- goodbye: Leaving
- off_topic: Not related to shopping
- complaint: Unhappy about something
- urgency: Time-sensitive need
- unclear: Cannot determine intent

Respond with JSON only:
{
  "primary_intent": "intent_name",
  "secondary_intent": "intent_name_or_null",
  "confidence": 0.0-1.0,
  "entities": {
    "product_mentioned": "product name or null",
    "price_mentioned": "price or null",
    "time_constraint": "deadline or null"
  },
  "sentiment": "positive|neutral|negative|frustrated",
  "reasoning": "brief explanation"
}"""


@dataclass(frozen=True)
class IntentMatch:
    intent: str
    score: int

    def to_dict(self) -> Dict[str, Any]:
        return {"intent": self.intent, "score": self.score}


@dataclass(frozen=True)
class IntentResult:
    primary: str
    secondary: Optional[str] = None
    confidence: int = 0
    all_matches: tuple[IntentMatch, ...] = ()
    requires_context: bool = False
    is_terminal: bool = False
    source: str = SOURCE_REGEX
    llm_intent: Optional[str] = None
    llm_confidence: Optional[float] = None
    sentiment: Optional[str] = None
    reasoning: str = ""
    entities: Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.source == SOURCE_REGEX_FALLBACK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": self.primary,
            "secondary": self.secondary,
            "confidence": self.confidence,
            "all_matches": [match.to_dict() for match in self.all_matches],
            "requires_context": self.requires_context,
            "is_terminal": self.is_terminal,
            "source": self.source,
            "llm_intent": self.llm_intent,
            "llm_confidence": self.llm_confidence,
            "sentiment": self.sentiment,
            "reasoning": self.reasoning,
            "entities": dict(self.entities),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "IntentResult":
        matches = tuple(
            IntentMatch(intent=str(item.get("intent")), score=int(item.get("score") or 0))
            for item in raw.get("all_matches") or []
            if isinstance(item, dict)
        )
        llm_confidence = raw.get("llm_confidence")
        return cls(
            primary=str(raw.get("primary") or INTENT_UNCLEAR),
            secondary=raw.get("secondary"),
            confidence=int(raw.get("confidence") or 0),
            all_matches=matches,
            requires_context=bool(raw.get("requires_context")),
            is_terminal=bool(raw.get("is_terminal")),
            source=str(raw.get("source") or SOURCE_REGEX),
            llm_intent=raw.get("llm_intent"),
            llm_confidence=float(llm_confidence) if isinstance(llm_confidence, (int, float)) else None,
            sentiment=raw.get("sentiment"),
            reasoning=str(raw.get("reasoning") or ""),
            entities=dict(raw.get("entities") or {}),
        )


def classify_intent(
    message: str,
    *,
    last_question: Optional[str] = None,
    last_products: Sequence[str] = (),
) -> IntentResult:
    """Score every rule against the message and pick the strongest.

    A rule scores +10 if any of its patterns match (counted once) and +3 for each
    keyword contained in the lowercased message. Ties keep rule order.
    """
    lowered = (message or "").lower().strip()
    matches: List[IntentMatch] = []
    for rule in INTENT_RULES:
        score = 0
        for pattern in rule.patterns:
            if pattern.search(lowered):
                score += PATTERN_SCORE
                break
        for keyword in rule.all_keywords():
            if keyword in lowered:
                score += KEYWORD_SCORE
        if score > 0:
            matches.append(IntentMatch(intent=rule.intent, score=score))
    matches.sort(key=lambda match: match.score, reverse=True)

    primary = matches[0].intent if matches else INTENT_UNCLEAR
    confidence = matches[0].score if matches else 0
    secondary = matches[1].intent if len(matches) > 1 else None

    if primary in (INTENT_AFFIRMATIVE, INTENT_NEGATIVE) and not last_question and not last_products:
        confidence = min(confidence, NO_CONTEXT_CAP)
    if last_products and primary in _BOOSTED_WITH_PRODUCTS:
        confidence += CONTEXT_BOOST

    rule = RULES_BY_INTENT.get(primary)
    return IntentResult(
        primary=primary,
        secondary=secondary,
        confidence=confidence,
        all_matches=tuple(matches),
        requires_context=rule.requires_context if rule else False,
        is_terminal=rule.is_terminal if rule else False,
        source=SOURCE_REGEX,
    )


def should_use_llm(result: IntentResult, message: str, settings: Optional[DialogueSettings] = None) -> bool:
    settings = settings or get_settings()
    if result.primary == INTENT_UNCLEAR:
        return True
    if result.confidence < settings.llm_fallback_confidence:
        return True
    word_count = len((message or "").split())
    if word_count <= SHORT_MESSAGE_WORDS and result.confidence < SHORT_MESSAGE_CONFIDENCE:
        return True
    if len(result.all_matches) >= 3:
        if result.all_matches[0].score - result.all_matches[2].score < AMBIGUOUS_SPREAD:
            return True
    if word_count > LONG_MESSAGE_WORDS and "?" in message and _CONJUNCTION_RE.search(message):
        return True
    return False


def map_llm_intent(label: Any) -> str:
    if not isinstance(label, str) or not label.strip():
        return INTENT_UNCLEAR
    return LLM_INTENT_MAP.get(label.strip().lower(), INTENT_UNCLEAR)


def _llm_prompt(
    message: str,
    *,
    last_assistant_message: str,
    last_products: Sequence[str],
    last_question: Optional[str],
    turn_count: int,
) -> str:
    context: List[str] = []
    if last_assistant_message:
        context.append(f'Assistant just said: "{last_assistant_message[:200]}"')
    if last_products:
        context.append(f"Products discussed: {', '.join(list(last_products)[-3:])}")
    if last_question:
        context.append(f'Last question asked: "{last_question}"')
    if turn_count:
        context.append(f"Conversation turn: {turn_count}")
    context_block = "\nCONVERSATION CONTEXT:\n" + "\n".join(context) if context else ""
    return (
        f"Classify this customer message from an e-commerce chat.\n{context_block}\n\n"
        f'CUSTOMER MESSAGE: "{message}"\n\n{_LLM_INTENT_MENU}'
    )


async def classify_with_llm(
    message: str,
    client: CompletionClient,
    *,
    last_assistant_message: str = "",
    last_products: Sequence[str] = (),
    last_question: Optional[str] = None,
    turn_count: int = 0,
    settings: Optional[DialogueSettings] = None,
) -> Optional[IntentResult]:
    """Ask the completion service for a label. Returns None when nothing usable comes back."""
    settings = settings or get_settings()
    prompt = _llm_prompt(
        message,
        last_assistant_message=last_assistant_message,
        last_products=last_products,
        last_question=last_question,
        turn_count=turn_count,
    )
    messages = [
        {"role": "system", "content": _LLM_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
    ]
    try:
        content = await asyncio.wait_for(
            client.complete(messages, temperature=0.1, max_tokens=200),
            timeout=settings.llm_timeout_sec,
        )
    except asyncio.TimeoutError:
        logger.warning("llm intent classification timed out")
        metrics.inc("sc_intent_llm_total", {"result": "timeout"})
        return None
    except CompletionError as exc:
        logger.warning("llm intent classification failed: %s", exc.reason)
        metrics.inc("sc_intent_llm_total", {"result": "error"})
        return None
    except Exception as exc:
        logger.warning("llm intent classification failed: %s", exc)
        metrics.inc("sc_intent_llm_total", {"result": "error"})
        return None

    parsed = parse_json_reply(content)
    if parsed is None:
        metrics.inc("sc_intent_llm_total", {"result": "invalid_json"})
        return None

    raw_label = parsed.get("primary_intent")
    raw_confidence = parsed.get("confidence")
    if not isinstance(raw_confidence, (int, float)) or isinstance(raw_confidence, bool) or not raw_confidence:
        raw_confidence = DEFAULT_LLM_CONFIDENCE
    scaled = int(round(float(raw_confidence) * settings.llm_confidence_scale))
    primary = map_llm_intent(raw_label)
    secondary_label = parsed.get("secondary_intent")
    secondary = map_llm_intent(secondary_label) if secondary_label else None
    sentiment = parsed.get("sentiment")
    if not isinstance(sentiment, str) or sentiment.lower() not in _SENTIMENTS:
        sentiment = "neutral"
    entities = parsed.get("entities")
    label = raw_label.strip().lower() if isinstance(raw_label, str) else None
    metrics.inc("sc_intent_llm_total", {"result": "ok"})
    return IntentResult(
        primary=primary,
        secondary=secondary,
        confidence=scaled,
        all_matches=(IntentMatch(intent=primary, score=scaled),),
        requires_context=label in _CONTEXT_LABELS,
        is_terminal=label in _TERMINAL_LABELS,
        source=SOURCE_LLM,
        llm_intent=label,
        llm_confidence=float(raw_confidence),
        sentiment=sentiment.lower(),
        reasoning=str(parsed.get("reasoning") or ""),
        entities=entities if isinstance(entities, dict) else {},
    )


async def hybrid_classify(
    message: str,
    client: Optional[CompletionClient] = None,
    *,
    last_assistant_message: str = "",
    last_products: Sequence[str] = (),
    last_question: Optional[str] = None,
    turn_count: int = 0,
    settings: Optional[DialogueSettings] = None,
) -> IntentResult:
    """Regex first; ask the completion service only when the regex result is weak. Never raises."""
    settings = settings or get_settings()
    regex_result = classify_intent(message, last_question=last_question, last_products=last_products)
    if client is None or not should_use_llm(regex_result, message, settings):
        return regex_result

    logger.info(
        "regex intent %s confidence %s below threshold, trying llm", regex_result.primary, regex_result.confidence
    )
    llm_result = await classify_with_llm(
        message,
        client,
        last_assistant_message=last_assistant_message,
        last_products=last_products,
        last_question=last_question,
        turn_count=turn_count,
        settings=settings,
    )
    if llm_result is not None and llm_result.confidence >= settings.llm_min_confidence:
        return llm_result

    metrics.inc("sc_intent_degraded_total")
    return replace(regex_result, source=SOURCE_REGEX_FALLBACK)


def describe_intent(intent: str) -> str:
    return INTENT_DESCRIPTIONS.get(intent, "Unknown intent")


def llm_signals(result: IntentResult) -> Dict[str, Any]:
    if result.source != SOURCE_LLM:
        return {}
    signals: Dict[str, Any] = {}
    reasoning = result.reasoning.lower()
    if "expensive" in reasoning or "price" in reasoning or result.llm_intent == "price_objection":
        signals["price_objection"] = True
    time_constraint = result.entities.get("time_constraint")
    if time_constraint:
        signals["urgency"] = time_constraint
    if result.sentiment:
        signals["sentiment"] = result.sentiment
    product = result.entities.get("product_mentioned")
    if product:
        signals["product_mentioned"] = product
    return signals
