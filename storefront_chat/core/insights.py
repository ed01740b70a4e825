from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from storefront_chat.core.conversation import ROLE_USER, Message
from storefront_chat.core.llm_client import CompletionClient, parse_json_reply
from storefront_chat.core.metrics import metrics
from storefront_chat.core.settings import DialogueSettings, get_settings

logger = logging.getLogger(__name__)

INSIGHT_SENTIMENTS = ("positive", "neutral", "frustrated")
MIN_MESSAGES = 2
MAX_PRODUCT_NAMES = 100

INSIGHT_CONFIDENCE = {
    "product_interest": 0.9,
    "topic": 0.85,
    "sentiment": 0.8,
    "unresolved": 0.75,
}

_SYSTEM_PROMPT = (
    "You are an expert at analyzing customer conversations and extracting actionable insights. "
    "Always respond with valid JSON only."
)

_PROMPT_TEMPLATE = """Analyze this customer service conversation and extract structured insights.

CONVERSATION:
{transcript}

STORE'S PRODUCTS (for reference):
{products}

Extract the following insights in JSON format:

{{
  "product_interests": ["products or product categories the customer showed interest in"],
  "topics": ["main non-product topics, e.g. shipping, returns, gift recommendations, pricing"],
  "sentiment": "positive" | "neutral" | "frustrated",
  "unresolved": ["questions or requests the assistant couldn't fully answer"]
}}

Rules:
- Only include product_interests if the customer actually showed interest
- Topics should be general themes, not specific products
- Be conservative with "frustrated" sentiment - only use if clearly negative
- Return ONLY valid JSON, no markdown or explanation

JSON:"""


@dataclass(frozen=True)
class ConversationInsights:
    product_interests: tuple[str, ...] = ()
    topics: tuple[str, ...] = ()
    sentiment: Optional[str] = None
    unresolved: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.product_interests or self.topics or self.sentiment or self.unresolved)

    def records(self) -> List[Dict[str, Any]]:
        """Flatten into (type, value, confidence) rows for storage."""
        rows: List[Dict[str, Any]] = []
        for value in self.product_interests:
            rows.append({"type": "product_interest", "value": value, "confidence": INSIGHT_CONFIDENCE["product_interest"]})
        for value in self.topics:
            rows.append({"type": "topic", "value": value, "confidence": INSIGHT_CONFIDENCE["topic"]})
        if self.sentiment:
            rows.append({"type": "sentiment", "value": self.sentiment, "confidence": INSIGHT_CONFIDENCE["sentiment"]})
        for value in self.unresolved:
            rows.append({"type": "unresolved", "value": value, "confidence": INSIGHT_CONFIDENCE["unresolved"]})
        return rows

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_interests": list(self.product_interests),
            "topics": list(self.topics),
            "sentiment": self.sentiment,
            "unresolved": list(self.unresolved),
        }


def _strings(raw: Any, lower: bool = False) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    values: List[str] = []
    for item in raw:
        if isinstance(item, str) and item.strip():
            value = item.strip().lower() if lower else item.strip()
            if value not in values:
                values.append(value)
    return tuple(values)


def parse_insights(payload: Optional[Dict[str, Any]]) -> Optional[ConversationInsights]:
    if payload is None:
        return None
    sentiment = payload.get("sentiment")
    return ConversationInsights(
        product_interests=_strings(payload.get("product_interests")),
        topics=_strings(payload.get("topics"), lower=True),
        sentiment=sentiment if sentiment in INSIGHT_SENTIMENTS else None,
        unresolved=_strings(payload.get("unresolved")),
    )


def _transcript(messages: Sequence[Message]) -> str:
    return "\n\n".join(
        f"{'Customer' if message.role == ROLE_USER else 'Assistant'}: {message.content}" for message in messages
    )


async def extract_insights(
    messages: Sequence[Message],
    client: CompletionClient,
    product_names: Sequence[str] = (),
    settings: Optional[DialogueSettings] = None,
) -> Optional[ConversationInsights]:
    """Ask the completion service for insights; None when the transcript is too short or nothing usable came back."""
    settings = settings or get_settings()
    if len(messages) < MIN_MESSAGES:
        return None
    prompt = _PROMPT_TEMPLATE.format(
        transcript=_transcript(messages),
        products=", ".join(list(product_names)[:MAX_PRODUCT_NAMES]) or "No product list available",
    )
    try:
        content = await asyncio.wait_for(
            client.complete(
                [{"role": "system", "content": _SYSTEM_PROMPT}, {"role": "user", "content": prompt}],
                temperature=0.3,
                max_tokens=500,
            ),
            timeout=settings.llm_timeout_sec,
        )
    except Exception as exc:
        logger.warning("insight extraction failed: %s", exc)
        metrics.inc("sc_insights_total", {"result": "error"})
        return None
    insights = parse_insights(parse_json_reply(content))
    metrics.inc("sc_insights_total", {"result": "ok" if insights is not None else "invalid_json"})
    return insights
