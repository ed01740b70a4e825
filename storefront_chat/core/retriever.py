from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from storefront_chat.core.intent_rules import (
    INTENT_BROWSE,
    INTENT_CONTACT,
    INTENT_RETURNS,
    INTENT_SHIPPING,
)
from storefront_chat.core.localization import text
from storefront_chat.core.settings import DialogueSettings, get_settings

ITEM_PRODUCT = "product"
ITEM_PAGE = "page"

NO_SIMILARITY = -1.0

_VISUAL_RE = re.compile(
    r"\b(visa|visar|titta|se|bild|bilder|kolla|show|see|look|view|picture|pictures|image|images|photo|photos)\b",
    re.IGNORECASE,
)
_GENERAL_INFO_RE = re.compile(
    r"\b(om er|om butiken|om företaget|vad säljer ni|vilka produkter|sortiment|utbud|policy|villkor|"
    r"öppettider|about you|about the store|what do you sell|what kind of products|your products|range|"
    r"terms|opening hours)\b",
    re.IGNORECASE,
)
_GENERAL_INFO_INTENTS = {INTENT_SHIPPING, INTENT_RETURNS, INTENT_CONTACT}


@dataclass(frozen=True)
class CatalogItem:
    id: str
    type: str
    title: str
    embedding: tuple[float, ...] = ()
    text: str = ""
    price: Optional[float] = None
    in_stock: bool = True
    url: Optional[str] = None
    image_url: Optional[str] = None

    @property
    def is_product(self) -> bool:
        return self.type == ITEM_PRODUCT

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> Optional["CatalogItem"]:
        item_id = raw.get("id")
        if item_id is None:
            return None
        item_type = str(raw.get("type") or ITEM_PRODUCT).strip().lower()
        if item_type not in (ITEM_PRODUCT, ITEM_PAGE):
            return None
        embedding = raw.get("embedding") or raw.get("embedding_vector") or ()
        vector: tuple[float, ...] = ()
        if isinstance(embedding, (list, tuple)):
            try:
                vector = tuple(float(value) for value in embedding)
            except (TypeError, ValueError):
                vector = ()
        price = raw.get("price")
        in_stock = raw.get("in_stock")
        return cls(
            id=str(item_id),
            type=item_type,
            title=str(raw.get("title") or ""),
            embedding=vector,
            text=str(raw.get("text") or raw.get("content") or ""),
            price=float(price) if isinstance(price, (int, float)) and not isinstance(price, bool) else None,
            in_stock=in_stock is not False,
            url=raw.get("url") or None,
            image_url=raw.get("image_url") or None,
        )

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "title": self.title,
            "text": self.text,
            "price": self.price,
            "in_stock": self.in_stock,
            "url": self.url,
            "image_url": self.image_url,
        }
        if include_embedding:
            payload["embedding"] = list(self.embedding)
        return payload


@dataclass(frozen=True)
class ScoredItem:
    item: CatalogItem
    similarity: float

    def to_dict(self) -> Dict[str, Any]:
        return {"item": self.item.to_dict(), "similarity": round(self.similarity, 4)}


@dataclass(frozen=True)
class QueryFlags:
    is_visual: bool = False
    is_general_info: bool = False


@dataclass
class RetrievalResult:
    products: List[ScoredItem] = field(default_factory=list)
    pages: List[ScoredItem] = field(default_factory=list)
    low_confidence: bool = False
    note: Optional[str] = None
    degraded: bool = False

    @property
    def best_product_score(self) -> Optional[float]:
        return self.products[0].similarity if self.products else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "products": [scored.to_dict() for scored in self.products],
            "pages": [scored.to_dict() for scored in self.pages],
            "low_confidence": self.low_confidence,
            "note": self.note,
            "degraded": self.degraded,
        }


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """Cosine of the angle between two vectors, or NO_SIMILARITY when it is undefined."""
    if not a or not b or len(a) != len(b):
        return NO_SIMILARITY
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    try:
        for x, y in zip(a, b):
            dot += x * y
            norm_a += x * x
            norm_b += y * y
    except TypeError:
        return NO_SIMILARITY
    if norm_a <= 0.0 or norm_b <= 0.0:
        return NO_SIMILARITY
    value = dot / (math.sqrt(norm_a) * math.sqrt(norm_b))
    if not math.isfinite(value):
        return NO_SIMILARITY
    return max(-1.0, min(1.0, value))


def detect_query_flags(message: str, intent: Optional[str] = None) -> QueryFlags:
    lowered = (message or "").lower()
    is_general_info = intent in _GENERAL_INFO_INTENTS or bool(_GENERAL_INFO_RE.search(lowered))
    is_visual = bool(_VISUAL_RE.search(lowered)) or intent == INTENT_BROWSE
    return QueryFlags(is_visual=is_visual and not is_general_info, is_general_info=is_general_info)


def retrieve(
    query_vector: Optional[Sequence[float]],
    items: Iterable[CatalogItem],
    *,
    is_visual: bool = False,
    is_general_info: bool = False,
    settings: Optional[DialogueSettings] = None,
    language: Optional[str] = None,
) -> RetrievalResult:
    """Rank catalog items against the query vector.

    Out-of-stock products are dropped, pages are always kept. Products and pages
    get their own threshold and cap; a missing query vector yields an empty,
    degraded, low-confidence result.
    """
    settings = settings or get_settings()
    if not query_vector:
        return RetrievalResult(
            low_confidence=True,
            note=text("retrieval.low_confidence", language),
            degraded=True,
        )

    candidates = [item for item in items if not (item.is_product and not item.in_stock)]
    scored = [ScoredItem(item=item, similarity=cosine_similarity(query_vector, item.embedding)) for item in candidates]
    scored.sort(key=lambda entry: entry.similarity, reverse=True)

    product_threshold = settings.visual_product_threshold if is_visual else settings.product_threshold
    if is_general_info:
        product_cap = settings.general_info_product_cap
        page_cap = settings.general_info_page_cap
    elif is_visual:
        product_cap = settings.visual_product_cap
        page_cap = settings.page_cap
    else:
        product_cap = settings.product_cap
        page_cap = settings.page_cap

    products = [entry for entry in scored if entry.item.is_product and entry.similarity >= product_threshold]
    pages = [entry for entry in scored if entry.item.type == ITEM_PAGE and entry.similarity >= settings.page_threshold]
    result = RetrievalResult(products=products[:product_cap], pages=pages[:page_cap])

    if not is_general_info:
        best = _best_product_score(scored)
        if best is None or best < settings.product_confidence_floor:
            result.low_confidence = True
            result.note = text("retrieval.low_confidence", language)
    return result


def _best_product_score(scored: Sequence[ScoredItem]) -> Optional[float]:
    for entry in scored:
        if entry.item.is_product:
            return entry.similarity
    return None


def select_card_candidates(
    products: Sequence[ScoredItem],
    settings: Optional[DialogueSettings] = None,
) -> List[ScoredItem]:
    settings = settings or get_settings()
    cards: List[ScoredItem] = []
    for entry in products:
        if len(cards) >= settings.card_cap:
            break
        if entry.similarity < settings.card_threshold:
            continue
        if not entry.item.url or not entry.item.image_url:
            continue
        cards.append(entry)
    return cards
