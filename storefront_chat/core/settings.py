from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict

logger = logging.getLogger(__name__)

DEFAULT_HANDOFF_RISK_WEIGHTS: Dict[str, int] = {
    "low_confidence": 2,
    "uncertain_response": 3,
    "negative_sentiment": 2,
    "declining_sentiment": 2,
}

DEFAULT_QUALITY_DELTAS: Dict[str, int] = {
    "base_score": 50,
    "purchase_intent": 20,
    "user_satisfaction": 15,
    "good_length": 10,
    "products_shown": 5,
    "natural_ending": 5,
    "repeated_question": -15,
    "multiple_rejections": -10,
    "contact_fallback": -10,
    "very_short": -5,
    "abandoned": -10,
}


@dataclass
class DialogueSettings:
    # retrieval
    product_threshold: float = 0.38
    visual_product_threshold: float = 0.32
    page_threshold: float = 0.45
    product_confidence_floor: float = 0.45
    product_cap: int = 8
    visual_product_cap: int = 5
    general_info_product_cap: int = 12
    page_cap: int = 2
    general_info_page_cap: int = 3
    card_threshold: float = 0.40
    card_cap: int = 3
    # discovery gate
    min_exchanges: int = 3
    min_needs_score: int = 3
    needs_score_override_turn: int = 5
    # intent classifier
    llm_fallback_confidence: int = 7
    llm_min_confidence: int = 5
    llm_confidence_scale: int = 15
    # handoff
    handoff_low_confidence_limit: int = 3
    handoff_uncertain_limit: int = 2
    handoff_risk_suggest: int = 5
    sentiment_window: int = 5
    handoff_risk_weights: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_HANDOFF_RISK_WEIGHTS))
    # quality scoring
    quality_deltas: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_QUALITY_DELTAS))
    quality_flag_threshold: int = 50
    quality_good_length_min: int = 4
    quality_good_length_max: int = 10
    # external services
    llm_url: str = "http://localhost:8010"
    llm_model: str = "toy-rag-v1"
    llm_timeout_sec: float = 8.0
    embed_url: str = "http://localhost:8005"
    embed_model: str = "toy_embed_v1"
    embed_timeout_sec: float = 5.0
    embed_batch_size: int = 100
    tracker_ttl_sec: int = 86400


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        logger.warning("invalid integer for %s: %s", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("invalid float for %s: %s", name, raw)
        return default


def _env_weights(name: str, defaults: Dict[str, int]) -> Dict[str, int]:
    merged = dict(defaults)
    raw = os.getenv(name, "").strip()
    if not raw:
        return merged
    try:
        parsed = json.loads(raw)
    except Exception:
        logger.warning("invalid JSON for %s, using defaults", name)
        return merged
    if not isinstance(parsed, dict):
        return merged
    for key, value in parsed.items():
        if not isinstance(key, str) or key not in merged:
            continue
        try:
            merged[key] = int(value)
        except (TypeError, ValueError):
            continue
    return merged


def load_settings() -> DialogueSettings:
    return DialogueSettings(
        product_threshold=_env_float("SC_PRODUCT_THRESHOLD", 0.38),
        visual_product_threshold=_env_float("SC_VISUAL_PRODUCT_THRESHOLD", 0.32),
        page_threshold=_env_float("SC_PAGE_THRESHOLD", 0.45),
        product_confidence_floor=_env_float("SC_PRODUCT_CONFIDENCE_FLOOR", 0.45),
        product_cap=_env_int("SC_PRODUCT_CAP", 8, minimum=1),
        visual_product_cap=_env_int("SC_VISUAL_PRODUCT_CAP", 5, minimum=1),
        general_info_product_cap=_env_int("SC_GENERAL_INFO_PRODUCT_CAP", 12, minimum=1),
        page_cap=_env_int("SC_PAGE_CAP", 2, minimum=0),
        general_info_page_cap=_env_int("SC_GENERAL_INFO_PAGE_CAP", 3, minimum=0),
        card_threshold=_env_float("SC_CARD_THRESHOLD", 0.40),
        card_cap=_env_int("SC_CARD_CAP", 3, minimum=0),
        min_exchanges=_env_int("SC_MIN_EXCHANGES", 3),
        min_needs_score=_env_int("SC_MIN_NEEDS_SCORE", 3),
        needs_score_override_turn=_env_int("SC_NEEDS_SCORE_OVERRIDE_TURN", 5),
        llm_fallback_confidence=_env_int("SC_LLM_FALLBACK_CONFIDENCE", 7),
        llm_min_confidence=_env_int("SC_LLM_MIN_CONFIDENCE", 5),
        llm_confidence_scale=_env_int("SC_LLM_CONFIDENCE_SCALE", 15, minimum=1),
        handoff_low_confidence_limit=_env_int("SC_HANDOFF_LOW_CONFIDENCE_LIMIT", 3, minimum=1),
        handoff_uncertain_limit=_env_int("SC_HANDOFF_UNCERTAIN_LIMIT", 2, minimum=1),
        handoff_risk_suggest=_env_int("SC_HANDOFF_RISK_SUGGEST", 5),
        sentiment_window=_env_int("SC_SENTIMENT_WINDOW", 5, minimum=3),
        handoff_risk_weights=_env_weights("SC_HANDOFF_RISK_WEIGHTS_JSON", DEFAULT_HANDOFF_RISK_WEIGHTS),
        quality_deltas=_env_weights("SC_QUALITY_DELTAS_JSON", DEFAULT_QUALITY_DELTAS),
        quality_flag_threshold=_env_int("SC_QUALITY_FLAG_THRESHOLD", 50),
        quality_good_length_min=_env_int("SC_QUALITY_GOOD_LENGTH_MIN", 4),
        quality_good_length_max=_env_int("SC_QUALITY_GOOD_LENGTH_MAX", 10),
        llm_url=os.getenv("SC_LLM_URL", "http://localhost:8010").rstrip("/"),
        llm_model=os.getenv("SC_LLM_MODEL", "toy-rag-v1").strip() or "toy-rag-v1",
        llm_timeout_sec=_env_float("SC_LLM_TIMEOUT_SEC", 8.0),
        embed_url=os.getenv("SC_EMBED_URL", "http://localhost:8005").rstrip("/"),
        embed_model=os.getenv("SC_EMBED_MODEL", "toy_embed_v1").strip() or "toy_embed_v1",
        embed_timeout_sec=_env_float("SC_EMBED_TIMEOUT_SEC", 5.0),
        embed_batch_size=min(100, _env_int("SC_EMBED_BATCH_SIZE", 100, minimum=1)),
        tracker_ttl_sec=_env_int("SC_HANDOFF_TRACKER_TTL_SEC", 86400, minimum=60),
    )


_settings: DialogueSettings | None = None


def get_settings() -> DialogueSettings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    global _settings
    _settings = None
