"""Per-turn dialogue pipeline.

`run_turn` prepares everything the reply generator needs for one user message:
intent, conversation state, whether products may enter the prompt, retrieved
catalog context and the escalation decision. `finalize_reply` post-processes the
generated reply (card gate, uncertain-reply tracking). `end_conversation` scores
a finished conversation and extracts insights from it.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Sequence

from storefront_chat.core import conversation_store
from storefront_chat.core.cache import CacheClient
from storefront_chat.core.conversation import Conversation, ConversationStatus, Message
from storefront_chat.core.conversation_state import ConversationState, build_conversation_state, summarize_history
from storefront_chat.core.discovery_gate import (
    GateDecision,
    discovery_prompt_addition,
    extract_product_markers,
    should_allow_product_cards,
    should_include_products_in_context,
)
from storefront_chat.core.embedding import EmbeddingClient
from storefront_chat.core.handoff import (
    HandoffDecision,
    clear_tracker,
    evaluate_handoff,
    handoff_message,
    is_uncertain_reply,
    load_tracker,
    record_uncertain_response,
    save_tracker,
    soft_handoff_suggestion,
)
from storefront_chat.core.insights import ConversationInsights, extract_insights
from storefront_chat.core.intent_classifier import IntentResult, describe_intent, hybrid_classify, llm_signals
from storefront_chat.core.llm_client import CompletionClient
from storefront_chat.core.localization import resolve_language
from storefront_chat.core.metrics import metrics
from storefront_chat.core.quality_scorer import QualityScore, score_conversation
from storefront_chat.core.retriever import (
    CatalogItem,
    RetrievalResult,
    ScoredItem,
    detect_query_flags,
    retrieve,
    select_card_candidates,
)
from storefront_chat.core.settings import DialogueSettings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    conversation_id: str
    language: str
    intent: IntentResult
    state: ConversationState
    gate: GateDecision
    retrieval: Optional[RetrievalResult]
    handoff: HandoffDecision
    prompt_addition: str = ""
    handoff_text: Optional[str] = None
    degraded: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "language": self.language,
            "intent": self.intent.to_dict(),
            "intent_description": describe_intent(self.intent.primary),
            "intent_signals": llm_signals(self.intent),
            "state": self.state.to_dict(),
            "product_context": self.gate.to_dict(),
            "retrieval": self.retrieval.to_dict() if self.retrieval else None,
            "handoff": self.handoff.to_dict(),
            "prompt_addition": self.prompt_addition,
            "handoff_text": self.handoff_text,
            "degraded": list(self.degraded),
        }


@dataclass
class ReplyResult:
    reply: str
    gate: GateDecision
    cards: List[ScoredItem] = field(default_factory=list)
    uncertain: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reply": self.reply,
            "cards": [entry.to_dict() for entry in self.cards],
            "card_gate": self.gate.to_dict(),
            "uncertain": self.uncertain,
        }


@dataclass
class EndResult:
    conversation_id: str
    status: ConversationStatus
    score: QualityScore
    insights: Optional[ConversationInsights] = None
    insights_saved: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "status": self.status.value,
            "quality": self.score.to_dict(),
            "insights": self.insights.to_dict() if self.insights else None,
            "insights_saved": self.insights_saved,
        }


async def _embed_query(
    message: str,
    embed_client: EmbeddingClient,
    settings: DialogueSettings,
) -> Optional[List[float]]:
    try:
        return await asyncio.wait_for(embed_client.embed_query(message), timeout=settings.embed_timeout_sec)
    except Exception as exc:
        logger.warning("query embedding timed out or failed: %s", exc)
        metrics.inc("sc_embed_requests_total", {"result": "timeout"})
        return None


async def run_turn(
    conversation_id: str,
    message: str,
    history: Sequence[Message],
    *,
    language: Optional[str] = None,
    catalog: Sequence[CatalogItem] = (),
    contact: Optional[Mapping[str, Any]] = None,
    llm_client: Optional[CompletionClient] = None,
    embed_client: Optional[EmbeddingClient] = None,
    cache: Optional[CacheClient] = None,
    settings: Optional[DialogueSettings] = None,
) -> TurnResult:
    """Run the per-message pipeline for one user message. Never raises on a degraded dependency."""
    settings = settings or get_settings()
    lang = resolve_language(language)
    degraded: List[str] = []

    context = summarize_history(history)
    intent = await hybrid_classify(
        message,
        llm_client,
        last_assistant_message=context.last_assistant_message,
        last_products=context.last_products,
        last_question=context.last_question,
        turn_count=context.turn_count,
        settings=settings,
    )
    if intent.degraded:
        degraded.append("intent")

    state = build_conversation_state(history, message, intent, lang)
    gate = should_include_products_in_context(state, intent, history, message, settings)
    prompt_addition = ""
    if gate.discovery is not None:
        prompt_addition = discovery_prompt_addition(gate.discovery, lang, settings)

    retrieval: Optional[RetrievalResult] = None
    if embed_client is not None and catalog:
        flags = detect_query_flags(message, intent.primary)
        vector = await _embed_query(message, embed_client, settings)
        retrieval = retrieve(
            vector,
            catalog,
            is_visual=flags.is_visual,
            is_general_info=flags.is_general_info,
            settings=settings,
            language=lang,
        )
        if retrieval.degraded:
            degraded.append("retrieval")
        if not gate.allowed:
            retrieval = replace(retrieval, products=[])

    tracker = load_tracker(conversation_id, cache)
    decision, tracker = evaluate_handoff(message, state, intent, tracker, settings)
    if not save_tracker(conversation_id, tracker, cache, settings):
        degraded.append("handoff_tracker")

    handoff_text: Optional[str] = None
    if decision.needed:
        handoff_text = handoff_message(decision.reason, lang, contact)
        metrics.inc("sc_handoff_total", {"reason": decision.reason or "unknown", "kind": "needed"})
    elif decision.suggest_handoff:
        handoff_text = soft_handoff_suggestion(lang)
        metrics.inc("sc_handoff_total", {"reason": decision.reason or "unknown", "kind": "suggested"})

    metrics.inc("sc_turns_total", {"intent": intent.primary, "source": intent.source})
    return TurnResult(
        conversation_id=conversation_id,
        language=lang,
        intent=intent,
        state=state,
        gate=gate,
        retrieval=retrieval,
        handoff=decision,
        prompt_addition=prompt_addition,
        handoff_text=handoff_text,
        degraded=degraded,
    )


def finalize_reply(
    conversation_id: str,
    message: str,
    reply: str,
    history: Sequence[Message],
    intent: IntentResult,
    *,
    language: Optional[str] = None,
    products: Sequence[ScoredItem] = (),
    cache: Optional[CacheClient] = None,
    settings: Optional[DialogueSettings] = None,
) -> ReplyResult:
    settings = settings or get_settings()
    state = build_conversation_state(history, message, intent, language)
    gate = should_allow_product_cards(state, intent, reply, history, message, settings)
    final_reply = gate.response if gate.response is not None else reply

    # Cards only for products the reply itself names.
    cards: List[ScoredItem] = []
    titles = {title.lower() for title in extract_product_markers(reply)}
    if gate.allowed and titles:
        cards = [entry for entry in select_card_candidates(products, settings) if entry.item.title.lower() in titles]

    uncertain = is_uncertain_reply(final_reply)
    if uncertain:
        tracker = record_uncertain_response(load_tracker(conversation_id, cache), final_reply, settings)
        save_tracker(conversation_id, tracker, cache, settings)
    return ReplyResult(reply=final_reply, gate=gate, cards=cards, uncertain=uncertain)


async def end_conversation(
    conversation_id: str,
    messages: Optional[Sequence[Message]] = None,
    *,
    store_id: Optional[str] = None,
    llm_client: Optional[CompletionClient] = None,
    product_names: Sequence[str] = (),
    cache: Optional[CacheClient] = None,
    settings: Optional[DialogueSettings] = None,
) -> EndResult:
    """End a conversation, score it and extract insights.

    Raises ConversationTransitionError when the stored conversation is already processed.
    Persistence is best-effort and never blocks the result.
    """
    settings = settings or get_settings()
    stored = conversation_store.get_conversation(conversation_id)
    conversation = stored or Conversation(id=conversation_id, session_key="")
    if messages is None:
        messages = conversation_store.list_messages(conversation_id)
    conversation.messages = list(messages)

    if conversation.status != ConversationStatus.ENDED:
        conversation.transition(ConversationStatus.ENDED)
        conversation_store.update_status(conversation_id, ConversationStatus.ENDED)

    score = score_conversation(conversation.messages, settings)
    conversation_store.save_quality_score(conversation_id, score)
    if score.flagged:
        logger.info("conversation %s flagged: score=%s reasons=%s", conversation_id, score.score, list(score.flag_reasons))
    metrics.inc("sc_quality_scored_total", {"flagged": "true" if score.flagged else "false"})

    insights: Optional[ConversationInsights] = None
    saved = 0
    if llm_client is not None:
        insights = await extract_insights(conversation.messages, llm_client, product_names, settings)
        if insights is not None and not insights.is_empty:
            saved = conversation_store.save_insights(conversation_id, store_id, insights)

    conversation.transition(ConversationStatus.PROCESSED)
    conversation_store.update_status(conversation_id, ConversationStatus.PROCESSED)
    clear_tracker(conversation_id, cache)
    return EndResult(
        conversation_id=conversation_id,
        status=conversation.status,
        score=score,
        insights=insights,
        insights_saved=saved,
    )
