import logging
import uuid
from typing import Any, List, Optional, Type, TypeVar

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from storefront_chat.api.schemas import ChatMessage, EndRequest, ReplyRequest, ScoreRequest, TurnRequest
from storefront_chat.core import conversation_store
from storefront_chat.core.conversation import ROLE_ASSISTANT, ROLE_USER, ConversationTransitionError, Message, parse_messages
from storefront_chat.core.conversation_state import summarize_history
from storefront_chat.core.dialogue import end_conversation, finalize_reply, run_turn
from storefront_chat.core.embedding import EmbeddingClient
from storefront_chat.core.intent_classifier import IntentResult, classify_intent
from storefront_chat.core.llm_client import CompletionClient
from storefront_chat.core.metrics import metrics
from storefront_chat.core.quality_scorer import score_conversation
from storefront_chat.core.retriever import CatalogItem, ScoredItem
from storefront_chat.core.settings import DialogueSettings, get_settings

router = APIRouter()
logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint():
    return metrics.snapshot()


@router.post("/v1/chat/turn")
async def chat_turn(request: Request):
    trace_id, request_id, traceparent = _extract_ids(request)
    payload, error = await _parse_body(request, TurnRequest, trace_id, request_id)
    if error is not None:
        return error
    if not payload.message.strip():
        return _error_response("invalid_message", "Message must not be empty.", trace_id, request_id)

    conversation_id = _resolve_conversation_id(payload)
    history = _messages(payload.history)
    if not history and payload.conversation_id:
        history = conversation_store.list_messages(conversation_id)
    catalog = [item for item in (CatalogItem.from_dict(entry.model_dump()) for entry in payload.catalog) if item]
    if not catalog and payload.store_id:
        catalog = conversation_store.list_catalog_items(payload.store_id)

    settings = get_settings()
    result = await run_turn(
        conversation_id,
        payload.message,
        history,
        language=payload.language,
        catalog=catalog,
        contact=payload.contact.model_dump() if payload.contact else None,
        llm_client=_completion_client(settings) if payload.use_llm else None,
        embed_client=_embedding_client(settings) if payload.use_retrieval else None,
        settings=settings,
    )
    conversation_store.append_message(conversation_id, Message(role=ROLE_USER, content=payload.message))

    logger.info(
        "chat turn trace_id=%s request_id=%s conversation=%s intent=%s source=%s stage=%s products_allowed=%s handoff=%s",
        trace_id,
        request_id,
        conversation_id,
        result.intent.primary,
        result.intent.source,
        result.state.journey_stage,
        result.gate.allowed,
        result.handoff.reason,
    )
    response = {"version": "v1", "trace_id": trace_id, "request_id": request_id}
    response.update(result.to_dict())
    return JSONResponse(content=response, headers=_response_headers(trace_id, request_id, traceparent))


@router.post("/v1/chat/reply")
async def chat_reply(request: Request):
    trace_id, request_id, traceparent = _extract_ids(request)
    payload, error = await _parse_body(request, ReplyRequest, trace_id, request_id)
    if error is not None:
        return error

    history = _messages(payload.history)
    if payload.intent:
        intent = IntentResult.from_dict(payload.intent)
    else:
        context = summarize_history(history)
        intent = classify_intent(
            payload.message,
            last_question=context.last_question,
            last_products=context.last_products,
        )
    products: List[ScoredItem] = []
    for entry in payload.products:
        item = CatalogItem.from_dict(entry.item.model_dump())
        if item is not None:
            products.append(ScoredItem(item=item, similarity=entry.similarity))

    result = finalize_reply(
        payload.conversation_id,
        payload.message,
        payload.reply,
        history,
        intent,
        language=payload.language,
        products=products,
    )
    conversation_store.append_message(
        payload.conversation_id,
        Message(
            role=ROLE_ASSISTANT,
            content=result.reply,
            products_shown=tuple(entry.item.title for entry in result.cards),
        ),
    )
    response = {"version": "v1", "trace_id": trace_id, "request_id": request_id}
    response.update(result.to_dict())
    return JSONResponse(content=response, headers=_response_headers(trace_id, request_id, traceparent))


@router.post("/v1/conversations/score")
async def conversations_score(request: Request):
    trace_id, request_id, traceparent = _extract_ids(request)
    payload, error = await _parse_body(request, ScoreRequest, trace_id, request_id)
    if error is not None:
        return error

    score = score_conversation(_messages(payload.messages))
    response = {"version": "v1", "trace_id": trace_id, "request_id": request_id}
    response.update(score.to_dict())
    return JSONResponse(content=response, headers=_response_headers(trace_id, request_id, traceparent))


@router.post("/v1/conversations/{conversation_id}/end")
async def conversations_end(conversation_id: str, request: Request):
    trace_id, request_id, traceparent = _extract_ids(request)
    payload, error = await _parse_body(request, EndRequest, trace_id, request_id)
    if error is not None:
        return error

    settings = get_settings()
    try:
        result = await end_conversation(
            conversation_id,
            _messages(payload.messages) if payload.messages is not None else None,
            store_id=payload.store_id,
            llm_client=_completion_client(settings) if payload.extract_insights else None,
            product_names=payload.product_names,
            settings=settings,
        )
    except ConversationTransitionError as exc:
        logger.warning("end conversation rejected trace_id=%s conversation=%s: %s", trace_id, conversation_id, exc)
        return _error_response("invalid_transition", str(exc), trace_id, request_id, status_code=409)

    response = {"version": "v1", "trace_id": trace_id, "request_id": request_id}
    response.update(result.to_dict())
    return JSONResponse(content=response, headers=_response_headers(trace_id, request_id, traceparent))


def _completion_client(settings: DialogueSettings) -> CompletionClient:
    return CompletionClient.from_settings(settings)


def _embedding_client(settings: DialogueSettings) -> EmbeddingClient:
    return EmbeddingClient.from_settings(settings)


def _messages(raw: Optional[List[ChatMessage]]) -> List[Message]:
    return parse_messages([message.model_dump() for message in raw or []])


def _resolve_conversation_id(payload: TurnRequest) -> str:
    if payload.conversation_id:
        return payload.conversation_id
    if payload.store_id and payload.session_key:
        conversation = conversation_store.get_or_create_conversation(
            payload.store_id, payload.session_key, payload.language
        )
        if conversation is not None:
            return conversation.id
    return f"conv_{uuid.uuid4().hex}"


async def _parse_body(
    request: Request,
    model: Type[ModelT],
    trace_id: str,
    request_id: str,
) -> tuple[Optional[ModelT], Optional[JSONResponse]]:
    try:
        body: Any = await request.json()
    except Exception:
        return None, _error_response("invalid_request", "Request body must be valid JSON.", trace_id, request_id)
    if not isinstance(body, dict):
        return None, _error_response("invalid_request", "Request body must be a JSON object.", trace_id, request_id)
    try:
        return model.model_validate(body), None
    except ValidationError as exc:
        fields = ",".join(".".join(str(part) for part in err.get("loc", ())) for err in exc.errors())
        return None, _error_response("invalid_request", f"Invalid fields: {fields}", trace_id, request_id)


def _extract_ids(request: Request) -> tuple[str, str, str | None]:
    trace_id = request.headers.get("x-trace-id")
    request_id = request.headers.get("x-request-id")
    traceparent = request.headers.get("traceparent")

    if not trace_id and traceparent:
        trace_id = _parse_traceparent(traceparent) or trace_id

    if not trace_id:
        trace_id = f"trace_{uuid.uuid4().hex}"
    if not request_id:
        request_id = f"req_{uuid.uuid4().hex}"
    return trace_id, request_id, traceparent


def _parse_traceparent(value: str) -> str | None:
    parts = value.split("-")
    if len(parts) != 4:
        return None
    trace_id = parts[1]
    if len(trace_id) != 32 or len(parts[2]) != 16:
        return None
    return trace_id


def _error_response(code: str, message: str, trace_id: str, request_id: str, status_code: int = 400) -> JSONResponse:
    payload = {
        "error": {"code": code, "message": message},
        "trace_id": trace_id,
        "request_id": request_id,
    }
    return JSONResponse(
        status_code=status_code,
        content=payload,
        headers={"x-trace-id": trace_id, "x-request-id": request_id},
    )


def _response_headers(trace_id: str, request_id: str, traceparent: str | None) -> dict[str, str]:
    headers = {"x-trace-id": trace_id, "x-request-id": request_id}
    if traceparent:
        headers["traceparent"] = traceparent
    return headers
