from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional

import pymysql

from storefront_chat.core.conversation import (
    Conversation,
    ConversationStatus,
    ConversationTransitionError,
    Message,
    can_transition,
)
from storefront_chat.core.insights import ConversationInsights
from storefront_chat.core.metrics import metrics
from storefront_chat.core.quality_scorer import QualityScore
from storefront_chat.core.retriever import CatalogItem

logger = logging.getLogger(__name__)
_lock = Lock()


@dataclass
class StoreSettings:
    enabled: bool
    host: str
    port: int
    database: str
    user: str
    password: str
    connect_timeout_ms: int
    inactive_minutes: int
    catalog_limit: int


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _load_settings() -> StoreSettings:
    return StoreSettings(
        enabled=_env_bool("SC_STORE_DB_ENABLED", "false"),
        host=os.getenv("SC_STORE_DB_HOST", "127.0.0.1").strip(),
        port=max(1, int(os.getenv("SC_STORE_DB_PORT", "3306"))),
        database=os.getenv("SC_STORE_DB_NAME", "storefront").strip(),
        user=os.getenv("SC_STORE_DB_USER", "storefront").strip(),
        password=os.getenv("SC_STORE_DB_PASSWORD", "storefront"),
        connect_timeout_ms=max(50, int(os.getenv("SC_STORE_DB_CONNECT_TIMEOUT_MS", "200"))),
        inactive_minutes=max(1, int(os.getenv("SC_STORE_INACTIVE_MINUTES", "15"))),
        catalog_limit=max(1, int(os.getenv("SC_STORE_CATALOG_LIMIT", "2000"))),
    )


_SETTINGS = _load_settings()


def _safe_str(value: Any, max_len: int) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_len:
        return text[:max_len]
    return text


def _safe_int(value: Any, minimum: int = 0) -> int:
    try:
        return max(minimum, int(value))
    except Exception:
        return minimum


def _parse_json(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return json.loads(text)
        except Exception:
            return None
    return None


def _timestamp(value: Any) -> Optional[float]:
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _enabled() -> bool:
    return _SETTINGS.enabled


def _connect():
    return pymysql.connect(
        host=_SETTINGS.host,
        port=_SETTINGS.port,
        user=_SETTINGS.user,
        password=_SETTINGS.password,
        database=_SETTINGS.database,
        charset="utf8mb4",
        autocommit=True,
        cursorclass=pymysql.cursors.DictCursor,
        connect_timeout=max(0.05, _SETTINGS.connect_timeout_ms / 1000.0),
        read_timeout=max(0.05, _SETTINGS.connect_timeout_ms / 1000.0),
        write_timeout=max(0.05, _SETTINGS.connect_timeout_ms / 1000.0),
    )


@contextmanager
def _cursor() -> Iterator[Any]:
    with _lock:
        connection = _connect()
        try:
            with connection.cursor() as cursor:
                yield cursor
        finally:
            connection.close()


def _conversation_from_row(row: Dict[str, Any], messages: Optional[List[Message]] = None) -> Conversation:
    try:
        status = ConversationStatus(str(row.get("status") or "active"))
    except ValueError:
        status = ConversationStatus.ACTIVE
    return Conversation(
        id=str(row.get("id")),
        session_key=str(row.get("session_key") or ""),
        messages=messages or [],
        message_count=_safe_int(row.get("message_count")),
        status=status,
        started_at=_timestamp(row.get("started_at")) or 0.0,
        ended_at=_timestamp(row.get("ended_at")),
    )


def get_conversation(conversation_id: str) -> Optional[Conversation]:
    if not _enabled():
        return None
    conversation = _safe_str(conversation_id, 64)
    if not conversation:
        return None
    try:
        with _cursor() as cursor:
            cursor.execute(
                """
                SELECT id, session_key, status, message_count, started_at, ended_at
                FROM conversations
                WHERE id=%s
                LIMIT 1
                """,
                (conversation,),
            )
            row = cursor.fetchone()
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "get_conversation", "result": "error"})
        logger.warning("conversation read failed: %s", exc)
        return None
    if not isinstance(row, dict):
        return None
    return _conversation_from_row(row)


def get_or_create_conversation(
    store_id: str,
    session_key: str,
    language: Optional[str] = None,
) -> Optional[Conversation]:
    """Return the session's latest conversation, resuming it if it had ended, or open a new one."""
    if not _enabled():
        return None
    store = _safe_str(store_id, 64)
    session = _safe_str(session_key, 128)
    if not store or not session:
        return None
    try:
        with _cursor() as cursor:
            cursor.execute(
                """
                SELECT id, session_key, status, message_count, started_at, ended_at
                FROM conversations
                WHERE store_id=%s AND session_key=%s
                ORDER BY started_at DESC
                LIMIT 1
                """,
                (store, session),
            )
            row = cursor.fetchone()
            if isinstance(row, dict):
                existing = _conversation_from_row(row)
                if existing.status != ConversationStatus.ACTIVE:
                    existing.transition(ConversationStatus.ACTIVE)
                    cursor.execute(
                        "UPDATE conversations SET status=%s, ended_at=NULL WHERE id=%s",
                        (ConversationStatus.ACTIVE.value, existing.id),
                    )
                    metrics.inc("sc_conversation_status_total", {"status": "active", "result": "resumed"})
                return existing
            cursor.execute(
                """
                INSERT INTO conversations (store_id, session_key, language, status, message_count, started_at)
                VALUES (%s, %s, %s, %s, 0, NOW())
                """,
                (store, session, _safe_str(language, 16), ConversationStatus.ACTIVE.value),
            )
            created_id = cursor.lastrowid
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "get_or_create", "result": "error"})
        logger.warning("conversation get_or_create failed: %s", exc)
        return None
    metrics.inc("sc_store_ops_total", {"op": "get_or_create", "result": "created"})
    return Conversation(id=str(created_id), session_key=session)


def append_message(conversation_id: str, message: Message) -> bool:
    if not _enabled():
        return False
    conversation = _safe_str(conversation_id, 64)
    if not conversation:
        return False
    products = json.dumps(list(message.products_shown), ensure_ascii=False) if message.products_shown else None
    try:
        with _cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO conv_messages (conversation_id, role, content, products_shown, created_at)
                VALUES (%s, %s, %s, %s, NOW())
                """,
                (conversation, message.role, message.content, products),
            )
            cursor.execute(
                "UPDATE conversations SET message_count = message_count + 1 WHERE id=%s",
                (conversation,),
            )
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "append_message", "result": "error"})
        logger.warning("conversation message append failed: %s", exc)
        return False
    metrics.inc("sc_store_ops_total", {"op": "append_message", "result": "ok"})
    return True


def list_messages(conversation_id: str) -> List[Message]:
    if not _enabled():
        return []
    conversation = _safe_str(conversation_id, 64)
    if not conversation:
        return []
    try:
        with _cursor() as cursor:
            cursor.execute(
                """
                SELECT role, content, products_shown, created_at
                FROM conv_messages
                WHERE conversation_id=%s
                ORDER BY created_at ASC, id ASC
                """,
                (conversation,),
            )
            rows = cursor.fetchall() or []
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "list_messages", "result": "error"})
        logger.warning("conversation message read failed: %s", exc)
        return []
    messages: List[Message] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        parsed = Message.from_dict(
            {
                "role": row.get("role"),
                "content": row.get("content"),
                "products_shown": _parse_json(row.get("products_shown")),
                "timestamp": _timestamp(row.get("created_at")),
            }
        )
        if parsed is not None:
            messages.append(parsed)
    return messages


def update_status(conversation_id: str, target: ConversationStatus) -> bool:
    """Move a conversation to `target`, refusing transitions the status machine does not allow."""
    if not _enabled():
        return False
    conversation = _safe_str(conversation_id, 64)
    if not conversation:
        return False
    try:
        with _cursor() as cursor:
            cursor.execute("SELECT status FROM conversations WHERE id=%s LIMIT 1", (conversation,))
            row = cursor.fetchone()
            if not isinstance(row, dict):
                return False
            current = ConversationStatus(str(row.get("status") or "active"))
            if not can_transition(current, target):
                raise ConversationTransitionError(current, target)
            if target == ConversationStatus.ENDED:
                cursor.execute(
                    "UPDATE conversations SET status=%s, ended_at=NOW() WHERE id=%s",
                    (target.value, conversation),
                )
            elif target == ConversationStatus.ACTIVE:
                cursor.execute(
                    "UPDATE conversations SET status=%s, ended_at=NULL WHERE id=%s",
                    (target.value, conversation),
                )
            else:
                cursor.execute("UPDATE conversations SET status=%s WHERE id=%s", (target.value, conversation))
    except ConversationTransitionError as exc:
        metrics.inc("sc_conversation_status_total", {"status": target.value, "result": "rejected"})
        logger.warning("conversation %s: %s", conversation, exc)
        return False
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "update_status", "result": "error"})
        logger.warning("conversation status update failed: %s", exc)
        return False
    metrics.inc("sc_conversation_status_total", {"status": target.value, "result": "ok"})
    return True


def list_catalog_items(store_id: str) -> List[CatalogItem]:
    if not _enabled():
        return []
    store = _safe_str(store_id, 64)
    if not store:
        return []
    try:
        with _cursor() as cursor:
            cursor.execute(
                """
                SELECT item_id, type, title, content, embedding, price, in_stock, url, image_url
                FROM store_items
                WHERE store_id=%s
                LIMIT %s
                """,
                (store, _SETTINGS.catalog_limit),
            )
            rows = cursor.fetchall() or []
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "list_catalog_items", "result": "error"})
        logger.warning("catalog read failed: %s", exc)
        return []
    items: List[CatalogItem] = []
    for row in rows:
        if not isinstance(row, dict):
            continue
        item = CatalogItem.from_dict(
            {
                "id": row.get("item_id"),
                "type": row.get("type"),
                "title": row.get("title"),
                "text": row.get("content"),
                "embedding": _parse_json(row.get("embedding")),
                "price": float(row["price"]) if row.get("price") is not None else None,
                "in_stock": row.get("in_stock") not in (0, False),
                "url": row.get("url"),
                "image_url": row.get("image_url"),
            }
        )
        if item is not None:
            items.append(item)
    return items


def save_quality_score(conversation_id: str, score: QualityScore) -> bool:
    if not _enabled():
        return False
    conversation = _safe_str(conversation_id, 64)
    if not conversation:
        return False
    try:
        with _cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO conv_quality_scores (conversation_id, score, breakdown_json, flagged, flag_reasons_json)
                VALUES (%s, %s, %s, %s, %s)
                ON DUPLICATE KEY UPDATE
                  score=VALUES(score),
                  breakdown_json=VALUES(breakdown_json),
                  flagged=VALUES(flagged),
                  flag_reasons_json=VALUES(flag_reasons_json)
                """,
                (
                    conversation,
                    score.score,
                    json.dumps(score.breakdown, ensure_ascii=False),
                    1 if score.flagged else 0,
                    json.dumps(list(score.flag_reasons), ensure_ascii=False),
                ),
            )
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "save_quality_score", "result": "error"})
        logger.warning("quality score write failed: %s", exc)
        return False
    metrics.inc("sc_store_ops_total", {"op": "save_quality_score", "result": "ok"})
    return True


def save_insights(conversation_id: str, store_id: Optional[str], insights: ConversationInsights) -> int:
    if not _enabled():
        return 0
    conversation = _safe_str(conversation_id, 64)
    if not conversation:
        return 0
    rows = insights.records()
    if not rows:
        return 0
    try:
        with _cursor() as cursor:
            for row in rows:
                cursor.execute(
                    """
                    INSERT INTO conv_insights (conversation_id, store_id, insight_type, value, confidence)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (conversation, _safe_str(store_id, 64), row["type"], _safe_str(row["value"], 500), row["confidence"]),
                )
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "save_insights", "result": "error"})
        logger.warning("insight write failed: %s", exc)
        return 0
    metrics.inc("sc_store_ops_total", {"op": "save_insights", "result": "ok"})
    return len(rows)


def end_inactive_conversations(inactive_minutes: Optional[int] = None) -> List[str]:
    """Mark active conversations whose last message is older than the inactivity window as ended."""
    if not _enabled():
        return []
    minutes = max(1, int(inactive_minutes or _SETTINGS.inactive_minutes))
    try:
        with _cursor() as cursor:
            cursor.execute(
                """
                SELECT c.id AS id
                FROM conversations c
                JOIN conv_messages m ON m.conversation_id = c.id
                WHERE c.status=%s
                GROUP BY c.id
                HAVING MAX(m.created_at) < NOW() - INTERVAL %s MINUTE
                """,
                (ConversationStatus.ACTIVE.value, minutes),
            )
            rows = cursor.fetchall() or []
            ended = [str(row.get("id")) for row in rows if isinstance(row, dict) and row.get("id") is not None]
            for conversation in ended:
                cursor.execute(
                    "UPDATE conversations SET status=%s, ended_at=NOW() WHERE id=%s AND status=%s",
                    (ConversationStatus.ENDED.value, conversation, ConversationStatus.ACTIVE.value),
                )
    except Exception as exc:
        metrics.inc("sc_store_ops_total", {"op": "end_inactive", "result": "error"})
        logger.warning("inactive conversation sweep failed: %s", exc)
        return []
    if ended:
        logger.info("marked %s inactive conversations as ended", len(ended))
    metrics.inc("sc_conversation_status_total", {"status": "ended", "result": "inactive"}, value=len(ended))
    return ended
