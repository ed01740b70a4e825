from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, List, Optional

ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
_ROLES = {ROLE_USER, ROLE_ASSISTANT}


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"
    PROCESSED = "processed"


_ALLOWED_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.ACTIVE: frozenset({ConversationStatus.ENDED}),
    ConversationStatus.ENDED: frozenset({ConversationStatus.PROCESSED, ConversationStatus.ACTIVE}),
    ConversationStatus.PROCESSED: frozenset({ConversationStatus.ACTIVE}),
}


class ConversationTransitionError(ValueError):
    def __init__(self, current: ConversationStatus, target: ConversationStatus) -> None:
        super().__init__(f"invalid conversation transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


def can_transition(current: ConversationStatus, target: ConversationStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    products_shown: tuple[str, ...] = ()
    timestamp: Optional[float] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Optional["Message"]:
        if not isinstance(raw, dict):
            return None
        role = str(raw.get("role") or "").strip().lower()
        if role not in _ROLES:
            return None
        content = raw.get("content")
        if not isinstance(content, str):
            content = ""
        shown = raw.get("products_shown")
        if shown is None:
            shown = raw.get("productsShown")
        products: tuple[str, ...] = ()
        if isinstance(shown, (list, tuple)):
            products = tuple(str(item) for item in shown if item is not None and str(item).strip())
        timestamp = raw.get("timestamp")
        if not isinstance(timestamp, (int, float)):
            timestamp = None
        return cls(role=role, content=content, products_shown=products, timestamp=timestamp)

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "products_shown": list(self.products_shown),
            "timestamp": self.timestamp,
        }


def parse_messages(raw: Iterable[Any] | None) -> List[Message]:
    messages: List[Message] = []
    for item in raw or []:
        if isinstance(item, Message):
            messages.append(item)
            continue
        parsed = Message.from_dict(item)
        if parsed is not None:
            messages.append(parsed)
    return messages


@dataclass
class Conversation:
    id: str
    session_key: str
    messages: List[Message] = field(default_factory=list)
    message_count: int = 0
    status: ConversationStatus = ConversationStatus.ACTIVE
    started_at: float = field(default_factory=time.time)
    ended_at: Optional[float] = None

    def append(self, message: Message) -> None:
        if self.status != ConversationStatus.ACTIVE:
            self.transition(ConversationStatus.ACTIVE)
        self.messages.append(message)
        self.message_count += 1

    def transition(self, target: ConversationStatus, *, now: Optional[float] = None) -> None:
        if not can_transition(self.status, target):
            raise ConversationTransitionError(self.status, target)
        if target == ConversationStatus.ENDED:
            self.ended_at = now if now is not None else time.time()
        elif target == ConversationStatus.ACTIVE:
            self.ended_at = None
        self.status = target
