from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from storefront_chat.core.conversation import ROLE_ASSISTANT, ROLE_USER, Message
from storefront_chat.core.settings import DialogueSettings, get_settings

REPEATED_QUESTION_SIMILARITY = 0.6
MIN_TOKEN_LENGTH = 3


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


PURCHASE_PATTERNS = _compile(
    r"\b(köp|köpa|beställ|beställa|ta den|tar den|tar det|jag tar|vill ha)\b",
    r"\b(buy|purchase|order|i'll take|i want|add to cart)\b",
)
SATISFACTION_PATTERNS = _compile(
    r"\b(tack|tackar|perfekt|jättebra|toppen|underbart|fantastiskt|bra|fint|härligt)\b",
    r"\b(thanks|thank you|perfect|great|awesome|wonderful|excellent|amazing)\b",
)
REJECTION_PATTERNS = _compile(
    r"\b(nej|nope|inte|inget|något annat|annan|andra|fel)\b",
    r"\b(no|nope|not|none|something else|different|other|wrong)\b",
)
CONTACT_PATTERNS = _compile(
    r"\b(kontakt|telefon|ring|maila|email|prata med|människa)\b",
    r"\b(contact|phone|call|email|speak to|human|person|someone)\b",
)
GOODBYE_PATTERNS = _compile(r"\b(hejdå|adjö|vi ses|ha det|bye|goodbye|see you|take care)\b")
LONE_GREETING_RE = re.compile(r"^(hej|hi|hello|hey)[\s!.,?]*$", re.IGNORECASE)

BREAKDOWN_SIGNALS = (
    "purchase_intent",
    "user_satisfaction",
    "good_length",
    "products_shown",
    "natural_ending",
    "repeated_question",
    "multiple_rejections",
    "abandoned",
    "contact_fallback",
    "very_short",
)


@dataclass(frozen=True)
class QualityScore:
    score: int
    breakdown: Dict[str, Any] = field(default_factory=dict)
    flagged: bool = False
    flag_reasons: tuple[str, ...] = ()
    message_count: int = 0
    user_message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "breakdown": dict(self.breakdown),
            "flagged": self.flagged,
            "flag_reasons": list(self.flag_reasons),
            "message_count": self.message_count,
            "user_message_count": self.user_message_count,
        }


def _matches(patterns: tuple[re.Pattern[str], ...], content: str) -> bool:
    return any(pattern.search(content or "") for pattern in patterns)


def _tokens(content: str) -> set[str]:
    return {word for word in (content or "").lower().split() if len(word) >= MIN_TOKEN_LENGTH}


def message_similarity(first: str, second: str) -> float:
    """Jaccard similarity of the two messages' token sets, ignoring tokens of two characters or fewer."""
    left = _tokens(first)
    right = _tokens(second)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def _has_repeated_question(user_turns: Sequence[Message]) -> bool:
    for index in range(1, len(user_turns)):
        for earlier in range(index):
            if message_similarity(user_turns[index].content, user_turns[earlier].content) > REPEATED_QUESTION_SIMILARITY:
                return True
    return False


def score_conversation(messages: Sequence[Message], settings: Optional[DialogueSettings] = None) -> QualityScore:
    """Rule-based quality score of a finished conversation.

    Every signal is applied at most once. The result is clamped to [0, 100] and
    flagged when it falls below the configured threshold.
    """
    settings = settings or get_settings()
    deltas = settings.quality_deltas
    breakdown: Dict[str, Any] = {"base_score": deltas.get("base_score", 50)}
    breakdown.update({signal: False for signal in BREAKDOWN_SIGNALS})
    reasons: List[str] = []
    score = deltas.get("base_score", 50)

    user_turns = [message for message in messages if message.role == ROLE_USER]
    assistant_turns = [message for message in messages if message.role == ROLE_ASSISTANT]
    total = len(messages)

    def apply(signal: str, reason: Optional[str] = None) -> None:
        nonlocal score
        breakdown[signal] = True
        score += deltas.get(signal, 0)
        if reason:
            reasons.append(reason)

    if any(_matches(PURCHASE_PATTERNS, message.content) for message in user_turns):
        apply("purchase_intent")
    if any(_matches(SATISFACTION_PATTERNS, message.content) for message in user_turns):
        apply("user_satisfaction")
    if settings.quality_good_length_min <= total <= settings.quality_good_length_max:
        apply("good_length")
    if any(message.products_shown for message in assistant_turns):
        apply("products_shown")
    if user_turns:
        last_user = user_turns[-1].content
        if _matches(GOODBYE_PATTERNS, last_user) or _matches(SATISFACTION_PATTERNS, last_user):
            apply("natural_ending")

    if _has_repeated_question(user_turns):
        apply("repeated_question", "User repeated a similar question")
    rejections = sum(1 for message in user_turns if _matches(REJECTION_PATTERNS, message.content))
    if rejections >= 2:
        apply("multiple_rejections", f"User rejected suggestions {rejections} times")
    if any(_matches(CONTACT_PATTERNS, message.content) for message in user_turns):
        apply("contact_fallback", "User asked for human contact")

    if total <= 2 and not breakdown["natural_ending"]:
        lone_greeting = len(user_turns) == 1 and bool(LONE_GREETING_RE.match(user_turns[0].content.strip()))
        if not lone_greeting:
            apply("very_short", "Very short conversation without resolution")

    if (
        not breakdown["natural_ending"]
        and not breakdown["purchase_intent"]
        and not breakdown["user_satisfaction"]
        and total >= 3
        and messages[-1].role == ROLE_USER
    ):
        apply("abandoned", "Conversation ended abruptly")

    score = max(0, min(100, int(round(score))))
    return QualityScore(
        score=score,
        breakdown=breakdown,
        flagged=score < settings.quality_flag_threshold,
        flag_reasons=tuple(reasons),
        message_count=total,
        user_message_count=len(user_turns),
    )
