import pytest

from storefront_chat.core.conversation import (
    Conversation,
    ConversationStatus,
    ConversationTransitionError,
    Message,
    can_transition,
    parse_messages,
)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (ConversationStatus.ACTIVE, ConversationStatus.ENDED, True),
        (ConversationStatus.ACTIVE, ConversationStatus.PROCESSED, False),
        (ConversationStatus.ENDED, ConversationStatus.PROCESSED, True),
        (ConversationStatus.ENDED, ConversationStatus.ACTIVE, True),
        (ConversationStatus.PROCESSED, ConversationStatus.ACTIVE, True),
        (ConversationStatus.PROCESSED, ConversationStatus.ENDED, False),
        (ConversationStatus.ACTIVE, ConversationStatus.ACTIVE, False),
    ],
)
def test_status_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_conversation_end_and_process():
    conversation = Conversation(id="c1", session_key="s1")

    conversation.transition(ConversationStatus.ENDED, now=100.0)
    assert conversation.ended_at == 100.0
    conversation.transition(ConversationStatus.PROCESSED)
    assert conversation.status == ConversationStatus.PROCESSED

    with pytest.raises(ConversationTransitionError):
        conversation.transition(ConversationStatus.ENDED)


def test_new_message_reactivates_ended_conversation():
    conversation = Conversation(id="c1", session_key="s1")
    conversation.transition(ConversationStatus.ENDED, now=5.0)

    conversation.append(Message(role="user", content="one more thing"))

    assert conversation.status == ConversationStatus.ACTIVE
    assert conversation.ended_at is None
    assert conversation.message_count == 1


def test_parse_messages_skips_invalid_entries():
    messages = parse_messages(
        [
            {"role": "user", "content": "hi"},
            {"role": "system", "content": "ignored"},
            "not a dict",
            {"role": "assistant", "content": "Hello", "productsShown": ["Ametist", None]},
        ]
    )

    assert [message.role for message in messages] == ["user", "assistant"]
    assert messages[1].content == "Hello"
    assert messages[1].products_shown == ("Ametist",)
