import asyncio

from storefront_chat.core import conversation_store
from storefront_chat.core.cache import CacheClient
from storefront_chat.core.conversation import ConversationStatus, Message
from storefront_chat.core.dialogue import end_conversation, finalize_reply, run_turn
from storefront_chat.core.handoff import load_tracker
from storefront_chat.core.intent_classifier import IntentResult
from storefront_chat.core.retriever import CatalogItem, ScoredItem
from storefront_chat.core.settings import DialogueSettings


class _FakeEmbedClient:
    def __init__(self, vector):
        self.vector = vector
        self.queries = []

    async def embed_query(self, text):
        self.queries.append(text)
        return self.vector


class _HangingEmbedClient:
    async def embed_query(self, text):
        await asyncio.sleep(10)


class _FakeCompletionClient:
    def __init__(self, content):
        self.content = content

    async def complete(self, messages, **kwargs):
        return self.content


CATALOG = [
    CatalogItem(
        id="p1",
        type="product",
        title="Ametist",
        embedding=(0.9, 0.43588989),
        url="https://shop/p1",
        image_url="https://cdn/p1.jpg",
    ),
    CatalogItem(id="page1", type="page", title="Frakt", embedding=(0.2, 0.9797959)),
]


def _run(coro):
    return asyncio.run(coro)


def test_greeting_turn_skips_products_and_handoff():
    result = _run(run_turn("c1", "Hej", [], language="sv", cache=CacheClient(None), settings=DialogueSettings()))

    assert result.intent.primary == "greeting"
    assert result.state.journey_stage == "exploring"
    assert result.gate.allowed is False
    assert result.retrieval is None
    assert result.handoff.needed is False
    assert result.handoff_text is None
    assert result.degraded == []
    assert result.to_dict()["language"] == "sv"


def test_price_question_retrieves_products():
    embed = _FakeEmbedClient([1.0, 0.0])

    result = _run(
        run_turn(
            "c2",
            "vad kostar ametisten?",
            [],
            language="sv",
            catalog=CATALOG,
            embed_client=embed,
            cache=CacheClient(None),
            settings=DialogueSettings(),
        )
    )

    assert embed.queries == ["vad kostar ametisten?"]
    assert result.gate.allowed is True
    assert result.gate.bypass_discovery is True
    assert [entry.item.id for entry in result.retrieval.products] == ["p1"]


def test_early_search_keeps_products_out_of_context():
    result = _run(
        run_turn(
            "c3",
            "I need a necklace",
            [],
            language="en",
            catalog=CATALOG,
            embed_client=_FakeEmbedClient([1.0, 0.0]),
            cache=CacheClient(None),
            settings=DialogueSettings(),
        )
    )

    assert result.gate.allowed is False
    assert result.retrieval.products == []
    assert result.prompt_addition


def test_embedding_failure_degrades_retrieval():
    result = _run(
        run_turn(
            "c4",
            "vad kostar ametisten?",
            [],
            catalog=CATALOG,
            embed_client=_FakeEmbedClient(None),
            cache=CacheClient(None),
            settings=DialogueSettings(),
        )
    )

    assert "retrieval" in result.degraded
    assert result.retrieval.low_confidence is True


def test_hung_embedding_service_degrades_retrieval():
    result = _run(
        run_turn(
            "c4b",
            "vad kostar ametisten?",
            [],
            catalog=CATALOG,
            embed_client=_HangingEmbedClient(),
            cache=CacheClient(None),
            settings=DialogueSettings(embed_timeout_sec=0.01),
        )
    )

    assert "retrieval" in result.degraded
    assert result.retrieval.products == []


def test_human_request_produces_handoff_text_and_persists_tracker():
    cache = CacheClient(None)

    result = _run(
        run_turn(
            "c5",
            "I want to talk to a human",
            [],
            language="en",
            contact={"email": "help@shop.test"},
            cache=cache,
            settings=DialogueSettings(),
        )
    )

    assert result.handoff.needed is True
    assert result.handoff.reason == "customer_request"
    assert "help@shop.test" in result.handoff_text
    assert cache.get_json("sc:handoff:c5") is not None


def test_finalize_reply_strips_premature_cards_and_tracks_uncertainty():
    cache = CacheClient(None)
    products = [ScoredItem(CATALOG[0], 0.9)]

    result = finalize_reply(
        "c6",
        "hmm",
        "I'm not sure, but maybe {{Ametist}}",
        [],
        IntentResult(primary="unclear"),
        language="en",
        products=products,
        cache=cache,
        settings=DialogueSettings(),
    )

    assert result.gate.suppress_cards is True
    assert result.cards == []
    assert "{{" not in result.reply
    assert result.uncertain is True
    assert load_tracker("c6", cache).uncertain_response_count == 1


def test_finalize_reply_keeps_cards_for_purchase():
    products = [ScoredItem(CATALOG[0], 0.9)]

    result = finalize_reply(
        "c7",
        "add to cart please",
        "Great, here it is: {{Ametist}}",
        [],
        IntentResult(primary="purchase", confidence=16),
        products=products,
        cache=CacheClient(None),
        settings=DialogueSettings(),
    )

    assert result.gate.allowed is True
    assert [entry.item.id for entry in result.cards] == ["p1"]
    assert result.reply == "Great, here it is: {{Ametist}}"


def test_finalize_reply_without_markers_shows_no_cards():
    products = [ScoredItem(CATALOG[0], 0.9)]

    result = finalize_reply(
        "c8",
        "hej",
        "Hej! Vad letar du efter?",
        [],
        IntentResult(primary="greeting", confidence=10),
        language="sv",
        products=products,
        cache=CacheClient(None),
        settings=DialogueSettings(),
    )

    assert result.gate.allowed is True
    assert result.gate.reason == "no_products_in_response"
    assert result.cards == []


def test_end_conversation_scores_and_extracts_insights(monkeypatch):
    monkeypatch.setattr(conversation_store, "_enabled", lambda: False)
    messages = [
        Message(role="user", content="Do you ship to Norway?"),
        Message(role="assistant", content="Yes, we ship to Norway."),
    ]
    client = _FakeCompletionClient('{"topics": ["Shipping"], "sentiment": "neutral", "unresolved": []}')

    result = _run(end_conversation("c8", messages, llm_client=client, settings=DialogueSettings()))

    assert result.status == ConversationStatus.PROCESSED
    assert result.score.message_count == 2
    assert result.insights.topics == ("shipping",)
    assert result.insights.sentiment == "neutral"
    assert result.insights_saved == 0


def test_end_conversation_without_messages_or_llm(monkeypatch):
    monkeypatch.setattr(conversation_store, "_enabled", lambda: False)

    result = _run(end_conversation("c9", settings=DialogueSettings()))

    assert result.status == ConversationStatus.PROCESSED
    assert result.insights is None
    assert result.score.breakdown["very_short"] is True


def test_end_conversation_clears_handoff_tracker(monkeypatch):
    monkeypatch.setattr(conversation_store, "_enabled", lambda: False)
    cache = CacheClient(None)
    _run(run_turn("c10", "I want to talk to a human", [], cache=cache, settings=DialogueSettings()))
    assert cache.get_json("sc:handoff:c10") is not None

    _run(end_conversation("c10", [], cache=cache, settings=DialogueSettings()))

    assert cache.get_json("sc:handoff:c10") is None


def test_turn_payload_describes_intent_and_llm_signals():
    client = _FakeCompletionClient(
        '{"primary_intent": "price_objection", "confidence": 0.9, "sentiment": "negative", '
        '"reasoning": "finds it too expensive"}'
    )

    payload = _run(
        run_turn("c11", "zzz", [], llm_client=client, cache=CacheClient(None), settings=DialogueSettings())
    ).to_dict()

    assert payload["intent"]["primary"] == "price_check"
    assert payload["intent_description"] == "User is asking about price"
    assert payload["intent_signals"] == {"price_objection": True, "sentiment": "negative"}
