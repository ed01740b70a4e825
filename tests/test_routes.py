from fastapi.testclient import TestClient

from storefront_chat.api import routes
from storefront_chat.core import conversation_store
from storefront_chat.core.conversation import ConversationStatus, ConversationTransitionError
from storefront_chat.main import app


def _disable_store(monkeypatch):
    monkeypatch.setattr(conversation_store, "_enabled", lambda: False)


def test_health_and_metrics():
    client = TestClient(app)

    assert client.get("/health").json() == {"status": "ok"}
    assert isinstance(client.get("/metrics").json(), dict)


def test_chat_turn_echoes_trace_headers(monkeypatch):
    _disable_store(monkeypatch)
    client = TestClient(app)

    response = client.post(
        "/v1/chat/turn",
        headers={"x-trace-id": "trace_abc", "x-request-id": "req_abc"},
        json={"conversation_id": "conv-1", "message": "Hej", "language": "sv", "use_llm": False, "use_retrieval": False},
    )

    assert response.status_code == 200
    assert response.headers["x-trace-id"] == "trace_abc"
    assert response.headers["x-request-id"] == "req_abc"
    payload = response.json()
    assert payload["trace_id"] == "trace_abc"
    assert payload["conversation_id"] == "conv-1"
    assert payload["intent"]["primary"] == "greeting"
    assert payload["product_context"]["allowed"] is False


def test_chat_turn_generates_ids_when_missing(monkeypatch):
    _disable_store(monkeypatch)
    client = TestClient(app)

    response = client.post("/v1/chat/turn", json={"message": "Hej", "use_llm": False, "use_retrieval": False})

    assert response.status_code == 200
    assert response.headers["x-trace-id"].startswith("trace_")
    assert response.json()["conversation_id"].startswith("conv_")


def test_chat_turn_rejects_invalid_json_body():
    client = TestClient(app)

    response = client.post("/v1/chat/turn", content="{invalid", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_request"


def test_chat_turn_rejects_missing_message():
    client = TestClient(app)

    response = client.post("/v1/chat/turn", json={"conversation_id": "c"})

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_request"


def test_chat_reply_strips_premature_markers(monkeypatch):
    _disable_store(monkeypatch)
    client = TestClient(app)

    response = client.post(
        "/v1/chat/reply",
        json={
            "conversation_id": "conv-2",
            "message": "hmm",
            "reply": "Maybe {{Ametist}} is for you.",
            "intent": {"primary": "unclear", "confidence": 0},
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert "{{" not in payload["reply"]
    assert payload["card_gate"]["suppress_cards"] is True
    assert payload["cards"] == []


def test_conversation_score_route():
    client = TestClient(app)

    response = client.post("/v1/conversations/score", json={"messages": [{"role": "user", "content": "Hej"}]})

    assert response.status_code == 200
    assert response.json()["score"] == 50


def test_conversation_end_route(monkeypatch):
    _disable_store(monkeypatch)
    client = TestClient(app)

    response = client.post(
        "/v1/conversations/conv-3/end",
        json={"messages": [{"role": "user", "content": "Hej"}], "extract_insights": False},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "processed"
    assert payload["quality"]["score"] == 50
    assert payload["insights"] is None


def test_conversation_end_route_rejects_processed(monkeypatch):
    async def fake_end_conversation(conversation_id, messages=None, **kwargs):
        raise ConversationTransitionError(ConversationStatus.PROCESSED, ConversationStatus.ENDED)

    monkeypatch.setattr(routes, "end_conversation", fake_end_conversation)
    client = TestClient(app)

    response = client.post("/v1/conversations/conv-4/end", json={})

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "invalid_transition"
