import asyncio
import json

import httpx
import pytest

from storefront_chat.core.llm_client import CompletionClient, CompletionError, parse_json_reply


def _client(handler):
    return CompletionClient(
        base_url="http://llm.test/",
        model="toy-rag-v1",
        timeout_sec=1.0,
        transport=httpx.MockTransport(handler),
    )


def test_complete_posts_generate_request_with_trace_headers():
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["headers"] = dict(request.headers)
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"content": "hello"})

    content = asyncio.run(
        _client(handler).complete(
            [{"role": "user", "content": "hi"}],
            max_tokens=50,
            trace_id="trace_1",
            request_id="req_1",
        )
    )

    assert content == "hello"
    assert captured["url"] == "http://llm.test/v1/generate"
    assert captured["headers"]["x-trace-id"] == "trace_1"
    assert captured["body"]["model"] == "toy-rag-v1"
    assert captured["body"]["max_tokens"] == 50
    assert captured["body"]["messages"] == [{"role": "user", "content": "hi"}]


def test_complete_raises_on_http_error():
    def handler(request):
        return httpx.Response(503, json={"error": "busy"})

    with pytest.raises(CompletionError) as excinfo:
        asyncio.run(_client(handler).complete([{"role": "user", "content": "hi"}]))

    assert excinfo.value.reason == "http_503"
    assert excinfo.value.status_code == 503


def test_complete_raises_on_missing_content():
    def handler(request):
        return httpx.Response(200, json={"text": "wrong field"})

    with pytest.raises(CompletionError) as excinfo:
        asyncio.run(_client(handler).complete([{"role": "user", "content": "hi"}]))

    assert excinfo.value.reason == "missing_content"


def test_parse_json_reply_strips_fences():
    assert parse_json_reply('```json\n{"primary_intent": "search"}\n```') == {"primary_intent": "search"}
    assert parse_json_reply('```\n{"a": 1}\n```') == {"a": 1}


def test_parse_json_reply_extracts_embedded_object():
    assert parse_json_reply('Sure! Here it is: {"topics": ["shipping"]} hope that helps') == {"topics": ["shipping"]}


def test_parse_json_reply_returns_none_on_garbage():
    assert parse_json_reply("no json here") is None
    assert parse_json_reply("{broken") is None
    assert parse_json_reply("") is None
    assert parse_json_reply("[1, 2]") is None
