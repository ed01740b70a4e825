from __future__ import annotations

import json
import logging
import re
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from storefront_chat.core.metrics import metrics
from storefront_chat.core.settings import DialogueSettings, get_settings

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class CompletionError(RuntimeError):
    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class CompletionClient:
    """Thin async client for the completion service (`POST /v1/generate`)."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_sec: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.llm_url).rstrip("/")
        self.model = model or settings.llm_model
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.llm_timeout_sec
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: DialogueSettings) -> "CompletionClient":
        return cls(base_url=settings.llm_url, model=settings.llm_model, timeout_sec=settings.llm_timeout_sec)

    async def complete(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float = 0.3,
        max_tokens: int = 300,
        trace_id: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> str:
        trace_id = trace_id or str(uuid.uuid4())
        request_id = request_id or str(uuid.uuid4())
        payload = {
            "version": "v1",
            "trace_id": trace_id,
            "request_id": request_id,
            "model": self.model,
            "max_tokens": max_tokens,
            "messages": messages,
            "temperature": temperature,
        }
        headers = {"x-trace-id": trace_id, "x-request-id": request_id}
        started = time.perf_counter()
        async with httpx.AsyncClient(transport=self._transport) as client:
            try:
                response = await client.post(
                    f"{self.base_url}/v1/generate", json=payload, headers=headers, timeout=self.timeout_sec
                )
            except (httpx.TimeoutException, httpx.NetworkError) as exc:
                metrics.inc("sc_llm_requests_total", {"result": "timeout"})
                raise CompletionError("timeout") from exc
        status_code = int(response.status_code)
        if status_code >= 400:
            metrics.inc("sc_llm_requests_total", {"result": f"http_{status_code}"})
            raise CompletionError(f"http_{status_code}", status_code=status_code)
        try:
            data = response.json()
        except Exception as exc:
            metrics.inc("sc_llm_requests_total", {"result": "invalid_json"})
            raise CompletionError("invalid_json") from exc
        content = data.get("content") if isinstance(data, dict) else None
        if not isinstance(content, str):
            metrics.inc("sc_llm_requests_total", {"result": "missing_content"})
            raise CompletionError("missing_content")
        metrics.inc("sc_llm_requests_total", {"result": "ok"})
        metrics.observe_ms("sc_llm_latency_ms", int((time.perf_counter() - started) * 1000))
        return content


def parse_json_reply(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a JSON object out of a model reply, tolerating markdown code fences."""
    if not content:
        return None
    cleaned = _FENCE_RE.sub("", content.strip()).strip()
    if not cleaned.startswith("{"):
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start < 0 or end <= start:
            return None
        cleaned = cleaned[start : end + 1]
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning("could not parse model reply as JSON")
        return None
    return parsed if isinstance(parsed, dict) else None
