from __future__ import annotations

import logging
import time
from typing import List, Optional, Sequence

import httpx

from storefront_chat.core.metrics import metrics
from storefront_chat.core.settings import DialogueSettings, get_settings

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 100


class EmbeddingBatchError(RuntimeError):
    """A batch failed; `completed` holds the vectors for every text before `failed_offset`."""

    def __init__(self, completed: List[List[float]], failed_offset: int, reason: str) -> None:
        super().__init__(f"embedding batch at offset {failed_offset} failed: {reason}")
        self.completed = completed
        self.failed_offset = failed_offset
        self.reason = reason


class EmbeddingClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        timeout_sec: Optional[float] = None,
        batch_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.embed_url).rstrip("/")
        self.model = model or settings.embed_model
        self.timeout_sec = timeout_sec if timeout_sec is not None else settings.embed_timeout_sec
        size = batch_size if batch_size is not None else settings.embed_batch_size
        self.batch_size = max(1, min(MAX_BATCH_SIZE, int(size)))
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: DialogueSettings) -> "EmbeddingClient":
        return cls(
            base_url=settings.embed_url,
            model=settings.embed_model,
            timeout_sec=settings.embed_timeout_sec,
            batch_size=settings.embed_batch_size,
        )

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        if not texts:
            return vectors
        started = time.perf_counter()
        async with httpx.AsyncClient(transport=self._transport) as client:
            for offset in range(0, len(texts), self.batch_size):
                batch = list(texts[offset : offset + self.batch_size])
                payload = {"version": "v1", "model": self.model, "texts": batch}
                try:
                    response = await client.post(f"{self.base_url}/embed", json=payload, timeout=self.timeout_sec)
                    response.raise_for_status()
                    data = response.json()
                except Exception as exc:
                    metrics.inc("sc_embed_requests_total", {"result": "error"})
                    raise EmbeddingBatchError(vectors, offset, str(exc) or type(exc).__name__) from exc
                batch_vectors = data.get("vectors") if isinstance(data, dict) else None
                if not isinstance(batch_vectors, list) or len(batch_vectors) != len(batch):
                    metrics.inc("sc_embed_requests_total", {"result": "invalid_response"})
                    raise EmbeddingBatchError(vectors, offset, "invalid_response")
                try:
                    converted = [[float(value) for value in vector] for vector in batch_vectors]
                except (TypeError, ValueError) as exc:
                    metrics.inc("sc_embed_requests_total", {"result": "invalid_response"})
                    raise EmbeddingBatchError(vectors, offset, "invalid_response") from exc
                vectors.extend(converted)
                metrics.inc("sc_embed_requests_total", {"result": "ok"})
        metrics.observe_ms("sc_embed_latency_ms", int((time.perf_counter() - started) * 1000))
        return vectors

    async def embed_query(self, text: str) -> Optional[List[float]]:
        try:
            vectors = await self.embed([text])
        except EmbeddingBatchError as exc:
            logger.warning("query embedding failed: %s", exc.reason)
            return None
        return vectors[0] if vectors else None
