from __future__ import annotations

import hashlib
import logging
import math
import re
import time
from typing import Protocol

import httpx

from relayrag.core.config import EMBED_DIM, get_settings
from relayrag.core.errors import EmbeddingError, ProviderConfigError
from relayrag.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r"\w+")
_WHITESPACE_RE = re.compile(r"\s+")


class EmbeddingClient(Protocol):
    async def embed(self, text: str) -> list[float]:
        ...


def clean_text(text: str) -> str:
    # Embedding quality degrades on raw newlines; collapse all whitespace runs.
    return _WHITESPACE_RE.sub(" ", text).strip()


def _hash_token(token: str) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    # Hash to a stable index within the fixed embedding dimension.
    idx = int(digest[:8], 16) % EMBED_DIM
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def hash_embedding(text: str) -> list[float]:
    vector = [0.0] * EMBED_DIM
    for token in _TOKEN_RE.findall(clean_text(text).lower()):
        idx, value = _hash_token(token)
        vector[idx] += value

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class HashEmbeddingClient:
    """Deterministic offline embeddings for local development and tests."""

    async def embed(self, text: str) -> list[float]:
        return hash_embedding(text)


class OpenAIEmbeddingClient:
    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout_s: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._api_key = api_key or settings.openai_api_key
        self._model = model or settings.embedding_model
        self._base_url = (base_url or settings.openai_base_url).rstrip("/")
        self._timeout_s = timeout_s or settings.embedding_timeout_s
        # Injectable transport keeps tests off the network.
        self._transport = transport

    async def embed(self, text: str) -> list[float]:
        if not self._api_key:
            raise ProviderConfigError("Embedding config missing: set OPENAI_API_KEY in .env.")
        payload = {"model": self._model, "input": clean_text(text)}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
                response = await client.post(f"{self._base_url}/embeddings", json=payload, headers=headers)
        except httpx.HTTPError as exc:
            record_external_call(integration="openai_embeddings", success=False)
            logger.warning("embedding_transport_error model=%s", self._model)
            raise EmbeddingError("Embedding request failed.") from exc

        if response.status_code >= 400:
            record_external_call(integration="openai_embeddings", success=False)
            logger.warning(
                "embedding_http_error model=%s status=%s body=%s",
                self._model,
                response.status_code,
                response.text[:500],
            )
            raise EmbeddingError(f"Embedding request failed with status {response.status_code}.")

        try:
            vector = response.json()["data"][0]["embedding"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            record_external_call(integration="openai_embeddings", success=False)
            raise EmbeddingError("Embedding response missing vector.") from exc
        if len(vector) != EMBED_DIM:
            raise EmbeddingError(f"Embedding dimension mismatch: expected {EMBED_DIM}, got {len(vector)}.")
        record_external_call(
            integration="openai_embeddings",
            success=True,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        return [float(v) for v in vector]


def get_embedding_client() -> EmbeddingClient:
    settings = get_settings()
    if settings.embedding_provider == "hash":
        return HashEmbeddingClient()
    if settings.embedding_provider == "openai":
        return OpenAIEmbeddingClient()
    raise ProviderConfigError(f"Unknown EMBEDDING_PROVIDER: {settings.embedding_provider}")
