from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx


class EmbeddingClientError(RuntimeError):
    """Raised when an embedding HTTP call fails."""


class AsyncEmbeddingClient:
    """Async client for an OpenAI-compatible ``/v1/embeddings`` service.

    Used to turn query text into a dense vector for backends that only accept
    vectors (Qdrant, the unified graph store).
    """

    def __init__(
        self,
        base_url: str,
        model: str = "BAAI/bge-m3",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url
        self._model = model
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self._base_url, timeout=timeout
        )

    @property
    def model(self) -> str:
        return self._model

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def embed_query(self, text: str) -> List[float]:
        vectors = await self.embed_dense([text])
        if not vectors:
            raise EmbeddingClientError("Embedding service returned no vectors")
        return vectors[0]

    async def embed_dense(self, texts: List[str]) -> List[List[float]]:
        """Return dense embeddings using /v1/embeddings."""

        payload: Dict[str, Any] = {
            "model": self._model,
            "input": texts,
            "encoding_format": "float",
        }
        try:
            response = await self._client.post("/v1/embeddings", json=payload)
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(f"Embedding service unreachable: {exc}") from exc

        if response.status_code != 200:
            raise EmbeddingClientError(
                f"Embedding service HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()["data"]
            return [[float(x) for x in item["embedding"]] for item in data]
        except (ValueError, KeyError, TypeError) as exc:
            raise EmbeddingClientError(
                f"Malformed embedding response: {exc}"
            ) from exc


__all__ = ["AsyncEmbeddingClient", "EmbeddingClientError"]
