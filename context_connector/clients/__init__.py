from .embedding_client import AsyncEmbeddingClient, EmbeddingClientError

__all__ = ["AsyncEmbeddingClient", "EmbeddingClientError"]
