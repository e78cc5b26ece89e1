"""
Retrieval backends.

Two small interfaces, one implementation per deployment topology:

- Federated: ``HttpVectorSearchBackend`` (embeddings service) or
  ``QdrantVectorSearchBackend`` paired with ``HttpGraphSearchBackend``
  (relation-graph service).
- Unified: ``Neo4jHybridBackend`` (vector side) and ``UnifiedGraphView`` over
  it (graph side) query one graph store with a native vector index.

Backends raise ``BackendUnavailableError`` for transport failures and
``BackendResponseError`` for unusable answers. Failing open is the engine's
job, not theirs.
"""

import re
from typing import Any, Dict, List, Optional, Sequence
from urllib.parse import quote

import httpx
from neo4j import AsyncDriver
from neo4j.exceptions import Neo4jError, ServiceUnavailable, SessionExpired
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import FieldCondition, Filter, MatchValue

from context_connector.clients.embedding_client import (
    AsyncEmbeddingClient,
    EmbeddingClientError,
)
from context_connector.query.errors import (
    BackendResponseError,
    BackendUnavailableError,
)
from context_connector.query.models import Candidate, CandidateSource
from context_connector.query.ranking import graph_relevance
from context_connector.shared.observability import get_logger

logger = get_logger(__name__)

MAX_TRAVERSAL_DEPTH = 3
MAX_TRAVERSAL_RESULTS = 50
DEFAULT_GRAPH_CENTRALITY = 0.5

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_LUCENE_SPECIAL_RE = re.compile(r'([+\-!(){}\[\]^"~*?:\\/]|&&|\|\|)')


def clamp_depth(depth: int) -> int:
    """Clamp a traversal depth into [1, MAX_TRAVERSAL_DEPTH]."""
    return max(1, min(MAX_TRAVERSAL_DEPTH, int(depth)))


def finalize_vector_results(
    candidates: List[Candidate], limit: int, threshold: float
) -> List[Candidate]:
    """Enforce the vector contract: >= threshold, descending, at most limit."""
    kept = [c for c in candidates if c.semantic_score >= threshold]
    kept.sort(key=lambda c: c.semantic_score, reverse=True)
    return kept[: max(0, limit)]


def _timestamp_from(data: Dict[str, Any]) -> Optional[str]:
    return data.get("updated_at") or data.get("timestamp") or data.get("created_at")


def _as_float(value: Any, field: str, backend: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise BackendResponseError(
            f"Non-numeric {field} in {backend} response: {value!r}", backend=backend
        ) from None


class VectorSearchBackend:
    """Abstract interface for similarity search."""

    name = "vector"

    async def search(
        self,
        query_vector: List[float],
        limit: int,
        threshold: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Candidate]:
        raise NotImplementedError

    async def search_text(
        self,
        query: str,
        limit: int,
        threshold: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Candidate]:
        """Search by text; embedding is delegated to the backend side."""
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class GraphSearchBackend:
    """Abstract interface for entity search and relationship traversal."""

    name = "graph"

    async def search(self, query: str, limit: int) -> List[Candidate]:
        raise NotImplementedError

    async def traverse(self, seed_id: str, depth: int) -> List[Candidate]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class _HttpBackend:
    """Shared httpx plumbing for the federated services."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise BackendUnavailableError(
                f"{self.name} request to {path} failed: {e}", backend=self.name
            ) from e

        if response.status_code < 200 or response.status_code >= 300:
            raise BackendResponseError(
                f"{self.name} returned HTTP {response.status_code} for {path}",
                backend=self.name,
                data={"status_code": response.status_code},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise BackendResponseError(
                f"{self.name} returned invalid JSON for {path}", backend=self.name
            ) from e

        if not isinstance(body, dict):
            raise BackendResponseError(
                f"{self.name} returned a non-object body for {path}",
                backend=self.name,
            )
        return body


def build_http_filter(filters: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Equality constraints in the embeddings service's where-clause format."""
    if not filters:
        return None
    clauses = [{key: value} for key, value in filters.items()]
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class HttpVectorSearchBackend(_HttpBackend, VectorSearchBackend):
    """Vector search over the federated embeddings service."""

    name = "http_vector"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        include_content: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url, timeout=timeout, client=client)
        self.include_content = include_content

    async def search(
        self,
        query_vector: List[float],
        limit: int,
        threshold: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Candidate]:
        return await self._search(
            {"vector": list(query_vector)}, limit, threshold, filters
        )

    async def search_text(
        self,
        query: str,
        limit: int,
        threshold: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Candidate]:
        return await self._search({"query": query}, limit, threshold, filters)

    async def _search(
        self,
        query_part: Dict[str, Any],
        limit: int,
        threshold: float,
        filters: Optional[Dict[str, Any]],
    ) -> List[Candidate]:
        payload: Dict[str, Any] = {
            **query_part,
            "limit": limit,
            "threshold": threshold,
            "include_content": self.include_content,
        }
        where = build_http_filter(filters)
        if where is not None:
            payload["filters"] = where

        body = await self._request("POST", "/api/v1/search", json=payload)
        results = body.get("results")
        if results is None:
            results = []
        if not isinstance(results, list):
            raise BackendResponseError(
                "embeddings service 'results' is not a list", backend=self.name
            )

        candidates = [self._to_candidate(hit) for hit in results]
        return finalize_vector_results(candidates, limit, threshold)

    def _to_candidate(self, hit: Any) -> Candidate:
        if not isinstance(hit, dict) or hit.get("id") is None:
            raise BackendResponseError(
                "embeddings service hit is missing 'id'", backend=self.name
            )
        metadata = {
            key: hit[key]
            for key in ("source_id", "chunk_id", "document_id", "source")
            if hit.get(key) is not None
        }
        return Candidate(
            id=str(hit["id"]),
            entity_id=hit.get("entity_id"),
            title=hit.get("title") or "",
            content=hit.get("content") or hit.get("text") or "",
            path=hit.get("path"),
            source=CandidateSource.VECTOR,
            content_type=hit.get("content_type") or "code",
            semantic_score=_as_float(hit.get("score"), "score", self.name),
            timestamp=_timestamp_from(hit),
            metadata=metadata,
        )


class QdrantVectorSearchBackend(VectorSearchBackend):
    """Vector search over a Qdrant collection."""

    name = "qdrant"

    def __init__(
        self,
        client: AsyncQdrantClient,
        collection_name: str,
        embedder: Optional[AsyncEmbeddingClient] = None,
        *,
        vector_name: Optional[str] = None,
    ):
        self.client = client
        self.collection_name = collection_name
        self.embedder = embedder
        self.vector_name = vector_name

    async def aclose(self) -> None:
        await self.client.close()
        if self.embedder is not None:
            await self.embedder.aclose()

    @staticmethod
    def build_filter(filters: Optional[Dict[str, Any]]) -> Optional[Filter]:
        if not filters:
            return None
        return Filter(
            must=[
                FieldCondition(key=key, match=MatchValue(value=value))
                for key, value in filters.items()
            ]
        )

    async def search(
        self,
        query_vector: List[float],
        limit: int,
        threshold: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Candidate]:
        query_kwargs: Dict[str, Any] = {
            "collection_name": self.collection_name,
            "query": list(query_vector),
            "limit": limit,
            "query_filter": self.build_filter(filters),
            "score_threshold": threshold,
            "with_payload": True,
        }
        if self.vector_name:
            query_kwargs["using"] = self.vector_name

        try:
            response = await self.client.query_points(**query_kwargs)
        except (UnexpectedResponse, ResponseHandlingException) as e:
            raise BackendResponseError(
                f"Qdrant search failed: {e}", backend=self.name
            ) from e
        except (httpx.HTTPError, OSError) as e:
            raise BackendUnavailableError(
                f"Qdrant unreachable: {e}", backend=self.name
            ) from e

        candidates = [self._to_candidate(point) for point in response.points]
        return finalize_vector_results(candidates, limit, threshold)

    async def search_text(
        self,
        query: str,
        limit: int,
        threshold: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Candidate]:
        if self.embedder is None:
            raise BackendUnavailableError(
                "Qdrant text search requires an embedding client", backend=self.name
            )
        try:
            vector = await self.embedder.embed_query(query)
        except EmbeddingClientError as e:
            raise BackendUnavailableError(
                f"Query embedding failed: {e}", backend=self.name
            ) from e
        return await self.search(vector, limit, threshold, filters)

    def _to_candidate(self, point: Any) -> Candidate:
        payload = dict(point.payload or {})
        return Candidate(
            id=str(payload.get("id") or point.id),
            entity_id=payload.get("entity_id"),
            title=payload.get("title") or payload.get("heading") or "",
            content=payload.get("content") or payload.get("text") or "",
            path=payload.get("path"),
            source=CandidateSource.VECTOR,
            content_type=payload.get("content_type") or "code",
            semantic_score=float(point.score),
            timestamp=_timestamp_from(payload),
            metadata={
                key: payload[key]
                for key in ("source_id", "chunk_id", "document_id", "workspace_id")
                if payload.get(key) is not None
            },
        )


class HttpGraphSearchBackend(_HttpBackend, GraphSearchBackend):
    """Entity search and neighbor traversal over the relation-graph service."""

    name = "http_graph"

    async def search(self, query: str, limit: int) -> List[Candidate]:
        body = await self._request(
            "POST",
            "/api/search",
            json={"query": query, "limit": limit, "include_entities": True},
        )
        entities = body.get("entities") or []
        if not isinstance(entities, list):
            raise BackendResponseError(
                "relation-graph 'entities' is not a list", backend=self.name
            )
        return [self._entity_to_candidate(e) for e in entities][:limit]

    async def traverse(self, seed_id: str, depth: int) -> List[Candidate]:
        depth = clamp_depth(depth)
        body = await self._request(
            "GET",
            f"/api/graph/entities/{quote(str(seed_id), safe='')}/neighbors",
            params={"depth": depth},
        )
        neighbors = body.get("neighbors") or []
        if not isinstance(neighbors, list):
            raise BackendResponseError(
                "relation-graph 'neighbors' is not a list", backend=self.name
            )
        return [
            self._neighbor_to_candidate(n, depth)
            for n in neighbors[:MAX_TRAVERSAL_RESULTS]
        ]

    def _entity_to_candidate(self, entity: Any) -> Candidate:
        if not isinstance(entity, dict) or entity.get("id") is None:
            raise BackendResponseError(
                "relation-graph entity is missing 'id'", backend=self.name
            )
        entity_id = str(entity["id"])
        centrality = entity.get("centrality")
        depth = entity.get("depth")
        return Candidate(
            id=entity_id,
            entity_id=entity_id,
            title=entity.get("name") or "",
            content=entity.get("content") or "",
            path=entity.get("path"),
            source=CandidateSource.GRAPH,
            content_type=entity.get("entity_type") or "entity",
            graph_score=(
                DEFAULT_GRAPH_CENTRALITY
                if centrality is None
                else _as_float(centrality, "centrality", self.name)
            ),
            relationship_depth=1 if depth is None else int(depth),
            related_ids=[str(r) for r in entity.get("related_ids") or []],
            timestamp=_timestamp_from(entity),
        )

    def _neighbor_to_candidate(self, neighbor: Any, depth: int) -> Candidate:
        if not isinstance(neighbor, dict) or neighbor.get("id") is None:
            raise BackendResponseError(
                "relation-graph neighbor is missing 'id'", backend=self.name
            )
        hops = int(neighbor.get("depth") or depth)
        weight = neighbor.get("weight")
        neighbor_id = str(neighbor["id"])
        return Candidate(
            id=neighbor_id,
            entity_id=neighbor_id,
            title=neighbor.get("name") or "",
            content=neighbor.get("content") or "",
            path=neighbor.get("path"),
            source=CandidateSource.GRAPH_RELATED,
            content_type=neighbor.get("entity_type") or "entity",
            graph_score=(
                1.0 / hops if weight is None else _as_float(weight, "weight", self.name)
            ),
            relationship_depth=hops,
        )


def _lucene_escape(text: str) -> str:
    return _LUCENE_SPECIAL_RE.sub(r"\\\1", text)


def _safe_identifier(value: str) -> str:
    if not _IDENTIFIER_RE.match(value):
        raise ValueError(f"Unsafe Cypher identifier: {value!r}")
    return value


_NODE_PROJECTION = """
       node.id AS id,
       node.entity_id AS entity_id,
       coalesce(node.title, node.name, '') AS title,
       coalesce(node.chunk_text, node.content, node.text, '') AS content,
       node.path AS path,
       coalesce(node.content_type, toLower(labels(node)[0]), 'chunk') AS content_type,
       node.source_id AS source_id,
       node.document_id AS document_id,
       node.workspace_id AS workspace_id,
       coalesce(node.updated_at, node.created_at) AS timestamp"""


class Neo4jHybridBackend(VectorSearchBackend):
    """
    Unified topology: one Neo4j-compatible store holds chunks, entities,
    relationships and a vector index.

    Vector hits can be given a graph score from their own neighborhood (mean
    of ``1 / hops`` over neighbors), which together with the "unified" weight
    profile yields ``semantic * 0.7 + graph_relevance * 0.3``.
    """

    name = "neo4j"

    def __init__(
        self,
        driver: AsyncDriver,
        embedder: Optional[AsyncEmbeddingClient] = None,
        *,
        vector_index: str = "vector_chunk_embedding",
        fulltext_index: str = "entity_fulltext",
        relationship_types: Optional[Sequence[str]] = None,
        score_vector_hits: bool = True,
        relevance_depth: int = 2,
        database: Optional[str] = None,
    ):
        self.driver = driver
        self.embedder = embedder
        self.vector_index = vector_index
        self.fulltext_index = fulltext_index
        self.relationship_types = [
            _safe_identifier(t) for t in (relationship_types or [])
        ]
        self.score_vector_hits = score_vector_hits
        self.relevance_depth = clamp_depth(relevance_depth)
        self.database = database

    async def aclose(self) -> None:
        await self.driver.close()
        if self.embedder is not None:
            await self.embedder.aclose()

    def _rel_pattern(self, depth: int) -> str:
        # Depth must be a literal in the pattern, not a parameter
        types = "|".join(self.relationship_types)
        return f"[rels{':' + types if types else ''}*1..{depth}]"

    async def _run(self, query: str, /, **params: Any) -> List[Dict[str, Any]]:
        try:
            async with self.driver.session(database=self.database) as session:
                result = await session.run(query, params)
                return await result.data()
        except (ServiceUnavailable, SessionExpired) as e:
            raise BackendUnavailableError(
                f"Neo4j unavailable: {e}", backend=self.name
            ) from e
        except Neo4jError as e:
            raise BackendResponseError(
                f"Neo4j query failed: {e}", backend=self.name
            ) from e

    @staticmethod
    def build_where(
        filters: Optional[Dict[str, Any]], params: Dict[str, Any]
    ) -> str:
        """Translate equality filters into ``AND node.k = $param`` clauses."""
        clauses = []
        for index, (key, value) in enumerate((filters or {}).items()):
            safe_key = _safe_identifier(key)
            param_name = f"filter_{safe_key}_{index}"
            clauses.append(f"node.{safe_key} = ${param_name}")
            params[param_name] = value
        return "".join(f" AND {clause}" for clause in clauses)

    async def search(
        self,
        query_vector: List[float],
        limit: int,
        threshold: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Candidate]:
        params: Dict[str, Any] = {
            "index_name": self.vector_index,
            "k": limit,
            "vector": list(query_vector),
            "threshold": threshold,
        }
        where_extra = self.build_where(filters, params)
        query = f"""
        CALL db.index.vector.queryNodes($index_name, $k, $vector)
        YIELD node, score
        WHERE score >= $threshold{where_extra}
        RETURN {_NODE_PROJECTION},
               score
        ORDER BY score DESC
        LIMIT $k
        """
        records = await self._run(query, **params)
        candidates = [
            self._record_to_candidate(
                r, CandidateSource.VECTOR, semantic_score=float(r["score"])
            )
            for r in records
        ]

        if self.score_vector_hits and candidates:
            relevance = await self._neighborhood_relevance([c.id for c in candidates])
            for candidate in candidates:
                candidate.graph_score = relevance.get(candidate.id, 0.0)

        return finalize_vector_results(candidates, limit, threshold)

    async def search_text(
        self,
        query: str,
        limit: int,
        threshold: float = 0.0,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Candidate]:
        if self.embedder is None:
            raise BackendUnavailableError(
                "Neo4j text search requires an embedding client", backend=self.name
            )
        try:
            vector = await self.embedder.embed_query(query)
        except EmbeddingClientError as e:
            raise BackendUnavailableError(
                f"Query embedding failed: {e}", backend=self.name
            ) from e
        return await self.search(vector, limit, threshold, filters)

    async def search_graph(self, query: str, limit: int) -> List[Candidate]:
        """Fulltext entity match; Lucene scores are normalized to [0, 1]."""
        records = await self._run(
            f"""
            CALL db.index.fulltext.queryNodes($index_name, $query)
            YIELD node, score
            RETURN {_NODE_PROJECTION},
                   score
            ORDER BY score DESC
            LIMIT $limit
            """,
            index_name=self.fulltext_index,
            query=_lucene_escape(query),
            limit=limit,
        )
        top = max((float(r["score"]) for r in records), default=0.0)
        candidates = []
        for r in records:
            candidate = self._record_to_candidate(
                r,
                CandidateSource.GRAPH,
                graph_score=float(r["score"]) / top if top > 0 else 0.0,
            )
            candidate.entity_id = candidate.entity_id or candidate.id
            candidates.append(candidate)
        return candidates

    async def traverse(self, seed_id: str, depth: int) -> List[Candidate]:
        depth = clamp_depth(depth)
        records = await self._run(
            f"""
            MATCH (seed {{id: $seed_id}})-{self._rel_pattern(depth)}-(node)
            WHERE node.id <> $seed_id
            WITH node, min(size(rels)) AS hops
            RETURN {_NODE_PROJECTION},
                   hops,
                   1.0 / hops AS score
            ORDER BY hops ASC, id ASC
            LIMIT $max_results
            """,
            seed_id=seed_id,
            max_results=MAX_TRAVERSAL_RESULTS,
        )
        neighbors = []
        for r in records:
            candidate = self._record_to_candidate(
                r,
                CandidateSource.GRAPH_RELATED,
                graph_score=float(r["score"]),
                relationship_depth=int(r["hops"]),
            )
            candidate.entity_id = candidate.entity_id or candidate.id
            neighbors.append(candidate)
        return neighbors

    async def _neighborhood_relevance(self, ids: List[str]) -> Dict[str, float]:
        records = await self._run(
            f"""
            UNWIND $ids AS cid
            MATCH (c {{id: cid}})
            OPTIONAL MATCH (c)-{self._rel_pattern(self.relevance_depth)}-(related)
            WHERE related.id <> cid
            WITH cid, related, min(size(rels)) AS hops
            RETURN cid AS id, collect(1.0 / hops)[..$max_results] AS scores
            """,
            ids=ids,
            max_results=MAX_TRAVERSAL_RESULTS,
        )
        return {r["id"]: graph_relevance(r["scores"] or []) for r in records}

    def _record_to_candidate(
        self, record: Dict[str, Any], source: CandidateSource, **scores: Any
    ) -> Candidate:
        if record.get("id") is None:
            raise BackendResponseError("Neo4j node is missing 'id'", backend=self.name)
        timestamp = record.get("timestamp")
        if timestamp is not None and not isinstance(timestamp, str):
            # neo4j.time.DateTime
            to_native = getattr(timestamp, "to_native", None)
            timestamp = to_native() if to_native else None
        return Candidate(
            id=str(record["id"]),
            entity_id=record.get("entity_id"),
            title=record.get("title") or "",
            content=record.get("content") or "",
            path=record.get("path"),
            source=source,
            content_type=record.get("content_type") or "chunk",
            timestamp=timestamp,
            metadata={
                key: record[key]
                for key in ("source_id", "document_id", "workspace_id")
                if record.get(key) is not None
            },
            **scores,
        )


class UnifiedGraphView(GraphSearchBackend):
    """Exposes ``Neo4jHybridBackend`` graph operations under the graph interface."""

    name = "neo4j_graph"

    def __init__(self, backend: Neo4jHybridBackend):
        self.backend = backend

    async def search(self, query: str, limit: int) -> List[Candidate]:
        return await self.backend.search_graph(query, limit)

    async def traverse(self, seed_id: str, depth: int) -> List[Candidate]:
        return await self.backend.traverse(seed_id, depth)
