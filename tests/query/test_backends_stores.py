from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from neo4j.exceptions import ServiceUnavailable
from qdrant_client.http.exceptions import UnexpectedResponse

from context_connector.query.backends import (
    MAX_TRAVERSAL_RESULTS,
    Neo4jHybridBackend,
    QdrantVectorSearchBackend,
    UnifiedGraphView,
)
from context_connector.query.errors import BackendResponseError, BackendUnavailableError
from context_connector.query.models import CandidateSource


class FakeQdrantClient:
    def __init__(self, points=None, error=None):
        self.points = points or []
        self.error = error
        self.calls = []
        self.closed = False

    async def query_points(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(points=self.points)

    async def close(self):
        self.closed = True


class FakeEmbedder:
    def __init__(self, vector=None):
        self.vector = vector or [0.1, 0.2, 0.3]
        self.queries = []

    async def embed_query(self, text):
        self.queries.append(text)
        return self.vector

    async def aclose(self):
        return None


def _point(id, score, /, **payload):
    return SimpleNamespace(id=id, score=score, payload=payload)


@pytest.mark.asyncio
async def test_qdrant_search_text_embeds_and_maps_points():
    client = FakeQdrantClient(
        points=[
            _point("p1", 0.9, id="chunk-1", heading="Validate JWT", text="body",
                   document_id="doc-1", content_type="section"),
            _point("p2", 0.6),
        ]
    )
    embedder = FakeEmbedder()
    backend = QdrantVectorSearchBackend(client, "chunks", embedder, vector_name="content")

    results = await backend.search_text("jwt", 4, 0.5, {"workspace_id": "w1"})

    assert embedder.queries == ["jwt"]
    call = client.calls[0]
    assert call["collection_name"] == "chunks"
    assert call["query"] == [0.1, 0.2, 0.3]
    assert call["limit"] == 4
    assert call["score_threshold"] == 0.5
    assert call["using"] == "content"
    assert call["query_filter"].must[0].key == "workspace_id"
    assert [c.id for c in results] == ["chunk-1", "p2"]
    assert results[0].title == "Validate JWT"
    assert results[0].content == "body"
    assert results[0].metadata == {"document_id": "doc-1"}
    assert results[0].content_type == "section"
    assert results[1].content_type == "code"


def test_qdrant_build_filter():
    assert QdrantVectorSearchBackend.build_filter(None) is None
    built = QdrantVectorSearchBackend.build_filter({"a": "x", "b": 2})
    assert [c.key for c in built.must] == ["a", "b"]
    assert [c.match.value for c in built.must] == ["x", 2]


@pytest.mark.asyncio
async def test_qdrant_without_embedder_is_unavailable():
    backend = QdrantVectorSearchBackend(FakeQdrantClient(), "chunks")
    with pytest.raises(BackendUnavailableError):
        await backend.search_text("q", 3)


@pytest.mark.asyncio
async def test_qdrant_unexpected_response():
    error = UnexpectedResponse(404, "Not Found", b"missing collection", httpx.Headers())
    backend = QdrantVectorSearchBackend(FakeQdrantClient(error=error), "chunks")
    with pytest.raises(BackendResponseError):
        await backend.search([0.1], 3)


@pytest.mark.asyncio
async def test_qdrant_connection_error():
    backend = QdrantVectorSearchBackend(
        FakeQdrantClient(error=httpx.ConnectError("refused")), "chunks"
    )
    with pytest.raises(BackendUnavailableError):
        await backend.search([0.1], 3)


@pytest.mark.asyncio
async def test_qdrant_aclose_closes_client():
    client = FakeQdrantClient()
    await QdrantVectorSearchBackend(client, "chunks").aclose()
    assert client.closed


class FakeResult:
    def __init__(self, records):
        self._records = records

    async def data(self):
        return self._records


class FakeSession:
    def __init__(self, driver):
        self.driver = driver

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def run(self, query, parameters=None, **kwargs):
        params = {**(parameters or {}), **kwargs}
        self.driver.queries.append((query, params))
        if self.driver.error is not None:
            raise self.driver.error
        return FakeResult(self.driver.responses.pop(0))


class FakeDriver:
    """Answers queries in order from a list of record lists."""

    def __init__(self, *responses, error=None):
        self.responses = list(responses)
        self.error = error
        self.queries = []
        self.databases = []
        self.close = AsyncMock()

    def session(self, database=None):
        self.databases.append(database)
        return FakeSession(self)


def _record(id, **fields):
    record = {"id": id, "title": id, "content": f"{id} body", "content_type": "chunk"}
    record.update(fields)
    return record


@pytest.mark.asyncio
async def test_neo4j_vector_search_scores_neighborhood():
    driver = FakeDriver(
        [_record("c1", score=0.9, workspace_id="w1"), _record("c2", score=0.7)],
        [{"id": "c1", "scores": [1.0, 0.5]}, {"id": "c2", "scores": []}],
    )
    backend = Neo4jHybridBackend(
        driver, FakeEmbedder(), vector_index="idx", database="graph"
    )

    results = await backend.search_text("jwt", 5, 0.5, {"workspace_id": "w1"})

    query, params = driver.queries[0]
    assert "db.index.vector.queryNodes" in query
    assert "node.workspace_id = $filter_workspace_id_0" in query
    assert params["filter_workspace_id_0"] == "w1"
    assert params["index_name"] == "idx"
    assert params["threshold"] == 0.5
    assert driver.databases == ["graph", "graph"]
    assert [c.id for c in results] == ["c1", "c2"]
    assert results[0].graph_score == pytest.approx(0.75)
    assert results[1].graph_score == 0.0
    assert results[0].metadata == {"workspace_id": "w1"}


@pytest.mark.asyncio
async def test_neo4j_vector_search_without_neighborhood_scoring():
    driver = FakeDriver([_record("c1", score=0.9)])
    backend = Neo4jHybridBackend(driver, score_vector_hits=False)

    results = await backend.search([0.1], 5)

    assert len(driver.queries) == 1
    assert results[0].graph_score == 0.0


def test_neo4j_rejects_unsafe_filter_keys():
    with pytest.raises(ValueError):
        Neo4jHybridBackend.build_where({"a} DETACH DELETE n //": 1}, {})


def test_neo4j_rejects_unsafe_relationship_types():
    with pytest.raises(ValueError):
        Neo4jHybridBackend(FakeDriver(), relationship_types=["CALLS]-(x"])


@pytest.mark.asyncio
async def test_neo4j_traverse_uses_literal_depth_and_maps_hops():
    driver = FakeDriver([_record("n1", hops=1, score=1.0), _record("n2", hops=2, score=0.5)])
    backend = Neo4jHybridBackend(driver, relationship_types=["CALLS", "IMPORTS"])

    results = await UnifiedGraphView(backend).traverse("seed", 7)

    query, params = driver.queries[0]
    assert "[rels:CALLS|IMPORTS*1..3]" in query
    assert params == {"seed_id": "seed", "max_results": MAX_TRAVERSAL_RESULTS}
    assert [c.relationship_depth for c in results] == [1, 2]
    assert results[1].graph_score == 0.5
    assert results[0].entity_id == "n1"
    assert all(c.source == CandidateSource.GRAPH_RELATED for c in results)


@pytest.mark.asyncio
async def test_neo4j_fulltext_search_normalizes_scores():
    driver = FakeDriver([_record("e1", score=4.0), _record("e2", score=1.0)])
    view = UnifiedGraphView(Neo4jHybridBackend(driver))

    results = await view.search("auth:service", 10)

    _, params = driver.queries[0]
    assert params["query"] == "auth\\:service"
    assert [c.graph_score for c in results] == [1.0, 0.25]
    assert results[0].source == CandidateSource.GRAPH


@pytest.mark.asyncio
async def test_neo4j_converts_driver_datetimes():
    native = datetime(2025, 5, 1, tzinfo=timezone.utc)
    stamp = SimpleNamespace(to_native=lambda: native)
    driver = FakeDriver([_record("c1", score=0.9, timestamp=stamp)])
    backend = Neo4jHybridBackend(driver, score_vector_hits=False)

    results = await backend.search([0.1], 1)

    assert results[0].timestamp == native


@pytest.mark.asyncio
async def test_neo4j_unavailable():
    driver = FakeDriver(error=ServiceUnavailable("connection refused"))
    backend = Neo4jHybridBackend(driver)
    with pytest.raises(BackendUnavailableError):
        await backend.traverse("seed", 1)


@pytest.mark.asyncio
async def test_neo4j_record_without_id():
    driver = FakeDriver([{"title": "orphan", "score": 0.9}])
    backend = Neo4jHybridBackend(driver, score_vector_hits=False)
    with pytest.raises(BackendResponseError):
        await backend.search([0.1], 1)
