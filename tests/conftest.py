# Shared fixtures: in-memory backends and an engine builder.
# No network services are needed for the unit suite.

import asyncio
import copy
import os
from typing import Dict, List, Optional

import pytest

os.environ["ENV"] = "development"

from context_connector.query.backends import (  # noqa: E402
    GraphSearchBackend,
    VectorSearchBackend,
)
from context_connector.query.hybrid_retrieval import HybridRetrievalEngine  # noqa: E402
from context_connector.query.models import (  # noqa: E402
    Candidate,
    CandidateSource,
    ExpandedQuery,
)


class FakeVectorBackend(VectorSearchBackend):
    """Returns fresh copies of canned hits so repeated searches are identical."""

    name = "fake_vector"

    def __init__(
        self,
        results: Optional[List[Candidate]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.results = results or []
        self.error = error
        self.delay = delay
        self.calls: List[Dict] = []

    async def search_text(self, query, limit, threshold=0.0, filters=None):
        self.calls.append(
            {"query": query, "limit": limit, "threshold": threshold, "filters": filters}
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.results)[:limit]

    async def search(self, query_vector, limit, threshold=0.0, filters=None):
        return await self.search_text("<vector>", limit, threshold, filters)


class FakeGraphBackend(GraphSearchBackend):
    name = "fake_graph"

    def __init__(
        self,
        results: Optional[List[Candidate]] = None,
        neighbors: Optional[Dict[str, List[Candidate]]] = None,
        error: Optional[Exception] = None,
        traverse_errors: Optional[Dict[str, Exception]] = None,
        delay: float = 0.0,
    ):
        self.results = results or []
        self.neighbors = neighbors or {}
        self.error = error
        self.traverse_errors = traverse_errors or {}
        self.delay = delay
        self.calls: List[Dict] = []
        self.traversals: List[tuple] = []

    async def search(self, query, limit):
        self.calls.append({"query": query, "limit": limit})
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return copy.deepcopy(self.results)[:limit]

    async def traverse(self, seed_id, depth):
        self.traversals.append((seed_id, depth))
        if seed_id in self.traverse_errors:
            raise self.traverse_errors[seed_id]
        return copy.deepcopy(self.neighbors.get(seed_id, []))


class FakeExpander:
    def __init__(self, expanded: Optional[ExpandedQuery] = None):
        self.expanded = expanded
        self.calls: List[str] = []

    async def expand(self, query):
        self.calls.append(query)
        return self.expanded or ExpandedQuery.identity(query)

    async def aclose(self):
        return None


def vector_hit(id, score, content="", content_type="code", **kwargs):
    return Candidate(
        id=id,
        title=kwargs.pop("title", id),
        content=content,
        source=CandidateSource.VECTOR,
        content_type=content_type,
        semantic_score=score,
        **kwargs,
    )


def graph_hit(id, score, content="", depth=1, content_type="code", **kwargs):
    return Candidate(
        id=id,
        entity_id=kwargs.pop("entity_id", id),
        title=kwargs.pop("title", id),
        content=content,
        source=CandidateSource.GRAPH,
        content_type=content_type,
        graph_score=score,
        relationship_depth=depth,
        **kwargs,
    )


def neighbor(id, score=0.5, depth=1, content=""):
    return Candidate(
        id=id,
        entity_id=id,
        title=id,
        content=content,
        source=CandidateSource.GRAPH_RELATED,
        content_type="entity",
        graph_score=score,
        relationship_depth=depth,
    )


@pytest.fixture
def fakes():
    """Fake backend classes and candidate builders."""

    class _Fakes:
        Vector = FakeVectorBackend
        Graph = FakeGraphBackend
        Expander = FakeExpander

    _Fakes.vector_hit = staticmethod(vector_hit)
    _Fakes.graph_hit = staticmethod(graph_hit)
    _Fakes.neighbor = staticmethod(neighbor)
    return _Fakes


@pytest.fixture
def make_engine():
    def _make(vector=None, graph=None, expander=None, **kwargs):
        return HybridRetrievalEngine(
            vector if vector is not None else FakeVectorBackend(),
            graph if graph is not None else FakeGraphBackend(),
            expander=expander,
            **kwargs,
        )

    return _make
