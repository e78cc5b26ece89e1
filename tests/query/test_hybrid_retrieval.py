import httpx
import pytest

from context_connector.query.errors import BackendUnavailableError, InvalidRequestError
from context_connector.query.expansion import QueryExpander
from context_connector.query.models import ExpandedQuery
from context_connector.query.schemas import SearchRequest, SearchResponse
from context_connector.shared.resilience import CircuitBreaker

JWT_QUERY = "How does JWT authentication work?"


def _jwt_backends(fakes):
    vector = fakes.Vector([fakes.vector_hit("a", 0.9, content="jwt_validator")])
    graph = fakes.Graph([fakes.graph_hit("b", 0.6, content="auth_test", depth=1)])
    return vector, graph


@pytest.mark.asyncio
async def test_jwt_scenario_ranks_and_bundles_both(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)
    engine = make_engine(vector, graph)

    response = await engine.search({"query": JWT_QUERY, "context_window": 100})

    assert [r.id for r in response.results] == ["a", "b"]
    assert response.results[0].relevance_score == pytest.approx(0.665)
    assert response.results[1].relevance_score == pytest.approx(0.35)
    assert response.vector_matches == 1
    assert response.graph_matches == 1
    assert response.total_results == 2
    bundle = response.context_bundle
    assert [i.id for i in bundle.items] == ["a", "b"]
    assert bundle.total_tokens == 5
    assert bundle.query == JWT_QUERY


@pytest.mark.asyncio
async def test_small_window_keeps_only_the_prefix(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)

    response = await make_engine(vector, graph).search(
        {"query": JWT_QUERY, "context_window": 4}
    )

    assert [i.id for i in response.context_bundle.items] == ["a"]
    assert response.context_bundle.total_tokens == 3


@pytest.mark.asyncio
async def test_results_sorted_and_unique(fakes, make_engine):
    vector = fakes.Vector(
        [fakes.vector_hit(f"v{i}", 0.95 - i * 0.1, content_type=f"t{i % 3}") for i in range(6)]
        + [fakes.vector_hit("shared", 0.5)]
    )
    graph = fakes.Graph(
        [fakes.graph_hit("shared", 0.9), fakes.graph_hit("g1", 0.7), fakes.graph_hit("v0", 0.2)]
    )

    response = await make_engine(vector, graph).search(
        {"query": "q", "limit": 20, "include_related": False}
    )

    ids = [r.id for r in response.results]
    scores = [r.relevance_score for r in response.results]
    assert len(ids) == len(set(ids))
    assert scores == sorted(scores, reverse=True)
    assert response.total_results == 8
    shared = next(r for r in response.results if r.id == "shared")
    assert shared.semantic_score == 0.5
    assert shared.graph_score == 0.9
    assert shared.source == "vector"


@pytest.mark.asyncio
async def test_identical_requests_give_identical_responses(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)
    engine = make_engine(vector, graph)

    first = await engine.search({"query": JWT_QUERY})
    second = await engine.search({"query": JWT_QUERY})

    assert first.dump() == second.dump()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "arguments",
    [
        {"query": "q", "limit": 0},
        {"query": ""},
        {"query": "   "},
        {"limit": 5},
        {"query": "q", "contextWindow": 0},
        {"query": "q", "maxDepth": 0},
    ],
)
async def test_invalid_requests_rejected_before_backends(fakes, make_engine, arguments):
    vector, graph = fakes.Vector(), fakes.Graph()
    expander = fakes.Expander()

    with pytest.raises(InvalidRequestError):
        await make_engine(vector, graph, expander).search(arguments)

    assert vector.calls == []
    assert graph.calls == []
    assert expander.calls == []


@pytest.mark.asyncio
async def test_max_depth_is_clamped_not_rejected(fakes, make_engine):
    vector = fakes.Vector([fakes.vector_hit("a", 0.9, entity_id="ent-a")])
    graph = fakes.Graph(neighbors={"ent-a": [fakes.neighbor("n1")]})

    response = await make_engine(vector, graph).search({"query": "q", "maxDepth": 10})

    assert graph.traversals == [("ent-a", 3)]
    assert response.related_matches == 1


@pytest.mark.asyncio
async def test_vector_failure_still_returns_graph_hits(fakes, make_engine):
    vector = fakes.Vector(error=BackendUnavailableError("embeddings down"))
    graph = fakes.Graph([fakes.graph_hit(f"g{i}", 0.5 + i / 10) for i in range(3)])

    response = await make_engine(vector, graph).search({"query": "q"})

    assert response.vector_matches == 0
    assert response.graph_matches == 3
    assert response.total_results == 3
    assert sorted(r.id for r in response.results) == ["g0", "g1", "g2"]


@pytest.mark.asyncio
async def test_vector_timeout_is_absorbed(fakes, make_engine):
    vector = fakes.Vector([fakes.vector_hit("a", 0.9)], delay=1.0)
    graph = fakes.Graph([fakes.graph_hit("b", 0.6)])

    response = await make_engine(vector, graph, vector_timeout=0.05).search(
        {"query": "q"}
    )

    assert response.vector_matches == 0
    assert [r.id for r in response.results] == ["b"]


@pytest.mark.asyncio
async def test_both_backends_failing_is_an_empty_success(fakes, make_engine):
    vector = fakes.Vector(error=BackendUnavailableError("down"))
    graph = fakes.Graph(error=RuntimeError("graph exploded"))

    response = await make_engine(vector, graph).search({"query": "q"})

    assert response.total_results == 0
    assert response.results == []
    assert response.context_bundle.items == []
    assert response.context_bundle.total_tokens == 0


@pytest.mark.asyncio
async def test_open_circuit_skips_backend(fakes, make_engine):
    breaker = CircuitBreaker("vector", failure_threshold=1, recovery_timeout=60)
    breaker.record_failure()
    vector = fakes.Vector([fakes.vector_hit("a", 0.9)])
    graph = fakes.Graph([fakes.graph_hit("b", 0.6)])

    response = await make_engine(vector, graph, breakers={"vector": breaker}).search(
        {"query": "q"}
    )

    assert vector.calls == []
    assert response.vector_matches == 0
    assert response.graph_matches == 1


@pytest.mark.asyncio
async def test_expanded_text_is_sent_to_both_backends(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)
    expander = fakes.Expander(
        ExpandedQuery(
            original=JWT_QUERY,
            semantic_terms=["token"],
            potential_names=["verify_jwt"],
        )
    )

    response = await make_engine(vector, graph, expander).search({"query": JWT_QUERY})

    expected = f"{JWT_QUERY} token"
    assert vector.calls[0]["query"] == expected
    assert graph.calls[0]["query"] == expected
    assert response.query == JWT_QUERY
    assert response.context_bundle.query == JWT_QUERY


@pytest.mark.asyncio
async def test_potential_names_are_opt_in(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)
    expander = fakes.Expander(
        ExpandedQuery(original="q", potential_names=["verify_jwt"])
    )

    await make_engine(vector, graph, expander, include_potential_names=True).search(
        {"query": "q"}
    )

    assert vector.calls[0]["query"] == "q verify_jwt"


@pytest.mark.asyncio
async def test_expand_query_false_skips_expander(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)
    expander = fakes.Expander(ExpandedQuery(original="q", semantic_terms=["x"]))

    await make_engine(vector, graph, expander).search(
        {"query": "q", "expandQuery": False}
    )

    assert expander.calls == []
    assert vector.calls[0]["query"] == "q"


@pytest.mark.asyncio
async def test_include_related_false_skips_traversal(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)
    graph.neighbors = {"b": [fakes.neighbor("n1")]}

    response = await make_engine(vector, graph).search(
        {"query": "q", "include_related": False}
    )

    assert graph.traversals == []
    assert response.related_matches == 0


@pytest.mark.asyncio
async def test_related_entities_never_outrank_primaries(fakes, make_engine):
    vector = fakes.Vector([fakes.vector_hit("a", 0.9)])
    graph = fakes.Graph(
        [fakes.graph_hit("b", 0.05, depth=3)],
        neighbors={"b": [fakes.neighbor("n1", content="neighbor body"), fakes.neighbor("a")]},
    )

    response = await make_engine(vector, graph).search({"query": "q"})

    ids = [r.id for r in response.results]
    assert ids == ["a", "b", "n1"]
    primary_floor = min(r.relevance_score for r in response.results[:2])
    related = response.results[2]
    assert related.source == "graph_related"
    assert related.relevance_score <= primary_floor
    assert response.related_matches == 1
    assert response.total_results == 3


@pytest.mark.asyncio
async def test_failed_traversal_keeps_primary_results(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)
    graph.traverse_errors = {"b": BackendUnavailableError("graph down")}

    response = await make_engine(vector, graph).search({"query": JWT_QUERY})

    assert [r.id for r in response.results] == ["a", "b"]
    assert response.related_matches == 0


@pytest.mark.asyncio
async def test_overfetch_and_result_limit(fakes, make_engine):
    vector = fakes.Vector([fakes.vector_hit(f"v{i}", 0.9 - i / 100) for i in range(10)])
    graph = fakes.Graph()

    response = await make_engine(vector, graph).search(
        {"query": "q", "limit": 3, "include_related": False}
    )

    assert vector.calls[0]["limit"] == 6
    assert graph.calls[0]["limit"] == 6
    assert len(response.results) == 3
    assert response.total_results == 6


@pytest.mark.asyncio
async def test_threshold_and_filters_reach_vector_backend(fakes, make_engine):
    vector = fakes.Vector()

    await make_engine(vector, similarity_threshold=0.6).search(
        {"query": "q", "filters": {"workspace_id": "w1"}}
    )

    assert vector.calls[0]["threshold"] == 0.6
    assert vector.calls[0]["filters"] == {"workspace_id": "w1"}


@pytest.mark.asyncio
async def test_camel_case_request_and_response(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)

    response = await make_engine(vector, graph).search(
        SearchRequest.parse(
            {"query": JWT_QUERY, "contextWindow": 50, "includeRelated": False}
        )
    )
    payload = response.dump()

    assert payload["vectorMatches"] == 1
    assert payload["graphMatches"] == 1
    assert payload["contextBundle"]["contextWindow"] == 50
    assert payload["contextBundle"]["totalTokens"] == 5
    assert payload["results"][0]["relevanceScore"] == pytest.approx(0.665)
    assert payload["results"][0]["semanticScore"] == 0.9


@pytest.mark.asyncio
async def test_engine_expand_without_expander(make_engine):
    expanded = await make_engine().expand("q")
    assert expanded.is_identity


@pytest.mark.asyncio
async def test_engine_related_lookup(fakes, make_engine):
    graph = fakes.Graph(neighbors={"e1": [fakes.neighbor("n1"), fakes.neighbor("n2")]})

    neighbors = await make_engine(graph=graph).related("e1", 5)

    assert [n.id for n in neighbors] == ["n1", "n2"]
    assert graph.traversals == [("e1", 3)]


@pytest.mark.asyncio
async def test_engine_related_fails_open(fakes, make_engine):
    graph = fakes.Graph(traverse_errors={"e1": BackendUnavailableError("down")})
    assert await make_engine(graph=graph).related("e1", 2) == []


@pytest.mark.asyncio
async def test_configured_defaults_fill_omitted_fields(fakes, make_engine):
    vector = fakes.Vector([fakes.vector_hit("a", 0.9, content="x" * 40, entity_id="e")])
    graph = fakes.Graph()
    engine = make_engine(
        vector, graph, default_limit=4, default_context_window=6, default_max_depth=1
    )

    response = await engine.search({"query": "q"})

    assert vector.calls[0]["limit"] == 8
    assert response.context_bundle.context_window == 6
    assert response.context_bundle.items == []
    assert graph.traversals == [("e", 1)]


@pytest.mark.asyncio
async def test_explicit_fields_override_configured_defaults(fakes, make_engine):
    vector = fakes.Vector()
    engine = make_engine(vector, default_limit=4)

    await engine.search({"query": "q", "limit": 2})

    assert vector.calls[0]["limit"] == 4


@pytest.mark.asyncio
async def test_nested_expansion_output_does_not_fail_search(fakes, make_engine):
    nested = '{"semantic_terms": ' + "[" * 100000 + "]" * 100000 + "}"
    client = httpx.AsyncClient(
        base_url="http://ollama.test",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"response": nested})
        ),
    )
    expander = QueryExpander("http://ollama.test", client=client)
    vector, graph = _jwt_backends(fakes)

    response = await make_engine(vector, graph, expander).search({"query": "jwt"})

    assert vector.calls[0]["query"] == "jwt"
    assert [r.id for r in response.results] == ["a", "b"]


@pytest.mark.asyncio
async def test_configured_depth_ceiling_caps_search_traversal(fakes, make_engine):
    vector = fakes.Vector([fakes.vector_hit("a", 0.9, entity_id="g")])
    graph = fakes.Graph(neighbors={"g": [fakes.neighbor("n1")]})
    engine = make_engine(vector, graph, max_depth=1, default_max_depth=1)

    await engine.search({"query": "q", "maxDepth": 3})

    assert graph.traversals == [("g", 1)]


@pytest.mark.asyncio
async def test_configured_depth_ceiling_caps_related_lookup(fakes, make_engine):
    graph = fakes.Graph(neighbors={"e1": [fakes.neighbor("n1")]})
    engine = make_engine(graph=graph, max_depth=2)

    await engine.related("e1", 3)

    assert engine.max_depth == 2
    assert graph.traversals == [("e1", 2)]


def test_default_depth_is_lowered_to_ceiling(make_engine):
    engine = make_engine(max_depth=1, default_max_depth=2)
    assert engine.request_defaults["max_depth"] == 1


def test_depth_ceiling_never_exceeds_traversal_limit(make_engine):
    assert make_engine(max_depth=7).max_depth == 3


@pytest.mark.asyncio
async def test_search_accepts_and_returns_query_schemas(fakes, make_engine):
    vector, graph = _jwt_backends(fakes)

    response = await make_engine(vector, graph).search(SearchRequest(query="jwt"))

    assert isinstance(response, SearchResponse)
    assert response.dump()["vectorMatches"] == 1
