"""
LLM query expansion.

Asks an Ollama-compatible ``/api/generate`` endpoint for extra search terms.
Expansion only improves recall, so every failure mode (transport, status,
timeout, unparsable output) degrades to the identity expansion.
"""

import asyncio
import json
import re
from typing import Any, List, Optional

import httpx

from context_connector.query.models import ExpandedQuery
from context_connector.shared.observability import get_logger
from context_connector.shared.observability.metrics import query_expansion_total

logger = get_logger(__name__)

DEFAULT_MODEL = "qwen2.5:7b"
DEFAULT_TIMEOUT_SECONDS = 4.0

EXPANSION_PROMPT = """You are a code search assistant. Given a user query, expand it with:
1. Semantically similar programming terms
2. Related technical concepts
3. Potential file/function names

Query: "{query}"

Respond in JSON format:
{{
  "semantic_terms": ["term1", "term2"],
  "technical_concepts": ["concept1", "concept2"],
  "potential_names": ["name1", "name2"]
}}"""

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


def extract_json_object(text: str) -> Optional[dict]:
    """
    Pull the first JSON object out of free-form model output.

    Handles fenced code blocks and prose before/after the object. Returns
    None when no object can be decoded.
    """
    if not text:
        return None

    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)

    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        except RecursionError:
            # Pathologically nested output; treat as unparsable
            return None
        if isinstance(obj, dict):
            return obj
        start = text.find("{", start + 1)
    return None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


class QueryExpander:
    """Enriches a query with model-suggested terms; never raises."""

    def __init__(
        self,
        base_url: str,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        enabled: bool = True,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.enabled = enabled
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=self.base_url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def expand(self, query: str) -> ExpandedQuery:
        if not self.enabled:
            query_expansion_total.labels(status="disabled").inc()
            return ExpandedQuery.identity(query)

        try:
            raw = await asyncio.wait_for(self._generate(query), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Query expansion timed out; using original query",
                timeout_seconds=self.timeout,
            )
            query_expansion_total.labels(status="timeout").inc()
            return ExpandedQuery.identity(query)
        except Exception as e:
            logger.warning(
                "Query expansion failed; using original query",
                error=str(e),
                error_type=type(e).__name__,
            )
            query_expansion_total.labels(status="error").inc()
            return ExpandedQuery.identity(query)

        if raw is None:
            query_expansion_total.labels(status="error").inc()
            return ExpandedQuery.identity(query)

        payload = extract_json_object(raw)
        if payload is None:
            logger.info("Query expansion output not parseable", preview=raw[:120])
            query_expansion_total.labels(status="unparsable").inc()
            return ExpandedQuery.identity(query)

        expanded = ExpandedQuery(
            original=query,
            semantic_terms=_string_list(payload.get("semantic_terms")),
            technical_concepts=_string_list(payload.get("technical_concepts")),
            potential_names=_string_list(payload.get("potential_names")),
        )
        query_expansion_total.labels(status="success").inc()
        logger.debug(
            "Query expanded",
            semantic_terms=len(expanded.semantic_terms),
            technical_concepts=len(expanded.technical_concepts),
            potential_names=len(expanded.potential_names),
        )
        return expanded

    async def _generate(self, query: str) -> Optional[str]:
        response = await self._client.post(
            "/api/generate",
            json={
                "model": self.model,
                "prompt": EXPANSION_PROMPT.format(query=query),
                "stream": False,
            },
        )
        if response.status_code != 200:
            logger.warning(
                "Query expansion model returned non-success status",
                status_code=response.status_code,
            )
            return None

        body = response.json()
        text = body.get("response") if isinstance(body, dict) else None
        return text if isinstance(text, str) else ""
