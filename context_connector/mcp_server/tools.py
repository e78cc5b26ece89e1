"""
Context tools exposed to agents: ``context.search``, ``context.expand`` and
``context.related``.

The service validates arguments, runs the engine and maps failures onto
JSON-RPC error codes. The transport loop that reads requests and writes
responses lives elsewhere; ``handle_jsonrpc`` is the seam it calls.
"""

import json
from typing import Any, Awaitable, Callable, Dict, List, Optional

from context_connector.mcp_server.models import (
    ExpandRequest,
    RelatedEntity,
    RelatedRequest,
    RelatedResponse,
    ToolCallResponse,
    ToolDefinition,
)
from context_connector.query.errors import (
    METHOD_NOT_FOUND,
    ContextConnectorError,
    InvalidRequestError,
    ToolNotFoundError,
    to_jsonrpc_error,
)
from context_connector.query.factory import create_engine
from context_connector.query.hybrid_retrieval import HybridRetrievalEngine
from context_connector.query.schemas import SearchRequest
from context_connector.shared.config import Config, Settings, get_config, get_settings
from context_connector.shared.observability import (
    get_logger,
    setup_logging,
    setup_metrics,
    setup_tracing,
    trace_tool_call,
)

logger = get_logger(__name__)

TOOL_PREFIX = "context."

SEARCH_TOOL = ToolDefinition(
    name="context.search",
    description=(
        "Hybrid semantic + graph search with context assembly. Combines vector "
        "similarity with knowledge graph traversal for comprehensive results."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "query": {
                "type": "string",
                "description": "Search query (natural language or code terms)",
            },
            "limit": {
                "type": "integer",
                "description": "Max results to return (default: 10)",
                "default": 10,
                "minimum": 1,
            },
            "context_window": {
                "type": "integer",
                "description": "Max tokens for context assembly (default: 8000)",
                "default": 8000,
                "minimum": 1,
            },
            "expand_query": {
                "type": "boolean",
                "description": "Use LLM to expand query with related terms (default: true)",
                "default": True,
            },
            "include_related": {
                "type": "boolean",
                "description": "Include graph-related entities (default: true)",
                "default": True,
            },
            "max_depth": {
                "type": "integer",
                "description": "Traversal depth for related entities (default: 2, max: 3)",
                "default": 2,
                "minimum": 1,
            },
            "filters": {
                "type": "object",
                "description": "Equality filters applied to vector search (e.g. workspace_id)",
                "additionalProperties": {"type": ["string", "number", "boolean"]},
            },
        },
        "required": ["query"],
    },
)

EXPAND_TOOL = ToolDefinition(
    name="context.expand",
    description="Expand a query with semantic and domain-specific terms using LLM",
    input_schema={
        "type": "object",
        "properties": {
            "query": {"type": "string", "description": "Query to expand"},
        },
        "required": ["query"],
    },
)

RELATED_TOOL = ToolDefinition(
    name="context.related",
    description=(
        "Get related entities from the knowledge graph with multi-hop traversal"
    ),
    input_schema={
        "type": "object",
        "properties": {
            "entity_id": {"type": "string", "description": "Starting entity ID"},
            "depth": {
                "type": "integer",
                "description": "Max traversal depth (default: 2, max: 3)",
                "default": 2,
                "minimum": 1,
            },
        },
        "required": ["entity_id"],
    },
)


class ContextToolService:
    """Routes tool calls to the retrieval engine."""

    def __init__(self, engine: HybridRetrievalEngine):
        self.engine = engine
        self._handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict]]] = {
            "search": self._search,
            "expand": self._expand,
            "related": self._related,
        }

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        settings: Optional[Settings] = None,
        overrides: Optional[Dict[str, object]] = None,
    ) -> "ContextToolService":
        """Process startup: observability first, then the engine."""
        config = config or get_config()
        settings = settings or get_settings()
        setup_logging(settings.log_level)
        setup_tracing(settings)
        setup_metrics(settings)
        return cls(create_engine(config, settings, overrides=overrides))

    def list_tools(self) -> List[ToolDefinition]:
        return [SEARCH_TOOL, EXPAND_TOOL, RELATED_TOOL]

    async def call_tool(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a tool and return its structured (camelCase) result.

        Raises:
            ToolNotFoundError: unknown tool name
            InvalidRequestError: arguments failed validation
        """
        short_name = name[len(TOOL_PREFIX):] if name.startswith(TOOL_PREFIX) else name
        handler = self._handlers.get(short_name)
        if handler is None:
            raise ToolNotFoundError(f"Unknown tool: {name}")

        with trace_tool_call(f"{TOOL_PREFIX}{short_name}", arguments or {}):
            return await handler(arguments)

    async def handle(
        self, name: str, arguments: Optional[Dict[str, Any]] = None
    ) -> ToolCallResponse:
        """Tool call wrapped as MCP content; tool errors become ``isError``."""
        try:
            result = await self.call_tool(name, arguments)
        except ContextConnectorError as e:
            logger.info("Tool call rejected", tool=name, error=e.message)
            return ToolCallResponse(
                content=[{"type": "text", "text": f"Error: {e.message}"}],
                is_error=True,
            )
        return ToolCallResponse(
            content=[{"type": "text", "text": json.dumps(result)}]
        )

    async def handle_jsonrpc(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Answer one JSON-RPC 2.0 request for ``tools/list`` or ``tools/call``."""
        request_id = message.get("id")
        method = message.get("method")
        params = message.get("params") or {}

        try:
            if method == "tools/list":
                result: Dict[str, Any] = {
                    "tools": [tool.dump() for tool in self.list_tools()]
                }
            elif method == "tools/call":
                if not isinstance(params, dict) or not params.get("name"):
                    raise InvalidRequestError("tools/call requires a tool 'name'")
                payload = await self.call_tool(
                    params["name"], params.get("arguments")
                )
                result = ToolCallResponse(
                    content=[{"type": "text", "text": json.dumps(payload)}]
                ).dump()
            else:
                return _error_response(
                    request_id,
                    {"code": METHOD_NOT_FOUND, "message": f"Unknown method: {method}"},
                )
        except ContextConnectorError as e:
            logger.info("JSON-RPC request rejected", method=method, error=e.message)
            return _error_response(request_id, e.to_jsonrpc())
        except Exception as e:
            logger.error(
                "JSON-RPC request failed", method=method, error=str(e), exc_info=True
            )
            return _error_response(request_id, to_jsonrpc_error(e))

        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    async def _search(self, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        request = SearchRequest.parse(arguments)
        response = await self.engine.search(request)
        return response.dump()

    async def _expand(self, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        request = ExpandRequest.parse(arguments)
        expanded = await self.engine.expand(request.query)
        return expanded.to_dict()

    async def _related(self, arguments: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        request = RelatedRequest.parse(arguments)
        neighbors = await self.engine.related(request.entity_id, request.depth)
        return RelatedResponse(
            entity_id=request.entity_id,
            depth=min(request.depth, self.engine.max_depth),
            related_count=len(neighbors),
            related=[
                RelatedEntity(
                    id=n.id,
                    title=n.title,
                    path=n.path,
                    content_type=n.content_type,
                    graph_score=n.graph_score,
                    relationship_depth=n.relationship_depth,
                )
                for n in neighbors
            ],
        ).dump()


def _error_response(request_id: Any, error: Dict[str, Any]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": error}
