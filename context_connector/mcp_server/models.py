# Argument and result contracts for the expand/related tools and the
# MCP wire envelopes. Search contracts live in context_connector.query.schemas.

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from context_connector.query.backends import MAX_TRAVERSAL_DEPTH
from context_connector.query.schemas import CamelModel, require_text


class ExpandRequest(CamelModel):
    query: str

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, v: str) -> str:
        return require_text(v, "query")


class RelatedRequest(CamelModel):
    entity_id: str
    depth: int = Field(default=2, ge=1)

    @field_validator("entity_id")
    @classmethod
    def _entity_not_blank(cls, v: str) -> str:
        return require_text(v, "entity_id")

    @field_validator("depth")
    @classmethod
    def _clamp_depth(cls, v: int) -> int:
        return min(v, MAX_TRAVERSAL_DEPTH)


class RelatedEntity(CamelModel):
    id: str
    title: str
    path: Optional[str] = None
    content_type: str
    graph_score: float
    relationship_depth: int


class RelatedResponse(CamelModel):
    entity_id: str
    depth: int
    related_count: int
    related: List[RelatedEntity] = Field(default_factory=list)


class ToolDefinition(BaseModel):
    name: str
    description: str
    input_schema: Dict[str, Any]

    def dump(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class ToolCallResponse(BaseModel):
    content: List[Dict[str, Any]]
    is_error: bool = False

    def dump(self) -> Dict[str, Any]:
        return {"content": self.content, "isError": self.is_error}
