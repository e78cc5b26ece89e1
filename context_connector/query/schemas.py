# Search request/response contracts.
# Requests accept snake_case or camelCase keys; responses serialize camelCase.

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from context_connector.query.backends import MAX_TRAVERSAL_DEPTH
from context_connector.query.errors import InvalidRequestError

FilterValue = Union[str, int, float, bool]


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    @classmethod
    def parse(cls, arguments: Optional[Dict[str, Any]]):
        """Validate tool arguments, raising InvalidRequestError on failure."""
        if arguments is not None and not isinstance(arguments, dict):
            raise InvalidRequestError("Tool arguments must be an object")
        try:
            return cls.model_validate(arguments or {})
        except ValidationError as e:
            errors = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in e.errors()
            ]
            summary = "; ".join(f"{err['field']}: {err['message']}" for err in errors)
            raise InvalidRequestError(
                f"Invalid arguments: {summary}", data={"errors": errors}
            ) from None

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


def require_text(value: str, field: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError(f"{field} must not be empty")
    return value


class SearchRequest(CamelModel):
    query: str
    limit: int = Field(default=10, ge=1)
    context_window: int = Field(default=8000, ge=1)
    expand_query: bool = True
    include_related: bool = True
    max_depth: int = Field(default=2, ge=1)
    filters: Optional[Dict[str, FilterValue]] = None

    @field_validator("query")
    @classmethod
    def _query_not_blank(cls, v: str) -> str:
        return require_text(v, "query")

    @field_validator("max_depth")
    @classmethod
    def _clamp_depth(cls, v: int) -> int:
        # Deep requests are served at the ceiling, not rejected; the engine
        # may lower it further to its configured limit
        return min(v, MAX_TRAVERSAL_DEPTH)


class SearchResultItem(CamelModel):
    id: str
    title: str
    path: Optional[str] = None
    content_type: str
    relevance_score: float
    semantic_score: float
    graph_score: float
    source: str


class ContextItemModel(CamelModel):
    id: str
    title: str
    content: str
    path: Optional[str] = None
    content_type: str
    relevance_score: float
    tokens: int


class ContextBundleModel(CamelModel):
    query: str
    items: List[ContextItemModel] = Field(default_factory=list)
    total_tokens: int = 0
    context_window: int


class SearchResponse(CamelModel):
    query: str
    total_results: int
    vector_matches: int
    graph_matches: int
    related_matches: int = 0
    context_bundle: ContextBundleModel
    results: List[SearchResultItem] = Field(default_factory=list)
