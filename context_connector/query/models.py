"""
Per-query data model for hybrid retrieval.

Everything here is created fresh for one search and owned by that call;
nothing is shared between concurrent queries.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class CandidateSource(str, Enum):
    VECTOR = "vector"
    GRAPH = "graph"
    GRAPH_RELATED = "graph_related"


@dataclass
class Candidate:
    """The unit of ranking: a chunk or entity returned by a backend."""

    id: str
    title: str = ""
    content: str = ""
    source: CandidateSource = CandidateSource.VECTOR
    content_type: str = "unknown"
    entity_id: Optional[str] = None
    path: Optional[str] = None
    semantic_score: float = 0.0
    graph_score: float = 0.0
    relationship_depth: int = 0
    final_score: Optional[float] = None
    related_ids: List[str] = field(default_factory=list)
    timestamp: Optional[Union[datetime, str]] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RankingWeights:
    """
    Coefficients of the score fusion formula.

    No requirement that they sum to 1; the defaults do so scores stay
    comparable across configurations.
    """

    semantic: float = 0.35
    graph: float = 0.25
    relationship: float = 0.20
    recency: float = 0.10
    diversity: float = 0.10

    def __post_init__(self):
        for name in ("semantic", "graph", "relationship", "recency", "diversity"):
            value = getattr(self, name)
            if value is None or value < 0 or value != value:
                raise ValueError(f"ranking weight '{name}' must be >= 0, got {value}")

    @classmethod
    def profile(cls, name: str) -> "RankingWeights":
        """Return a named weight profile ("federated" or "unified")."""
        try:
            return WEIGHT_PROFILES[name]
        except KeyError:
            raise ValueError(
                f"Unknown ranking profile '{name}'. "
                f"Available: {sorted(WEIGHT_PROFILES)}"
            ) from None


WEIGHT_PROFILES: Dict[str, RankingWeights] = {
    # Two separate services, five-signal fusion
    "federated": RankingWeights(),
    # One graph store with a vector index: semantic*0.7 + graph_relevance*0.3
    "unified": RankingWeights(
        semantic=0.7, graph=0.3, relationship=0.0, recency=0.0, diversity=0.0
    ),
}


@dataclass
class ExpandedQuery:
    original: str
    semantic_terms: List[str] = field(default_factory=list)
    technical_concepts: List[str] = field(default_factory=list)
    potential_names: List[str] = field(default_factory=list)
    combined: str = ""

    def __post_init__(self):
        if not self.combined:
            self.combined = " ".join(
                [self.original, *self.semantic_terms, *self.technical_concepts]
            )

    @classmethod
    def identity(cls, query: str) -> "ExpandedQuery":
        return cls(original=query, combined=query)

    @property
    def is_identity(self) -> bool:
        return self.combined == self.original

    def search_text(self, include_names: bool = False) -> str:
        """Text handed to the backends; names are opt-in hints."""
        if include_names and self.potential_names:
            return " ".join([self.combined, *self.potential_names])
        return self.combined

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original": self.original,
            "semanticTerms": list(self.semantic_terms),
            "technicalConcepts": list(self.technical_concepts),
            "potentialNames": list(self.potential_names),
            "combined": self.combined,
        }


@dataclass
class ContextItem:
    id: str
    title: str
    content: str
    path: Optional[str]
    content_type: str
    relevance_score: float
    tokens: int


@dataclass
class ContextBundle:
    """Ordered, token-budgeted evidence for a language model."""

    query: str
    context_window: int
    items: List[ContextItem] = field(default_factory=list)
    total_tokens: int = 0
