# Hybrid retrieval core. Import the engine from
# context_connector.query.hybrid_retrieval and build it with
# context_connector.query.factory.
from .errors import (
    BackendError,
    BackendResponseError,
    BackendUnavailableError,
    ContextConnectorError,
    InvalidRequestError,
    ToolNotFoundError,
)
from .models import (
    Candidate,
    CandidateSource,
    ContextBundle,
    ContextItem,
    ExpandedQuery,
    RankingWeights,
)

__all__ = [
    "Candidate",
    "CandidateSource",
    "ContextBundle",
    "ContextItem",
    "ExpandedQuery",
    "RankingWeights",
    "ContextConnectorError",
    "InvalidRequestError",
    "ToolNotFoundError",
    "BackendError",
    "BackendResponseError",
    "BackendUnavailableError",
]
