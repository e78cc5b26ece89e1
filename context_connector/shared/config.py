# Configuration loader with environment variable support.
# YAML holds tuning knobs (weights, timeouts, limits); the environment holds
# endpoints and credentials. Both are resolved once at startup and passed into
# the engine factory.

import logging
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import ContextBaseModel

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).parent.parent.parent / "config"


class Topology(str, Enum):
    """Deployment topology for the retrieval backends."""

    FEDERATED = "federated"  # separate embeddings + relation-graph services
    UNIFIED = "unified"  # one graph store with a native vector index


class VectorProvider(str, Enum):
    HTTP = "http"
    QDRANT = "qdrant"


class RankingWeightsConfig(BaseModel):
    semantic: float = 0.35
    graph: float = 0.25
    relationship: float = 0.20
    recency: float = 0.10
    diversity: float = 0.10

    @field_validator("semantic", "graph", "relationship", "recency", "diversity")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"ranking weights must be non-negative, got {v}")
        return v


class RankingConfig(BaseModel):
    # Named profile ("federated" or "unified"); replaces weights when set
    profile: Optional[str] = None
    weights: RankingWeightsConfig = Field(default_factory=RankingWeightsConfig)
    max_results: int = Field(default=20, gt=0)


class VectorSearchConfig(BaseModel):
    provider: VectorProvider = VectorProvider.HTTP
    similarity_threshold: float = Field(default=0.0, ge=0.0, le=1.0)
    timeout_seconds: float = Field(default=10.0, gt=0)
    collection_name: str = "context_chunks"
    index_name: str = "vector_chunk_embedding"
    include_content: bool = True


class GraphSearchConfig(BaseModel):
    timeout_seconds: float = Field(default=10.0, gt=0)
    # Deployment traversal ceiling, enforced per query; 3 is the hard limit
    max_depth: int = Field(default=3, ge=1, le=3)
    fulltext_index: str = "entity_fulltext"
    # Fill graph_score for unified vector hits from their neighborhood
    score_vector_hits: bool = True


class QueryExpansionConfig(BaseModel):
    enabled: bool = True
    model: str = "qwen2.5:7b"
    # Kept below the search timeouts so a slow model cannot stall retrieval
    timeout_seconds: float = Field(default=4.0, gt=0)
    include_potential_names: bool = False


class RelatedExpansionConfig(BaseModel):
    max_seeds: int = Field(default=5, ge=1)
    score: float = Field(default=0.3, ge=0.0)


class ContextConfig(BaseModel):
    default_window: int = Field(default=8000, gt=0)
    tokens_per_char: float = Field(default=0.25, gt=0)


class SearchConfig(BaseModel):
    topology: Topology = Topology.FEDERATED
    default_limit: int = Field(default=10, gt=0)
    default_max_depth: int = Field(default=2, ge=1)
    vector: VectorSearchConfig = Field(default_factory=VectorSearchConfig)
    graph: GraphSearchConfig = Field(default_factory=GraphSearchConfig)
    expansion: QueryExpansionConfig = Field(default_factory=QueryExpansionConfig)
    related: RelatedExpansionConfig = Field(default_factory=RelatedExpansionConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)


class ResilienceConfig(BaseModel):
    circuit_breaker_enabled: bool = True
    failure_threshold: int = Field(default=5, gt=0)
    recovery_timeout_seconds: float = Field(default=30.0, gt=0)


class AppConfig(BaseModel):
    name: str = "context-connector"
    version: str = "0.1.0"


class Config(ContextBaseModel):
    """Main configuration model"""

    app: AppConfig = Field(default_factory=AppConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    resilience: ResilienceConfig = Field(default_factory=ResilienceConfig)


class Settings(BaseSettings):
    """Environment-based settings"""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Environment
    env: str = Field(default="development", alias="ENV")
    config_path: Optional[str] = Field(default=None, alias="CONFIG_PATH")

    # Federated services
    embeddings_service_url: str = Field(
        default="http://localhost:3001", alias="EMBEDDINGS_SERVICE_URL"
    )
    relation_graph_url: str = Field(
        default="http://localhost:3003", alias="RELATION_GRAPH_URL"
    )
    ollama_url: str = Field(default="http://localhost:11434", alias="OLLAMA_URL")

    # Query embedding service (used by Qdrant and unified backends)
    embedding_base_url: str = Field(
        default="http://127.0.0.1:9000", alias="EMBEDDING_BASE_URL"
    )
    embedding_model: str = Field(default="BAAI/bge-m3", alias="EMBEDDING_MODEL_ID")

    # Neo4j (unified topology)
    neo4j_uri: str = Field(default="bolt://localhost:7687", alias="NEO4J_URI")
    neo4j_user: str = Field(default="neo4j", alias="NEO4J_USER")
    neo4j_password: str = Field(default="", alias="NEO4J_PASSWORD")

    # Qdrant
    qdrant_host: str = Field(default="localhost", alias="QDRANT_HOST")
    qdrant_port: int = Field(default=6333, alias="QDRANT_PORT")
    qdrant_api_key: Optional[str] = Field(default=None, alias="QDRANT_API_KEY")

    # OpenTelemetry
    otel_exporter_otlp_endpoint: Optional[str] = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    otel_service_name: str = Field(
        default="context-connector", alias="OTEL_SERVICE_NAME"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


def _resolve_config_path(settings: Settings) -> Path:
    if settings.config_path:
        return Path(settings.config_path).expanduser()
    return DEFAULT_CONFIG_DIR / f"{settings.env}.yaml"


def load_config() -> tuple[Config, Settings]:
    """
    Load configuration from YAML file and environment variables.

    Returns:
        tuple: (Config, Settings) - YAML config and environment settings

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    settings = Settings()
    config_path = _resolve_config_path(settings)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    logger.info(f"Loading configuration from: {config_path}")

    with open(config_path, "r") as f:
        config_dict = yaml.safe_load(f) or {}

    config = Config(**config_dict)
    validate_config_at_startup(config, settings)
    return config, settings


def validate_config_at_startup(config: Config, settings: Settings) -> None:
    """Fail fast on combinations that cannot work at query time."""
    search = config.search
    if search.default_max_depth > search.graph.max_depth:
        raise ValueError(
            f"search.default_max_depth ({search.default_max_depth}) exceeds "
            f"search.graph.max_depth ({search.graph.max_depth})"
        )
    if search.topology == Topology.UNIFIED and not settings.neo4j_password:
        logger.warning("Unified topology selected but NEO4J_PASSWORD is empty")
    if search.expansion.enabled and (
        search.expansion.timeout_seconds >= search.vector.timeout_seconds
        or search.expansion.timeout_seconds >= search.graph.timeout_seconds
    ):
        logger.warning(
            "Query expansion timeout is not shorter than the search timeouts; "
            "a slow model will delay every search"
        )
    logger.info(
        f"Configuration validated: topology={search.topology.value}, "
        f"vector_provider={search.vector.provider.value}"
    )


def config_overrides(config: Config, overrides: Dict[str, object]) -> Config:
    """Return a copy of ``config`` with dotted-path overrides applied."""
    data = config.model_dump()
    for dotted, value in overrides.items():
        cursor = data
        parts = dotted.split(".")
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[parts[-1]] = value
    return Config(**data)


# Global config instances (loaded once at startup)
_config: Optional[Config] = None
_settings: Optional[Settings] = None


def get_config() -> Config:
    """Get the global Config instance"""
    global _config
    if _config is None:
        _config, _ = load_config()
    return _config


def get_settings() -> Settings:
    """Get the global Settings instance"""
    global _settings
    if _settings is None:
        _, _settings = load_config()
    return _settings


def init_config() -> tuple[Config, Settings]:
    """Initialize and cache global config instances"""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings


def reload_config() -> tuple[Config, Settings]:
    """Force reload of config/settings from disk and environment."""
    global _config, _settings
    _config, _settings = load_config()
    return _config, _settings
