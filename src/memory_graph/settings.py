from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, field_validator

try:
    from pydantic_settings import BaseSettings, SettingsConfigDict
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "pydantic-settings is required. Install with: pip install pydantic-settings"
    ) from e

from .vocab import MAX_PATTERN_LENGTH, MIN_PATTERN_LENGTH, EntityType, Predicate


class StorageConfig(BaseModel):
    confidence_half_life_days: float = Field(default=90.0, gt=0)
    busy_timeout_ms: int = Field(default=5000, ge=0)


class RetrievalConfig(BaseModel):
    max_results: int = Field(default=20, ge=1)
    min_shared_entities: int = Field(default=1, ge=0)
    cooccurrence_boost: float = Field(default=0.1, ge=0)
    cooccurrence_fanout: int = Field(default=5, ge=0, description="Top-N co-occurring entities expanded")
    # <= 1 selects single-hop link expansion, > 1 the recursive traversal
    max_hops: int = Field(default=2, ge=1, le=6)
    hop_decay: float = Field(default=0.7, gt=0, le=1)
    min_traversal_confidence: float = Field(default=0.6, ge=0, le=1)


class SeedEntity(BaseModel):
    name: str
    type: EntityType = EntityType.CONCEPT


class ResolutionConfig(BaseModel):
    method: Literal["conversational", "exact"] = "conversational"
    assume_threshold: float = Field(default=0.8, ge=0, le=1)
    ask_threshold: float = Field(default=0.4, ge=0, le=1)
    pending_max_age_days: int = Field(default=30, ge=0)
    recency_boost_days: int = Field(default=7, ge=0)
    cooccurrence_min_count: int = Field(default=2, ge=1)
    recent_window: int = Field(default=200, ge=1, description="Recent entities scanned for substring matches")
    seed_entities: list[SeedEntity] = Field(default_factory=list)


class DiscoveryConfig(BaseModel):
    enabled: bool = True
    interval_hours: float = Field(default=24.0, ge=0)
    max_active_patterns: int = Field(default=12, ge=0)
    max_static_patterns: int = Field(default=5, ge=0)
    min_yield: int = Field(default=3, ge=1)
    max_overlap_ratio: float = Field(default=0.9, ge=0, le=1)
    max_fanout_per_step: float = Field(default=50.0, gt=0)
    low_fanout: float = Field(default=10.0, gt=0)
    max_candidate_length: int = Field(default=3, ge=MIN_PATTERN_LENGTH, le=MAX_PATTERN_LENGTH)
    max_vocabulary_for_triples: int = Field(default=6, ge=0)
    min_predicate_count: int = Field(default=5, ge=1)
    sample_size: int = Field(default=200, ge=1)
    recency_horizon_days: float = Field(default=90.0, gt=0)


class EnrichmentConfig(BaseModel):
    max_queue: int = Field(default=50, ge=1)
    batch_size: int = Field(default=3, ge=1)
    confidence_boost: float = Field(default=0.1, ge=0, le=1)


class StaticPattern(BaseModel):
    predicates: list[str]
    weight: float = Field(default=1.0, gt=0, le=1)

    @field_validator("predicates")
    @classmethod
    def _check_predicates(cls, v: list[str]) -> list[str]:
        if not (MIN_PATTERN_LENGTH <= len(v) <= MAX_PATTERN_LENGTH):
            raise ValueError(
                f"meta-path must have {MIN_PATTERN_LENGTH}-{MAX_PATTERN_LENGTH} predicates, got {len(v)}"
            )
        out = []
        for p in v:
            parsed = Predicate.parse(p)
            if parsed is None:
                raise ValueError(f"unknown predicate: {p!r}")
            out.append(parsed.value)
        return out


DEFAULT_META_PATHS = [
    StaticPattern(predicates=["knows", "works_on"], weight=0.9),
    StaticPattern(predicates=["knows", "created"], weight=0.9),
    StaticPattern(predicates=["works_on", "part_of"], weight=0.8),
    StaticPattern(predicates=["created", "uses"], weight=0.7),
    StaticPattern(predicates=["knows", "interested_in"], weight=0.7),
]


class GraphMemorySettings(BaseSettings):
    """Unified configuration for the graph memory engine.

    Environment variables are prefixed with MEMORY_GRAPH_; nested sections use
    a double underscore, e.g. MEMORY_GRAPH_RETRIEVAL__MAX_HOPS=1.
    """

    model_config = SettingsConfigDict(
        env_prefix="MEMORY_GRAPH_", env_nested_delimiter="__", extra="ignore"
    )

    # --- Core ---
    log_level: str = Field(default="INFO", description="Python logging level")
    data_dir: str = Field(default="~/.memory_graph", description="Root of the per-agent stores")
    db_file: str = Field(default="graph.db")
    write_retries: int = Field(default=3, ge=1, description="Attempts for a busy exchange write")

    # --- Sections ---
    storage: StorageConfig = Field(default_factory=StorageConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    resolution: ResolutionConfig = Field(default_factory=ResolutionConfig)
    discovery: DiscoveryConfig = Field(default_factory=DiscoveryConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    meta_paths: list[StaticPattern] = Field(default_factory=lambda: list(DEFAULT_META_PATHS))


settings = GraphMemorySettings()
