from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class EntityMention(BaseModel):
    # lax on purpose: the store drops unusable names and types
    name: Any = None
    type: Any = None


class TripleIn(BaseModel):
    subject: Any = None
    predicate: Any = None
    object: Any = None
    confidence: Any = None
    pending_resolution: Any = False


class IngestRequest(BaseModel):
    """One exchange worth of extracted graph data.

    Items that turn out malformed are dropped by the store, not rejected here.
    """

    agent_id: str = "main"
    source_exchange_id: str | None = None
    source_date: str | None = None
    entities: list[EntityMention] = Field(default_factory=list)
    triples: list[TripleIn] = Field(default_factory=list)
    cooccurrences: list[Any] = Field(default_factory=list)

    @field_validator("entities", "triples", mode="before")
    @classmethod
    def _drop_non_objects(cls, v: Any) -> Any:
        if v is None:
            return []
        if not isinstance(v, list):
            logger.debug("Ignoring non-list ingest field %r", v)
            return []
        kept = [item for item in v if isinstance(item, (Mapping, BaseModel))]
        if len(kept) != len(v):
            logger.debug("Dropped %d malformed ingest item(s)", len(v) - len(kept))
        return kept

    @field_validator("cooccurrences", mode="before")
    @classmethod
    def _cooccurrence_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else []


class IngestResult(BaseModel):
    triple_ids: list[int] = Field(default_factory=list)
    notes: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)
    resolve_ms: float = 0.0
    write_ms: float = 0.0


class QueryRequest(BaseModel):
    entities: list[str]
    agent_id: str = "main"
    limit: int | None = Field(default=None, ge=1)
    max_hops: int | None = Field(default=None, ge=1)


class EnrichmentItem(BaseModel):
    """An exchange waiting for the slow LLM extraction pass."""

    exchange_id: str
    agent_id: str = "main"
    user_text: str = ""
    agent_text: str = ""
    date: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class EnrichedEntity(BaseModel):
    name: str
    type: str | None = None
    aliases: list[str] = Field(default_factory=list)


class EnrichedRelationship(BaseModel):
    subject: str
    predicate: str
    object: str
    confidence: float = Field(default=0.8, ge=0, le=1)


class EnrichmentResult(BaseModel):
    entities: list[EnrichedEntity] = Field(default_factory=list)
    relationships: list[EnrichedRelationship] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.entities and not self.relationships
