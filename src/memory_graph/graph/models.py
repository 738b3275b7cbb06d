from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from ..vocab import (
    MAX_PATTERN_LENGTH,
    MIN_PATTERN_LENGTH,
    EntityType,
    PatternType,
    Predicate,
    ResolutionTier,
)

__all__ = [
    "MAX_PATTERN_LENGTH",
    "MIN_PATTERN_LENGTH",
    "EntityType",
    "PatternType",
    "Predicate",
    "ResolutionTier",
    "Entity",
    "Triple",
    "Cooccurrence",
    "MetaPattern",
    "PredicateStats",
    "ExchangeHit",
    "SearchResult",
    "TraversalPath",
    "EntityContext",
    "Candidate",
    "ResolutionResult",
    "pattern_key",
]


def _load_aliases(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return [a for a in value if isinstance(a, str)] if isinstance(value, list) else []


@dataclass(slots=True)
class Entity:
    """A canonical entity node.

    `id` is the normalized name and is unique per agent.
    """

    id: str
    canonical_name: str
    entity_type: EntityType = EntityType.CONCEPT
    agent_id: str = "main"
    first_seen: str | None = None
    last_seen: str | None = None
    mention_count: int = 1
    aliases: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Entity":
        meta: dict[str, Any] = {}
        if row["metadata"]:
            try:
                meta = json.loads(row["metadata"]) or {}
            except ValueError:
                meta = {}
        return cls(
            id=row["id"],
            canonical_name=row["canonical_name"],
            entity_type=EntityType.coerce(row["entity_type"]),
            agent_id=row["agent_id"],
            first_seen=row["first_seen"],
            last_seen=row["last_seen"],
            mention_count=int(row["mention_count"] or 0),
            aliases=_load_aliases(row["aliases"]),
            metadata=meta,
        )


@dataclass(slots=True)
class Triple:
    """A directed, typed edge between two entity ids."""

    id: int
    subject: str
    predicate: str
    object: str
    confidence: float = 1.0
    source_exchange_id: str | None = None
    source_date: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    agent_id: str = "main"
    pending_resolution: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Triple":
        return cls(
            id=int(row["id"]),
            subject=row["subject"],
            predicate=row["predicate"],
            object=row["object"],
            confidence=float(row["confidence"]),
            source_exchange_id=row["source_exchange_id"],
            source_date=row["source_date"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            agent_id=row["agent_id"],
            pending_resolution=bool(row["pending_resolution"]),
        )


@dataclass(slots=True)
class Cooccurrence:
    entity_a: str
    entity_b: str
    count: int = 1
    last_seen: str | None = None

    def other(self, entity_id: str) -> str:
        return self.entity_b if self.entity_a == entity_id else self.entity_a


@dataclass(slots=True)
class MetaPattern:
    """An ordered predicate sequence used as a multi-hop traversal template."""

    id: int
    predicates: list[str]
    type: PatternType = PatternType.STATIC
    weight: float = 1.0
    yield_score: float = 0.0
    overlap_ratio: float = 1.0
    active: bool = True
    last_validated: str | None = None
    agent_id: str = "main"

    @property
    def key(self) -> str:
        return pattern_key(self.predicates)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MetaPattern":
        return cls(
            id=int(row["id"]),
            predicates=list(json.loads(row["predicates"])),
            type=PatternType(row["pattern_type"]),
            weight=float(row["weight"]),
            yield_score=float(row["yield_score"] or 0.0),
            overlap_ratio=float(row["overlap_ratio"] if row["overlap_ratio"] is not None else 1.0),
            active=bool(row["active"]),
            last_validated=row["last_validated"],
            agent_id=row["agent_id"],
        )


def pattern_key(predicates: list[str] | tuple[str, ...]) -> str:
    """Stable storage key for a predicate sequence."""
    return json.dumps(list(predicates))


@dataclass(slots=True)
class PredicateStats:
    predicate: str
    count: int
    unique_subjects: int
    unique_objects: int
    avg_confidence: float

    @property
    def fanout(self) -> float:
        return self.count / max(self.unique_subjects, 1)


# --------------------------
# Query / resolution results
# --------------------------


@dataclass(slots=True)
class ExchangeHit:
    id: str
    score: float
    shared_entities: list[str] = field(default_factory=list)
    max_confidence: float = 0.0
    date: str | None = None

    @property
    def shared_entity_count(self) -> int:
        return len(self.shared_entities)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "score": self.score,
            "sharedEntities": list(self.shared_entities),
            "sharedEntityCount": self.shared_entity_count,
            "maxConfidence": self.max_confidence,
            "date": self.date,
        }


@dataclass(slots=True)
class SearchResult:
    exchanges: list[ExchangeHit] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"exchanges": [e.to_dict() for e in self.exchanges], "entities": list(self.entities)}


@dataclass(slots=True)
class TraversalPath:
    """One row of the recursive traversal: the entity sequence walked so far."""

    entities: list[str]
    predicates: list[str]
    depth: int
    score: float
    source_exchange_id: str | None = None


@dataclass(slots=True)
class EntityContext:
    entity: Entity
    relationships: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    cooccurrences: list[dict[str, Any]] = field(default_factory=list)
    triple_count: int = 0


@dataclass(slots=True)
class Candidate:
    entity: Entity
    score: float
    days_since_seen: int


@dataclass(slots=True)
class ResolutionResult:
    tier: ResolutionTier
    confidence: float
    entity: Entity | None = None
    candidates: list[Candidate] = field(default_factory=list)
    note: str | None = None

    @property
    def canonical_name(self) -> str | None:
        """Name to write under when the tier accepts an existing entity."""
        if self.tier in (ResolutionTier.EXACT, ResolutionTier.ASSUME) and self.entity is not None:
            return self.entity.canonical_name
        return None
