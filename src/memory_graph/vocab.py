"""Closed vocabularies shared by the store, the settings and the interfaces."""

from __future__ import annotations

from enum import Enum
from typing import Any


class EntityType(str, Enum):
    PERSON = "PERSON"
    ORGANIZATION = "ORGANIZATION"
    PLACE = "PLACE"
    CONCEPT = "CONCEPT"
    THING = "THING"
    DATE = "DATE"

    @classmethod
    def coerce(cls, value: Any) -> "EntityType":
        """Map free-form type labels onto the enumeration, defaulting to CONCEPT."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().upper())
        except ValueError:
            return cls.CONCEPT


class Predicate(str, Enum):
    """Canonical relationship vocabulary. Triples with any other predicate are dropped."""

    KNOWS = "knows"
    CREATED = "created"
    USES = "uses"
    LOCATED_IN = "located_in"
    PART_OF = "part_of"
    INTERESTED_IN = "interested_in"
    PREFERS = "prefers"
    WORKS_ON = "works_on"
    RELATED_TO = "related_to"
    HAS_PROPERTY = "has_property"
    OCCURRED_AT = "occurred_at"
    CAUSES = "causes"

    @classmethod
    def parse(cls, value: Any) -> "Predicate | None":
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


class PatternType(str, Enum):
    STATIC = "static"
    DISCOVERED = "discovered"


class ResolutionTier(str, Enum):
    EXACT = "exact"
    NEW = "new"
    ASSUME = "assume"
    ASK = "ask"
    DEFER = "defer"


# Meta-paths shorter or longer than this are rejected at the pattern layer.
MIN_PATTERN_LENGTH = 2
MAX_PATTERN_LENGTH = 3
