from .discovery import PatternDiscovery
from .paths import PathTemplate
from .resolver import EntityResolver
from .searcher import GraphSearcher
from .store import TripleStore, normalize_entity_id

__all__ = [
    "EntityResolver",
    "GraphSearcher",
    "PathTemplate",
    "PatternDiscovery",
    "TripleStore",
    "normalize_entity_id",
]
