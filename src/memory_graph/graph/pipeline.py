from __future__ import annotations

import logging
import time
from typing import Any

from ..schemas import IngestRequest, IngestResult
from .models import ResolutionResult, ResolutionTier
from .resolver import EntityResolver
from .store import TripleStore

logger = logging.getLogger(__name__)


class GraphIngestor:
    """Canonicalizes an exchange's names through the resolver, then writes it atomically."""

    def __init__(self, store: TripleStore, resolver: EntityResolver | None = None):
        self.store = store
        self.resolver = resolver

    def canonicalize(self, request: IngestRequest) -> tuple[IngestRequest, list[str], list[str]]:
        """Rename exact/assume matches to their canonical names and flag deferred ones.

        Returns the rewritten request, the ``ask`` notes and the deferred names.
        """
        if self.resolver is None:
            return request, [], []

        agent_id = request.agent_id
        context = [e.name for e in request.entities if isinstance(e.name, str) and e.name]
        cache: dict[str, ResolutionResult] = {}

        def resolve(name: Any) -> ResolutionResult | None:
            if not isinstance(name, str) or not name.strip():
                return None
            if name not in cache:
                cache[name] = self.resolver.resolve(name, agent_id, context)
            return cache[name]

        def canonical(name: Any) -> Any:
            r = resolve(name)
            return r.canonical_name if r is not None and r.canonical_name else name

        entities = [e.model_copy(update={"name": canonical(e.name)}) for e in request.entities]

        triples = []
        for t in request.triples:
            sub, obj = resolve(t.subject), resolve(t.object)
            pending = t.pending_resolution or any(
                r is not None and r.tier is ResolutionTier.DEFER for r in (sub, obj)
            )
            triples.append(
                t.model_copy(
                    update={
                        "subject": canonical(t.subject),
                        "object": canonical(t.object),
                        "pending_resolution": pending,
                    }
                )
            )

        # malformed pairs pass through unchanged; the store skips them
        cooccurrences = [
            [canonical(n) or n for n in pair] if isinstance(pair, (list, tuple)) else pair
            for pair in request.cooccurrences
        ]

        notes: list[str] = []
        deferred: list[str] = []
        for name, r in cache.items():
            if r.tier is ResolutionTier.ASK and r.note and r.note not in notes:
                notes.append(r.note)
            elif r.tier is ResolutionTier.DEFER:
                deferred.append(name)

        rewritten = request.model_copy(
            update={"entities": entities, "triples": triples, "cooccurrences": cooccurrences}
        )
        return rewritten, notes, deferred

    def ingest(self, request: IngestRequest) -> IngestResult:
        t0 = time.perf_counter()
        request, notes, deferred = self.canonicalize(request)
        t1 = time.perf_counter()
        triple_ids = self.store.write_exchange(
            entities=request.entities,
            triples=request.triples,
            cooccurrences=request.cooccurrences,
            agent_id=request.agent_id,
            source_exchange_id=request.source_exchange_id,
            source_date=request.source_date,
        )
        t2 = time.perf_counter()

        logger.info(
            "[graph:%s] wrote %d triples from %s (%d entities, %d deferred)",
            request.agent_id,
            len(triple_ids),
            request.source_exchange_id,
            len(request.entities),
            len(deferred),
        )
        return IngestResult(
            triple_ids=triple_ids,
            notes=notes,
            deferred=deferred,
            resolve_ms=(t1 - t0) * 1000.0,
            write_ms=(t2 - t1) * 1000.0,
        )
