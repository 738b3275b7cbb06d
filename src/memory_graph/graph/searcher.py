from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..settings import RetrievalConfig
from .models import EntityContext, ExchangeHit, MetaPattern, SearchResult, TraversalPath
from .paths import PathTemplate
from .store import TripleStore, clean_name, normalize_entity_id

logger = logging.getLogger(__name__)

# unit separator; entity ids never contain control characters
SEP = "\x1f"


@dataclass(slots=True)
class _Accumulator:
    id: str
    score: float = 0.0
    shared: set[str] = field(default_factory=set)
    max_confidence: float = 0.0
    date: str | None = None

    def see_date(self, d: str | None) -> None:
        if d and (self.date is None or d > self.date):
            self.date = d


def _traversal_cte(n_seeds: int) -> str:
    seeds = ", ".join(f":s{i}" for i in range(n_seeds))
    seed_side = f"CASE WHEN t.subject IN ({seeds}) THEN t.subject ELSE t.object END"
    seed_other = f"CASE WHEN t.subject IN ({seeds}) THEN t.object ELSE t.subject END"
    step_other = "CASE WHEN t.subject = h.entity THEN t.object ELSE t.subject END"
    return f"""
        WITH RECURSIVE hop(entity, depth, path, preds, source_exchange_id, score) AS (
            SELECT {seed_other},
                   1,
                   char(31) || {seed_side} || char(31) || {seed_other} || char(31),
                   t.predicate,
                   t.source_exchange_id,
                   t.confidence * :decay
            FROM triples t
            WHERE (t.subject IN ({seeds}) OR t.object IN ({seeds}))
              AND t.agent_id = :agent
              AND t.confidence >= :min_conf

            UNION ALL

            SELECT {step_other},
                   h.depth + 1,
                   h.path || {step_other} || char(31),
                   h.preds || char(31) || t.predicate,
                   t.source_exchange_id,
                   h.score * :decay
            FROM hop h
            JOIN triples t ON (t.subject = h.entity OR t.object = h.entity)
            WHERE h.depth < :max_hops
              AND t.agent_id = :agent
              AND t.confidence >= :min_conf
              AND EXISTS (SELECT 1 FROM entities e WHERE e.agent_id = :agent AND e.id = h.entity)
              AND instr(h.path, char(31) || {step_other} || char(31)) = 0
        )
    """


class GraphSearcher:
    """Link expansion, recursive traversal and meta-path retrieval over a TripleStore."""

    def __init__(self, store: TripleStore, config: RetrievalConfig | None = None):
        self.store = store
        self.config = config or RetrievalConfig()

    @staticmethod
    def _entity_ids(entities: Iterable[Any]) -> list[str]:
        out: list[str] = []
        for e in entities or ():
            name = e if isinstance(e, str) else getattr(e, "name", None)
            eid = normalize_entity_id(clean_name(name))
            if eid and eid not in out:
                out.append(eid)
        return out

    def search(
        self,
        entities: Iterable[Any],
        agent_id: str = "main",
        *,
        limit: int | None = None,
        max_hops: int | None = None,
        hop_decay: float | None = None,
    ) -> SearchResult:
        """Rank exchanges related to the query entities.

        ``max_hops <= 1`` runs single-hop link expansion; anything deeper runs
        the recursive traversal plus active meta-paths, merged per exchange by
        taking the larger of the two scores.
        """
        ids = self._entity_ids(entities)
        if not ids:
            return SearchResult()

        limit = limit or self.config.max_results
        hops = max_hops if max_hops is not None else self.config.max_hops
        decay = hop_decay if hop_decay is not None else self.config.hop_decay

        if hops <= 1:
            return self._single_hop_search(ids, agent_id, limit)

        hop_scores = self.search_multi_hop(ids, agent_id, hops, decay, limit * 2)
        meta_scores = self.search_meta_paths(ids, agent_id, self.store.get_active_patterns(agent_id), limit)

        merged = dict(hop_scores)
        for ex_id, score in meta_scores.items():
            merged[ex_id] = max(merged.get(ex_id, 0.0), score)

        ranked = sorted(merged.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        dates = self._exchange_dates([ex for ex, _ in ranked], agent_id)
        hits = [
            ExchangeHit(id=ex, score=score, shared_entities=list(ids), max_confidence=score, date=dates.get(ex))
            for ex, score in ranked
        ]
        return SearchResult(exchanges=hits, entities=ids)

    # --------------------------
    # Single hop
    # --------------------------

    def _single_hop_search(self, ids: Sequence[str], agent_id: str, limit: int) -> SearchResult:
        acc: dict[str, _Accumulator] = {}

        for eid in ids:
            for t in self.store.get_triples_by_id(eid, agent_id, 100):
                if not t.source_exchange_id:
                    continue
                entry = acc.setdefault(t.source_exchange_id, _Accumulator(t.source_exchange_id))
                conf = t.confidence if t.confidence else 1.0
                entry.shared.add(eid)
                entry.score += conf
                entry.max_confidence = max(entry.max_confidence, conf)
                entry.see_date(t.source_date)

            for cooc in self.store.get_cooccurrences(eid, agent_id, self.config.cooccurrence_fanout):
                boost = self.config.cooccurrence_boost * (cooc.count or 1)
                for t in self.store.get_triples_by_id(cooc.other(eid), agent_id, 20):
                    if not t.source_exchange_id:
                        continue
                    entry = acc.setdefault(t.source_exchange_id, _Accumulator(t.source_exchange_id))
                    entry.score += boost
                    entry.see_date(t.source_date)

        hits = [
            ExchangeHit(
                id=e.id,
                score=e.score,
                shared_entities=sorted(e.shared),
                max_confidence=e.max_confidence,
                date=e.date,
            )
            for e in acc.values()
            if len(e.shared) >= self.config.min_shared_entities
        ]
        hits.sort(key=lambda h: (-h.score, h.id))
        return SearchResult(exchanges=hits[:limit], entities=list(ids))

    # --------------------------
    # Multi hop
    # --------------------------

    def _traversal_params(self, ids: Sequence[str], agent_id: str, max_hops: int, decay: float) -> dict[str, Any]:
        params: dict[str, Any] = {f"s{i}": eid for i, eid in enumerate(ids)}
        params.update(
            agent=agent_id,
            decay=decay,
            min_conf=self.config.min_traversal_confidence,
            max_hops=max_hops,
        )
        return params

    def search_multi_hop(
        self,
        ids: Sequence[str],
        agent_id: str,
        max_hops: int,
        decay: float | None = None,
        limit: int | None = None,
    ) -> dict[str, float]:
        """exchange id -> summed decayed score over every path reaching it."""
        if not ids:
            return {}
        params = self._traversal_params(ids, agent_id, max_hops, decay or self.config.hop_decay)
        params["limit"] = limit or self.config.max_results * 2
        sql = (
            _traversal_cte(len(ids))
            + """
            SELECT source_exchange_id, SUM(score) AS total_score, MIN(depth) AS min_depth
            FROM hop
            WHERE source_exchange_id IS NOT NULL AND depth <= :max_hops
            GROUP BY source_exchange_id
            ORDER BY total_score DESC
            LIMIT :limit
            """
        )
        try:
            rows = self.store.query(sql, params)
        except sqlite3.Error as e:
            logger.warning("[graph:%s] multi-hop traversal failed: %s", agent_id, e)
            return {}
        return {r["source_exchange_id"]: float(r["total_score"]) for r in rows}

    def trace_paths(
        self,
        entities: Iterable[Any],
        agent_id: str = "main",
        max_hops: int | None = None,
        limit: int = 100,
    ) -> list[TraversalPath]:
        """The individual traversal rows behind a multi-hop search, best first."""
        ids = self._entity_ids(entities)
        if not ids:
            return []
        params = self._traversal_params(ids, agent_id, max_hops or self.config.max_hops, self.config.hop_decay)
        params["limit"] = limit
        sql = (
            _traversal_cte(len(ids))
            + """
            SELECT path, preds, depth, score, source_exchange_id
            FROM hop
            WHERE depth <= :max_hops
            ORDER BY score DESC, depth
            LIMIT :limit
            """
        )
        try:
            rows = self.store.query(sql, params)
        except sqlite3.Error as e:
            logger.warning("[graph:%s] path trace failed: %s", agent_id, e)
            return []
        return [
            TraversalPath(
                entities=[p for p in r["path"].split(SEP) if p],
                predicates=r["preds"].split(SEP),
                depth=int(r["depth"]),
                score=float(r["score"]),
                source_exchange_id=r["source_exchange_id"],
            )
            for r in rows
        ]

    # --------------------------
    # Meta paths
    # --------------------------

    def search_meta_paths(
        self,
        ids: Sequence[str],
        agent_id: str,
        patterns: Iterable[MetaPattern],
        limit: int | None = None,
    ) -> dict[str, float]:
        """exchange id -> best meta-path score across the given patterns."""
        results: dict[str, float] = {}
        if not ids:
            return results

        for pattern in patterns or ():
            try:
                template = PathTemplate.of(pattern.predicates)
            except ValueError as e:
                logger.debug("Skipping meta-pattern %s: %s", pattern.id, e)
                continue
            sql, params = template.match_sql(ids, agent_id, pattern.weight, limit or self.config.max_results)
            try:
                rows = self.store.query(sql, params)
            except sqlite3.Error as e:
                logger.warning("[graph:%s] meta-path %s failed: %s", agent_id, pattern.predicates, e)
                continue
            for r in rows:
                ex = r["source_exchange_id"]
                if ex:
                    results[ex] = max(results.get(ex, 0.0), float(r["score"]))
        return results

    def _exchange_dates(self, exchange_ids: Sequence[str], agent_id: str) -> dict[str, str | None]:
        if not exchange_ids:
            return {}
        marks = ", ".join("?" for _ in exchange_ids)
        try:
            rows = self.store.query(
                f"""
                SELECT source_exchange_id, MAX(source_date) AS date FROM triples
                WHERE agent_id = ? AND source_exchange_id IN ({marks})
                GROUP BY source_exchange_id
                """,
                [agent_id, *exchange_ids],
            )
        except sqlite3.Error as e:
            logger.warning("[graph:%s] exchange date lookup failed: %s", agent_id, e)
            return {}
        return {r["source_exchange_id"]: r["date"] for r in rows}

    # --------------------------
    # Entity context
    # --------------------------

    def get_entity_context(self, entity_name: str, agent_id: str = "main") -> EntityContext | None:
        eid = normalize_entity_id(clean_name(entity_name))
        entity = self.store.get_entity(eid, agent_id) if eid else None
        if entity is None:
            return None

        triples = self.store.get_triples_by_id(eid, agent_id, 50)
        relationships: dict[str, list[dict[str, Any]]] = {}
        for t in triples:
            relationships.setdefault(t.predicate, []).append(
                {"subject": t.subject, "object": t.object, "confidence": t.confidence, "date": t.source_date}
            )
        cooccurrences = [
            {"entity": c.other(eid), "count": c.count, "last_seen": c.last_seen}
            for c in self.store.get_cooccurrences(eid, agent_id, 10)
        ]
        return EntityContext(
            entity=entity, relationships=relationships, cooccurrences=cooccurrences, triple_count=len(triples)
        )
