"""Meta-path discovery.

Mines predicate sequences that connect entity pairs a single edge does not.
Conservative on purpose: candidates pass a fanout cost filter, a structural
viability check against the live graph and a novelty check before a pattern
is saved. Runs off the request path and can be cancelled between candidate
evaluations; each pattern save commits on its own.
"""

from __future__ import annotations

import itertools
import logging
import sqlite3
import threading
import time
from collections.abc import Sequence
from dataclasses import dataclass

from ..settings import DiscoveryConfig
from .models import PatternType, PredicateStats, pattern_key
from .paths import PathTemplate
from .store import TripleStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Evaluation:
    yield_count: int
    overlap_ratio: float
    avg_confidence: float

    @property
    def score(self) -> float:
        return self.yield_count * (1.0 - self.overlap_ratio) * self.avg_confidence


@dataclass(slots=True)
class DiscoveryReport:
    candidates: int = 0
    viable: int = 0
    novel: int = 0
    saved: int = 0
    cancelled: bool = False
    elapsed_ms: float = 0.0


@dataclass(slots=True)
class ValidationReport:
    validated: int = 0
    retired: int = 0
    cancelled: bool = False


def _cancelled(cancel: threading.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


class PatternDiscovery:
    def __init__(self, store: TripleStore, config: DiscoveryConfig | None = None):
        self.store = store
        self.config = config or DiscoveryConfig()

    # --------------------------
    # Stage 1/2: candidates + fanout
    # --------------------------

    def generate_candidates(self, stats: Sequence[PredicateStats]) -> list[tuple[str, ...]]:
        names = [s.predicate for s in stats if s.count >= self.config.min_predicate_count]
        if len(names) < 2:
            return []
        candidates = list(itertools.product(names, repeat=2))
        if len(names) <= self.config.max_vocabulary_for_triples and self.config.max_candidate_length >= 3:
            candidates.extend(itertools.product(names, repeat=3))
        return candidates

    def passes_fanout(self, predicates: Sequence[str], fanout: dict[str, float]) -> bool:
        if not any(fanout.get(p, 1.0) < self.config.low_fanout for p in predicates):
            return False
        product = 1.0
        for p in predicates:
            product *= fanout.get(p, 1.0)
        return product < self.config.max_fanout_per_step ** len(predicates)

    # --------------------------
    # Stage 3/4: viability + novelty
    # --------------------------

    def evaluate(self, predicates: Sequence[str], agent_id: str = "main") -> Evaluation | None:
        """Reachable pairs through ``predicates`` and how many already share an edge.

        None when the sequence is invalid, the query fails or fewer than
        ``min_yield`` pairs are reachable.
        """
        try:
            template = PathTemplate.of(predicates)
        except ValueError as e:
            logger.debug("Not evaluating %r: %s", predicates, e)
            return None

        sql, params = template.reachable_pairs_sql(
            agent_id, self.store.timestamp(), self.config.recency_horizon_days, self.config.sample_size
        )
        try:
            with self.store.reader() as con:
                pairs = con.execute(sql, params).fetchall()
                if len(pairs) < self.config.min_yield:
                    return None
                direct = 0
                total_conf = 0.0
                for pair in pairs:
                    total_conf += float(pair["path_conf"] or 0.0)
                    hit = con.execute(
                        """
                        SELECT 1 FROM triples
                        WHERE agent_id = ? AND subject = ? AND object = ?
                        LIMIT 1
                        """,
                        (agent_id, pair["src"], pair["dst"]),
                    ).fetchone()
                    if hit:
                        direct += 1
        except sqlite3.Error as e:
            logger.warning("[graph:%s] evaluating %s failed: %s", agent_id, list(predicates), e)
            return None

        n = len(pairs)
        return Evaluation(yield_count=n, overlap_ratio=direct / n, avg_confidence=total_conf / n)

    def _acceptable(self, ev: Evaluation | None) -> bool:
        return (
            ev is not None
            and ev.yield_count >= self.config.min_yield
            and ev.overlap_ratio <= self.config.max_overlap_ratio
        )

    # --------------------------
    # Entry points
    # --------------------------

    def discover(self, agent_id: str = "main", cancel: threading.Event | None = None) -> DiscoveryReport:
        t0 = time.perf_counter()
        report = DiscoveryReport()

        stats = self.store.get_predicate_stats(agent_id)
        candidates = self.generate_candidates(stats)
        report.candidates = len(candidates)
        if not candidates:
            report.elapsed_ms = (time.perf_counter() - t0) * 1000.0
            return report

        fanout = {s.predicate: s.fanout for s in stats}
        existing = self.store.get_active_patterns(agent_id)
        existing_keys = {p.key for p in existing}
        survivors = [
            c for c in candidates if self.passes_fanout(c, fanout) and pattern_key(c) not in existing_keys
        ]

        scored: list[tuple[tuple[str, ...], Evaluation]] = []
        for preds in survivors:
            if _cancelled(cancel):
                report.cancelled = True
                break
            ev = self.evaluate(preds, agent_id)
            if ev is None:
                continue
            report.viable += 1
            if self._acceptable(ev):
                report.novel += 1
                scored.append((preds, ev))

        scored.sort(key=lambda item: item[1].score, reverse=True)
        static_count = sum(1 for p in existing if p.type is PatternType.STATIC)
        discovered_count = sum(1 for p in existing if p.type is PatternType.DISCOVERED)
        slots = max(0, self.config.max_active_patterns - static_count - discovered_count)

        for preds, ev in scored[:slots]:
            if _cancelled(cancel):
                report.cancelled = True
                break
            saved = self.store.save_pattern(
                agent_id, list(preds), min(ev.score, 1.0), float(ev.yield_count), ev.overlap_ratio
            )
            if saved is not None:
                report.saved += 1

        report.elapsed_ms = (time.perf_counter() - t0) * 1000.0
        logger.info(
            "[graph:%s] discovery: %d candidates, %d viable, %d novel, %d saved%s",
            agent_id,
            report.candidates,
            report.viable,
            report.novel,
            report.saved,
            " (cancelled)" if report.cancelled else "",
        )
        return report

    def validate_patterns(self, agent_id: str = "main", cancel: threading.Event | None = None) -> ValidationReport:
        """Re-score discovered patterns; retire those that stopped adding reach."""
        report = ValidationReport()
        for pattern in self.store.get_active_patterns(agent_id):
            if pattern.type is PatternType.STATIC:
                continue
            if _cancelled(cancel):
                report.cancelled = True
                break
            ev = self.evaluate(pattern.predicates, agent_id)
            if not self._acceptable(ev):
                self.store.deactivate_pattern(pattern.id)
                report.retired += 1
                continue
            self.store.save_pattern(
                agent_id, pattern.predicates, min(ev.score, 1.0), float(ev.yield_count), ev.overlap_ratio
            )
            report.validated += 1

        logger.info("[graph:%s] validation: %d kept, %d retired", agent_id, report.validated, report.retired)
        return report
