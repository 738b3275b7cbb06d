"""Conversational entity resolution.

A mention either matches an entity exactly, is new, or is ambiguous. Ambiguity
is never settled by silent scoring alone: a confident single candidate is
assumed, a weak one produces a note the agent can turn into a clarifying
question, and anything in between is written with ``pending_resolution`` and
revisited by :meth:`EntityResolver.process_pending`.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from ..settings import ResolutionConfig
from .models import Candidate, Entity, ResolutionResult, ResolutionTier
from .store import TripleStore, clean_name, days_since, normalize_entity_id

logger = logging.getLogger(__name__)

BASE_SCORE = 0.5
DOMINANCE_RATIO = 5
DOMINANT_CONFIDENCE = 0.85
AMBIGUOUS_CONFIDENCE = 0.3
MAX_NOTE_CANDIDATES = 3
PREFIX_RATIO = 0.6
MIN_PREFIX = 3
PREFIX_LIMIT = 10


@dataclass(slots=True)
class PendingReport:
    resolved: int = 0
    expired: int = 0


class EntityResolver:
    def __init__(self, store: TripleStore, config: ResolutionConfig | None = None):
        self.store = store
        self.config = config or ResolutionConfig()

    # --------------------------
    # Resolution
    # --------------------------

    def resolve(self, mention: Any, agent_id: str = "main", context: Iterable[str] = ()) -> ResolutionResult:
        name = clean_name(mention)
        if not name:
            return ResolutionResult(tier=ResolutionTier.NEW, confidence=1.0)

        existing = self.store.get_entity(normalize_entity_id(name), agent_id)
        if existing:
            return ResolutionResult(tier=ResolutionTier.EXACT, confidence=1.0, entity=existing)

        if self.config.method == "exact":
            return ResolutionResult(tier=ResolutionTier.NEW, confidence=1.0)

        found = self._find_candidates(name, agent_id)
        if not found:
            return ResolutionResult(tier=ResolutionTier.NEW, confidence=1.0)

        context_names = [c for c in context if c and normalize_entity_id(c) != normalize_entity_id(name)]
        now = self.store.now()
        scored = [
            Candidate(
                entity=e,
                score=self._score_candidate(e, context_names, agent_id),
                days_since_seen=days_since(e.last_seen, now),
            )
            for e in found
        ]
        scored.sort(key=lambda c: c.score, reverse=True)

        if len(scored) == 1:
            return self._single_candidate_result(scored[0], name)
        return self._multiple_candidate_result(scored, name)

    def _find_candidates(self, mention: str, agent_id: str) -> list[Entity]:
        needle = mention.lower().strip()
        prefix = needle[: max(MIN_PREFIX, math.ceil(len(needle) * PREFIX_RATIO))]

        out: list[Entity] = []
        seen: set[str] = set()
        for e in self.store.find_entities_by_prefix(prefix, agent_id, PREFIX_LIMIT):
            if e.id not in seen:
                seen.add(e.id)
                out.append(e)

        # "bob" should find "Bob Martinez", and the other way round
        for e in self.store.recent_entities(agent_id, self.config.recent_window):
            if e.id in seen:
                continue
            forms = [e.canonical_name.lower(), *(a.lower() for a in e.aliases)]
            if any(needle in f or f in needle for f in forms if f):
                seen.add(e.id)
                out.append(e)
        return out

    def _score_candidate(self, entity: Entity, context: Sequence[str], agent_id: str) -> float:
        score = BASE_SCORE

        age = days_since(entity.last_seen, self.store.now())
        if age < self.config.recency_boost_days:
            score += 0.3
        elif age < 30:
            score += 0.1

        if context:
            cooc = sum(self.store.cooccurrence_count(entity.id, c, agent_id) for c in context)
            if cooc >= self.config.cooccurrence_min_count:
                score += 0.2
            elif cooc > 0:
                score += 0.1

        if entity.mention_count > 10:
            score += 0.1
        elif entity.mention_count > 3:
            score += 0.05

        # float sums like 0.5 + 0.3 must land exactly on the thresholds
        return round(min(1.0, score), 6)

    def _tier_for_score(self, score: float) -> ResolutionTier:
        if score >= self.config.assume_threshold:
            return ResolutionTier.ASSUME
        if score < self.config.ask_threshold:
            return ResolutionTier.ASK
        return ResolutionTier.DEFER

    def _single_candidate_result(self, candidate: Candidate, mention: str) -> ResolutionResult:
        tier = self._tier_for_score(candidate.score)
        if tier is ResolutionTier.ASK:
            return ResolutionResult(
                tier=tier,
                confidence=candidate.score,
                candidates=[candidate],
                note=self.build_note(mention, [candidate]),
            )
        return ResolutionResult(
            tier=tier, confidence=candidate.score, entity=candidate.entity, candidates=[candidate]
        )

    def _multiple_candidate_result(self, ranked: list[Candidate], mention: str) -> ResolutionResult:
        best, second = ranked[0], ranked[1]
        dominance = best.entity.mention_count / max(1, second.entity.mention_count)
        if dominance > DOMINANCE_RATIO and best.days_since_seen < self.config.recency_boost_days:
            return ResolutionResult(
                tier=ResolutionTier.ASSUME,
                confidence=DOMINANT_CONFIDENCE,
                entity=best.entity,
                candidates=ranked,
            )

        top = ranked[:MAX_NOTE_CANDIDATES]
        return ResolutionResult(
            tier=ResolutionTier.ASK,
            confidence=AMBIGUOUS_CONFIDENCE,
            candidates=top,
            note=self.build_note(mention, top),
        )

    @staticmethod
    def build_note(mention: str, candidates: Sequence[Candidate]) -> str:
        lines = [f'"{mention}" was mentioned but isn\'t clearly matched to a known entity.', "Known:"]
        for c in candidates:
            d = c.days_since_seen
            recency = "recent" if d < 7 else f"{d}d ago" if d < 30 else "not seen recently"
            lines.append(
                f"- {c.entity.canonical_name} ({c.entity.entity_type.value.lower()}, "
                f"{c.entity.mention_count} mentions, {recency})"
            )
        lines.append("The agent may want to clarify which entity is being discussed.")
        return "\n".join(lines)

    def get_ask_notes(self, query_entities: Sequence[Any], agent_id: str = "main") -> list[str]:
        """Disambiguation notes for every query entity that resolves to ``ask``."""
        names = [n for n in (q if isinstance(q, str) else getattr(q, "name", None) for q in query_entities) if n]
        notes = []
        for name in names:
            result = self.resolve(name, agent_id, [n for n in names if n != name])
            if result.tier is ResolutionTier.ASK and result.note:
                notes.append(result.note)
        return notes

    # --------------------------
    # Merge / pending
    # --------------------------

    def merge_entities(self, keep_id: str, merge_id: str, agent_id: str = "main") -> int:
        """Fold ``merge_id`` into ``keep_id``. Returns the number of triples rewritten."""
        if not keep_id or not merge_id or keep_id == merge_id:
            return 0

        store = self.store
        with store.transaction() as con:
            keep_row = con.execute(
                "SELECT * FROM entities WHERE agent_id=? AND id=?", (agent_id, keep_id)
            ).fetchone()
            merge_row = con.execute(
                "SELECT * FROM entities WHERE agent_id=? AND id=?", (agent_id, merge_id)
            ).fetchone()
            if keep_row is None or merge_row is None:
                logger.debug("merge skipped, unknown entity: keep=%s merge=%s", keep_id, merge_id)
                return 0
            keep, merged = Entity.from_row(keep_row), Entity.from_row(merge_row)

            aliases: list[str] = []
            for a in [*keep.aliases, *merged.aliases, merged.canonical_name]:
                if a != keep.canonical_name and a not in aliases:
                    aliases.append(a)
            con.execute(
                """
                UPDATE entities
                SET aliases = ?,
                    mention_count = mention_count + ?,
                    first_seen = MIN(first_seen, ?),
                    last_seen = MAX(last_seen, ?)
                WHERE agent_id = ? AND id = ?
                """,
                (
                    json.dumps(aliases),
                    merged.mention_count,
                    merged.first_seen or keep.first_seen,
                    merged.last_seen or keep.last_seen,
                    agent_id,
                    keep_id,
                ),
            )

            ts = store.timestamp()
            rewritten = 0
            rows = con.execute(
                "SELECT * FROM triples WHERE agent_id=? AND (subject=? OR object=?)",
                (agent_id, merge_id, merge_id),
            ).fetchall()
            for row in rows:
                subject = keep_id if row["subject"] == merge_id else row["subject"]
                obj = keep_id if row["object"] == merge_id else row["object"]
                twin = con.execute(
                    """
                    SELECT id FROM triples
                    WHERE agent_id=? AND subject=? AND predicate=? AND object=? AND id<>?
                    """,
                    (agent_id, subject, row["predicate"], obj, row["id"]),
                ).fetchone()
                if twin:
                    con.execute(
                        "UPDATE triples SET confidence = MAX(confidence, ?), updated_at = ? WHERE id = ?",
                        (row["confidence"], ts, twin["id"]),
                    )
                    con.execute("DELETE FROM triples WHERE id = ?", (row["id"],))
                else:
                    con.execute(
                        "UPDATE triples SET subject = ?, object = ?, updated_at = ? WHERE id = ?",
                        (subject, obj, ts, row["id"]),
                    )
                rewritten += 1

            con.execute(
                "UPDATE triples SET pending_resolution = 0 WHERE agent_id=? AND (subject=? OR object=?)",
                (agent_id, keep_id, keep_id),
            )

            coocs = con.execute(
                "SELECT * FROM cooccurrences WHERE agent_id=? AND (entity_a=? OR entity_b=?)",
                (agent_id, merge_id, merge_id),
            ).fetchall()
            for c in coocs:
                other = c["entity_b"] if c["entity_a"] == merge_id else c["entity_a"]
                con.execute(
                    "DELETE FROM cooccurrences WHERE agent_id=? AND entity_a=? AND entity_b=?",
                    (agent_id, c["entity_a"], c["entity_b"]),
                )
                if other == keep_id:
                    continue
                a, b = sorted((keep_id, other))
                con.execute(
                    """
                    INSERT INTO cooccurrences(agent_id, entity_a, entity_b, count, last_seen)
                    VALUES (?,?,?,?,?)
                    ON CONFLICT(agent_id, entity_a, entity_b) DO UPDATE SET
                        count = count + excluded.count,
                        last_seen = MAX(last_seen, excluded.last_seen)
                    """,
                    (agent_id, a, b, c["count"], c["last_seen"]),
                )

            con.execute("DELETE FROM entities WHERE agent_id=? AND id=?", (agent_id, merge_id))

        logger.info("[graph:%s] merged %s into %s (%d triples)", agent_id, merge_id, keep_id, rewritten)
        return rewritten

    def process_pending(self, agent_id: str = "main") -> PendingReport:
        """Clear pending flags for entities that were reinforced or aged out."""
        report = PendingReport()
        now = self.store.now()
        with self.store.transaction() as con:
            rows = con.execute(
                """
                SELECT subject AS entity_id FROM triples WHERE agent_id=? AND pending_resolution=1
                UNION
                SELECT object AS entity_id FROM triples WHERE agent_id=? AND pending_resolution=1
                """,
                (agent_id, agent_id),
            ).fetchall()
            for row in rows:
                entity_row = con.execute(
                    "SELECT * FROM entities WHERE agent_id=? AND id=?", (agent_id, row["entity_id"])
                ).fetchone()
                if entity_row is None:
                    continue
                entity = Entity.from_row(entity_row)
                age = days_since(entity.last_seen, now)

                if entity.mention_count > 1 or age < self.config.recency_boost_days:
                    outcome = "resolved"
                elif age > self.config.pending_max_age_days:
                    outcome = "expired"
                else:
                    continue

                con.execute(
                    """
                    UPDATE triples SET pending_resolution = 0
                    WHERE agent_id=? AND (subject=? OR object=?)
                    """,
                    (agent_id, entity.id, entity.id),
                )
                if outcome == "resolved":
                    report.resolved += 1
                else:
                    report.expired += 1

        logger.info(
            "[graph:%s] pending: %d resolved, %d expired", agent_id, report.resolved, report.expired
        )
        return report
