from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any

from .store import TripleStore

logger = logging.getLogger(__name__)

STALE_DAYS = 30


@dataclass(slots=True)
class GraphGap:
    question: str
    type: str
    source_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"question": self.question, "type": self.type, "sourceId": self.source_id}


def detect_gaps(store: TripleStore, agent_id: str = "main") -> list[GraphGap]:
    """Structural holes worth asking about: busy entities with thin or vague edges, or gone quiet."""
    gaps: list[GraphGap] = []
    try:
        under_connected = store.query(
            """
            SELECT e.id, e.canonical_name, e.mention_count, COUNT(t.id) AS triple_count
            FROM entities e
            LEFT JOIN triples t
              ON (t.subject = e.id OR t.object = e.id) AND t.agent_id = e.agent_id
            WHERE e.agent_id = ? AND e.mention_count > 5
            GROUP BY e.id
            HAVING triple_count < 3
            ORDER BY e.mention_count DESC
            LIMIT 5
            """,
            (agent_id,),
        )
        for r in under_connected:
            gaps.append(
                GraphGap(
                    question=(
                        f"What do we actually know about {r['canonical_name']}? It's been mentioned "
                        f"{r['mention_count']} times but has very few recorded relationships."
                    ),
                    type="under_connected",
                    source_id=f"graph:{r['id']}",
                )
            )

        generic_only = store.query(
            """
            SELECT e.id, e.canonical_name FROM entities e
            WHERE e.agent_id = ? AND e.mention_count > 3
              AND NOT EXISTS (
                SELECT 1 FROM triples t
                WHERE (t.subject = e.id OR t.object = e.id)
                  AND t.agent_id = e.agent_id AND t.predicate <> 'related_to')
              AND EXISTS (
                SELECT 1 FROM triples t
                WHERE (t.subject = e.id OR t.object = e.id) AND t.agent_id = e.agent_id)
            ORDER BY e.mention_count DESC
            LIMIT 5
            """,
            (agent_id,),
        )
        for r in generic_only:
            gaps.append(
                GraphGap(
                    question=(
                        f"How specifically is {r['canonical_name']} connected to other things we know "
                        "about? We only have generic associations so far."
                    ),
                    type="generic_only",
                    source_id=f"graph:{r['id']}",
                )
            )

        stale = store.query(
            """
            SELECT id, canonical_name FROM entities
            WHERE agent_id = ? AND mention_count > 5
              AND julianday(?) - julianday(last_seen) > ?
            ORDER BY mention_count DESC
            LIMIT 3
            """,
            (agent_id, store.timestamp(), STALE_DAYS),
        )
        for r in stale:
            gaps.append(
                GraphGap(
                    question=f"We haven't discussed {r['canonical_name']} in over {STALE_DAYS} days. Has anything changed?",
                    type="temporal_dead_zone",
                    source_id=f"graph:{r['id']}",
                )
            )
    except sqlite3.Error as e:
        logger.warning("[graph:%s] gap detection failed: %s", agent_id, e)
        return []

    return gaps
