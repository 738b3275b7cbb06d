"""SQLite-backed triple store with entity registry, co-occurrence cache and
meta-path pattern records.

One database file per agent; every table is additionally partitioned on
``agent_id`` so a shared file never leaks rows between agents.

Writes go through a single connection guarded by a re-entrant lock and run
inside ``BEGIN IMMEDIATE`` transactions, so at most one write transaction is
in flight per store. Reads open a short-lived connection per call; under WAL
they see the last committed snapshot and never a half-applied batch.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..errors import GraphWriteError, StoreBusyError
from .models import (
    MAX_PATTERN_LENGTH,
    MIN_PATTERN_LENGTH,
    Cooccurrence,
    Entity,
    EntityType,
    MetaPattern,
    PatternType,
    Predicate,
    PredicateStats,
    Triple,
    pattern_key,
)

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS triples (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  agent_id TEXT NOT NULL DEFAULT 'main',
  subject TEXT NOT NULL,
  predicate TEXT NOT NULL,
  object TEXT NOT NULL,
  confidence REAL NOT NULL DEFAULT 1.0,
  source_exchange_id TEXT,
  source_date TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  pending_resolution INTEGER NOT NULL DEFAULT 0,
  UNIQUE (agent_id, subject, predicate, object)
);

CREATE TABLE IF NOT EXISTS entities (
  agent_id TEXT NOT NULL DEFAULT 'main',
  id TEXT NOT NULL,
  canonical_name TEXT NOT NULL,
  entity_type TEXT NOT NULL DEFAULT 'CONCEPT',
  first_seen TEXT NOT NULL,
  last_seen TEXT NOT NULL,
  mention_count INTEGER NOT NULL DEFAULT 1,
  aliases TEXT NOT NULL DEFAULT '[]',
  metadata TEXT,
  PRIMARY KEY (agent_id, id)
);

-- undirected pairs, stored with entity_a <= entity_b
CREATE TABLE IF NOT EXISTS cooccurrences (
  agent_id TEXT NOT NULL DEFAULT 'main',
  entity_a TEXT NOT NULL,
  entity_b TEXT NOT NULL,
  count INTEGER NOT NULL DEFAULT 1,
  last_seen TEXT NOT NULL,
  PRIMARY KEY (agent_id, entity_a, entity_b)
);

CREATE TABLE IF NOT EXISTS meta_patterns (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  agent_id TEXT NOT NULL DEFAULT 'main',
  predicates TEXT NOT NULL,
  pattern_type TEXT NOT NULL DEFAULT 'static',
  weight REAL NOT NULL DEFAULT 1.0,
  yield_score REAL NOT NULL DEFAULT 0,
  overlap_ratio REAL NOT NULL DEFAULT 1.0,
  last_validated TEXT,
  active INTEGER NOT NULL DEFAULT 1,
  created_at TEXT NOT NULL,
  UNIQUE (agent_id, predicates)
);

-- traversal indexes
CREATE INDEX IF NOT EXISTS idx_triples_subject ON triples(agent_id, subject);
CREATE INDEX IF NOT EXISTS idx_triples_object ON triples(agent_id, object);
CREATE INDEX IF NOT EXISTS idx_triples_predicate ON triples(agent_id, predicate);
CREATE INDEX IF NOT EXISTS idx_triples_subj_pred ON triples(subject, predicate);
CREATE INDEX IF NOT EXISTS idx_triples_obj_pred ON triples(object, predicate);
CREATE INDEX IF NOT EXISTS idx_triples_source ON triples(source_exchange_id);
CREATE INDEX IF NOT EXISTS idx_triples_updated ON triples(agent_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_triples_pending ON triples(agent_id, pending_resolution);
CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(agent_id, canonical_name);
CREATE INDEX IF NOT EXISTS idx_entities_last_seen ON entities(agent_id, last_seen);
CREATE INDEX IF NOT EXISTS idx_cooc_b ON cooccurrences(agent_id, entity_b);
CREATE INDEX IF NOT EXISTS idx_meta_patterns_agent ON meta_patterns(agent_id, active);
"""

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_NAME_LENGTH = 200
DECAY_FLOOR = 0.1

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_entity_id(name: Any) -> str:
    """Lowercase, trim and collapse whitespace runs to ``_``.

    Returns ``""`` for anything that is not a usable name.
    """
    if not isinstance(name, str):
        return ""
    return re.sub(r"\s+", "_", name.strip().lower())


def clean_name(name: Any) -> str | None:
    if not isinstance(name, str):
        return None
    s = re.sub(r"\s+", " ", name.strip())
    if not s or len(s) > MAX_NAME_LENGTH:
        return None
    return s


def format_timestamp(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(v: Any) -> datetime | None:
    if v is None:
        return None
    if isinstance(v, datetime):
        return v if v.tzinfo else v.replace(tzinfo=UTC)
    if not isinstance(v, str) or not v.strip():
        return None
    s = v.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=UTC)


def days_since(ts: Any, now: datetime) -> int:
    """Whole days elapsed since ``ts``; 999 when unknown."""
    dt = parse_timestamp(ts)
    if dt is None:
        return 999
    return int((now - dt).total_seconds() // 86400)


def _escape_like(s: str) -> str:
    return s.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _get(item: Any, key: str, default: Any = None) -> Any:
    if isinstance(item, Mapping):
        return item.get(key, default)
    return getattr(item, key, default)


def _coerce_confidence(v: Any) -> float | None:
    if v is None:
        return 1.0
    if isinstance(v, bool):
        return None
    try:
        c = float(v)
    except (TypeError, ValueError):
        return None
    if c != c:  # NaN
        return None
    return min(1.0, max(0.0, c))


@dataclass(slots=True)
class GraphStats:
    entity_count: int
    triple_count: int
    pending_count: int
    active_patterns: int
    recent_entities: list[Entity] = field(default_factory=list)
    top_cooccurrences: list[Cooccurrence] = field(default_factory=list)


class TripleStore:
    """Durable per-agent graph state."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = 5000,
        clock: Clock | None = None,
    ):
        self.path = str(Path(path).expanduser())
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_ms = busy_timeout_ms
        self.clock: Clock = clock or _utcnow

        self._lock = threading.RLock()
        self._writer_con: sqlite3.Connection | None = None
        self._tx_depth = 0
        self._tx_owner: int | None = None

        self.init()

    # --------------------------
    # Connections / transactions
    # --------------------------

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.path, timeout=self.busy_timeout_ms / 1000.0)
        con.row_factory = sqlite3.Row
        con.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        return con

    def init(self) -> None:
        con = self.connect()
        try:
            con.executescript(SCHEMA)
            con.commit()
        finally:
            con.close()

    def close(self) -> None:
        with self._lock:
            if self._writer_con is not None:
                self._writer_con.close()
                self._writer_con = None

    def _writer(self) -> sqlite3.Connection:
        if self._writer_con is None:
            con = sqlite3.connect(
                self.path,
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
                check_same_thread=False,
            )
            con.row_factory = sqlite3.Row
            con.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
            self._writer_con = con
        return self._writer_con

    @staticmethod
    def _write_error(e: sqlite3.Error) -> GraphWriteError:
        msg = str(e).lower()
        if "locked" in msg or "busy" in msg:
            return StoreBusyError(f"graph store busy: {e}")
        return GraphWriteError(f"graph write failed: {e}")

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialized write transaction. Nested use joins the outer transaction."""
        with self._lock:
            con = self._writer()
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield con
                finally:
                    self._tx_depth -= 1
                return

            try:
                con.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise self._write_error(e) from e

            self._tx_depth = 1
            self._tx_owner = threading.get_ident()
            try:
                yield con
                con.execute("COMMIT")
            except sqlite3.Error as e:
                if con.in_transaction:
                    con.execute("ROLLBACK")
                raise self._write_error(e) from e
            except BaseException:
                if con.in_transaction:
                    con.execute("ROLLBACK")
                raise
            finally:
                self._tx_depth = 0
                self._tx_owner = None

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        # Inside our own write transaction reads must see the uncommitted rows.
        if self._tx_depth and self._tx_owner == threading.get_ident():
            yield self._writer()
            return
        con = self.connect()
        try:
            yield con
        finally:
            con.close()

    def query(self, sql: str, params: Sequence[Any] | Mapping[str, Any] = ()) -> list[sqlite3.Row]:
        """Run a read-only statement. Raises ``sqlite3.Error`` as-is."""
        bound = params if isinstance(params, Mapping) else tuple(params)
        with self.reader() as con:
            return con.execute(sql, bound).fetchall()

    # --------------------------
    # Time
    # --------------------------

    def now(self) -> datetime:
        return self.clock()

    def timestamp(self) -> str:
        return format_timestamp(self.now())

    # --------------------------
    # Entities
    # --------------------------

    normalize_entity_id = staticmethod(normalize_entity_id)

    def upsert_entity(self, name: Any, entity_type: Any = None, agent_id: str = "main") -> str | None:
        """Register a mention of ``name``. Returns the entity id, or None if the name is unusable."""
        with self.transaction() as con:
            return self._upsert_entity(con, name, entity_type, agent_id)

    def _upsert_entity(
        self, con: sqlite3.Connection, name: Any, entity_type: Any, agent_id: str
    ) -> str | None:
        canonical = clean_name(name)
        entity_id = normalize_entity_id(canonical)
        if not canonical or not entity_id:
            logger.debug("Skipping malformed entity name %r", name)
            return None
        ts = self.timestamp()
        con.execute(
            """
            INSERT INTO entities(agent_id, id, canonical_name, entity_type,
                                 first_seen, last_seen, mention_count, aliases)
            VALUES (?,?,?,?,?,?,1,'[]')
            ON CONFLICT(agent_id, id) DO UPDATE SET
                last_seen = excluded.last_seen,
                mention_count = mention_count + 1
            """,
            (agent_id, entity_id, canonical, EntityType.coerce(entity_type).value, ts, ts),
        )
        return entity_id

    def get_entity(self, entity_id: str, agent_id: str = "main") -> Entity | None:
        with self.reader() as con:
            row = con.execute(
                "SELECT * FROM entities WHERE agent_id=? AND id=?", (agent_id, entity_id)
            ).fetchone()
        return Entity.from_row(row) if row else None

    def get_entity_by_name(self, name: str, agent_id: str = "main") -> Entity | None:
        with self.reader() as con:
            row = con.execute(
                "SELECT * FROM entities WHERE agent_id=? AND canonical_name=? LIMIT 1",
                (agent_id, name),
            ).fetchone()
        return Entity.from_row(row) if row else None

    def find_entities_by_prefix(self, prefix: str, agent_id: str = "main", limit: int = 10) -> list[Entity]:
        if not prefix:
            return []
        with self.reader() as con:
            rows = con.execute(
                """
                SELECT * FROM entities
                WHERE agent_id=? AND canonical_name LIKE ? ESCAPE '\\'
                ORDER BY mention_count DESC LIMIT ?
                """,
                (agent_id, _escape_like(prefix) + "%", limit),
            ).fetchall()
        return [Entity.from_row(r) for r in rows]

    def recent_entities(self, agent_id: str = "main", limit: int = 200) -> list[Entity]:
        with self.reader() as con:
            rows = con.execute(
                "SELECT * FROM entities WHERE agent_id=? ORDER BY last_seen DESC, id LIMIT ?",
                (agent_id, limit),
            ).fetchall()
        return [Entity.from_row(r) for r in rows]

    def add_aliases(self, entity_id: str, aliases: Iterable[Any], agent_id: str = "main") -> list[str]:
        """Union ``aliases`` into the entity's alias set. Returns the resulting set."""
        with self.transaction() as con:
            row = con.execute(
                "SELECT * FROM entities WHERE agent_id=? AND id=?", (agent_id, entity_id)
            ).fetchone()
            if row is None:
                return []
            entity = Entity.from_row(row)
            merged = list(entity.aliases)
            for a in aliases:
                alias = clean_name(a)
                if alias and alias != entity.canonical_name and alias not in merged:
                    merged.append(alias)
            con.execute(
                "UPDATE entities SET aliases=? WHERE agent_id=? AND id=?",
                (json.dumps(merged), agent_id, entity_id),
            )
            return merged

    # --------------------------
    # Triples
    # --------------------------

    def add_triple(
        self,
        subject: Any,
        predicate: Any,
        object: Any,
        confidence: Any = None,
        *,
        source_exchange_id: str | None = None,
        source_date: str | None = None,
        agent_id: str = "main",
        pending_resolution: bool = False,
    ) -> int | None:
        """Insert a triple or raise the confidence of the existing one.

        Returns the triple id, or None when the input was skipped.
        """
        with self.transaction() as con:
            return self._add_triple(
                con,
                subject,
                predicate,
                object,
                confidence,
                source_exchange_id=source_exchange_id,
                source_date=source_date,
                agent_id=agent_id,
                pending_resolution=pending_resolution,
            )

    def _add_triple(
        self,
        con: sqlite3.Connection,
        subject: Any,
        predicate: Any,
        object: Any,
        confidence: Any,
        *,
        source_exchange_id: str | None,
        source_date: str | None,
        agent_id: str,
        pending_resolution: bool,
    ) -> int | None:
        subject_id = normalize_entity_id(clean_name(subject))
        object_id = normalize_entity_id(clean_name(object))
        pred = Predicate.parse(predicate)
        conf = _coerce_confidence(confidence)
        if not subject_id or not object_id or pred is None or conf is None:
            logger.debug(
                "Skipping malformed triple (%r, %r, %r, %r)", subject, predicate, object, confidence
            )
            return None

        ts = self.timestamp()
        existing = con.execute(
            """
            SELECT id FROM triples
            WHERE agent_id=? AND subject=? AND predicate=? AND object=?
            LIMIT 1
            """,
            (agent_id, subject_id, pred.value, object_id),
        ).fetchone()
        if existing:
            con.execute(
                "UPDATE triples SET confidence = MAX(confidence, ?), updated_at = ? WHERE id = ?",
                (conf, ts, existing["id"]),
            )
            return int(existing["id"])

        cur = con.execute(
            """
            INSERT INTO triples(agent_id, subject, predicate, object, confidence,
                                source_exchange_id, source_date, created_at, updated_at,
                                pending_resolution)
            VALUES (?,?,?,?,?,?,?,?,?,?)
            """,
            (
                agent_id,
                subject_id,
                pred.value,
                object_id,
                conf,
                source_exchange_id,
                source_date or self.now().date().isoformat(),
                ts,
                ts,
                1 if pending_resolution else 0,
            ),
        )
        return int(cur.lastrowid)

    def _bump_cooccurrence(self, con: sqlite3.Connection, a: Any, b: Any, agent_id: str) -> bool:
        a_id = normalize_entity_id(clean_name(a))
        b_id = normalize_entity_id(clean_name(b))
        if not a_id or not b_id or a_id == b_id:
            logger.debug("Skipping malformed co-occurrence (%r, %r)", a, b)
            return False
        first, second = sorted((a_id, b_id))
        con.execute(
            """
            INSERT INTO cooccurrences(agent_id, entity_a, entity_b, count, last_seen)
            VALUES (?,?,?,1,?)
            ON CONFLICT(agent_id, entity_a, entity_b) DO UPDATE SET
                count = count + 1,
                last_seen = excluded.last_seen
            """,
            (agent_id, first, second, self.timestamp()),
        )
        return True

    def write_exchange(
        self,
        *,
        entities: Iterable[Any] = (),
        triples: Iterable[Any] = (),
        cooccurrences: Iterable[Sequence[Any]] = (),
        agent_id: str = "main",
        source_exchange_id: str | None = None,
        source_date: str | None = None,
    ) -> list[int]:
        """Write one exchange's entities, triples and co-occurrences atomically.

        Either the whole batch lands or nothing does; storage errors surface as
        ``GraphWriteError``. Returns the ids of every triple touched.
        """
        date = source_date or self.now().date().isoformat()
        triple_ids: list[int] = []
        with self.transaction() as con:
            for entity in entities or ():
                self._upsert_entity(con, _get(entity, "name"), _get(entity, "type"), agent_id)

            for t in triples or ():
                tid = self._add_triple(
                    con,
                    _get(t, "subject"),
                    _get(t, "predicate"),
                    _get(t, "object"),
                    _get(t, "confidence"),
                    source_exchange_id=source_exchange_id,
                    source_date=date,
                    agent_id=agent_id,
                    pending_resolution=bool(_get(t, "pending_resolution", False)),
                )
                if tid is not None:
                    triple_ids.append(tid)

            for pair in cooccurrences or ():
                if not isinstance(pair, (list, tuple)) or len(pair) != 2:
                    logger.debug("Skipping malformed co-occurrence %r", pair)
                    continue
                self._bump_cooccurrence(con, pair[0], pair[1], agent_id)

        return triple_ids

    def get_triples_for(self, entity_name: str, agent_id: str = "main", limit: int = 50) -> list[Triple]:
        """Triples touching the entity as subject or object, newest first."""
        return self.get_triples_by_id(normalize_entity_id(entity_name), agent_id, limit)

    def get_triples_by_id(self, entity_id: str, agent_id: str = "main", limit: int = 50) -> list[Triple]:
        if not entity_id:
            return []
        with self.reader() as con:
            as_subject = con.execute(
                "SELECT * FROM triples WHERE agent_id=? AND subject=? ORDER BY updated_at DESC, id DESC LIMIT ?",
                (agent_id, entity_id, limit),
            ).fetchall()
            as_object = con.execute(
                "SELECT * FROM triples WHERE agent_id=? AND object=? ORDER BY updated_at DESC, id DESC LIMIT ?",
                (agent_id, entity_id, limit),
            ).fetchall()

        seen: set[int] = set()
        out: list[Triple] = []
        for row in [*as_subject, *as_object]:
            t = Triple.from_row(row)
            if t.id in seen:
                continue
            seen.add(t.id)
            out.append(t)
        out.sort(key=lambda t: (t.updated_at or "", t.id), reverse=True)
        return out[:limit]

    def query_triples(
        self,
        *,
        subject: str | None = None,
        predicate: str | None = None,
        object: str | None = None,
        agent_id: str | None = None,
        limit: int = 50,
    ) -> list[Triple]:
        conditions: list[str] = []
        params: list[Any] = []
        if subject:
            conditions.append("subject = ?")
            params.append(normalize_entity_id(subject))
        if predicate:
            conditions.append("predicate = ?")
            params.append(predicate)
        if object:
            conditions.append("object = ?")
            params.append(normalize_entity_id(object))
        if agent_id:
            conditions.append("agent_id = ?")
            params.append(agent_id)
        where = ("WHERE " + " AND ".join(conditions)) if conditions else ""
        params.append(limit)
        rows = self.query(f"SELECT * FROM triples {where} ORDER BY updated_at DESC, id DESC LIMIT ?", params)
        return [Triple.from_row(r) for r in rows]

    def delete_triples_by_exchange(self, exchange_id: str, agent_id: str = "main") -> int:
        """Drop an exchange's triples before it is re-extracted."""
        with self.transaction() as con:
            cur = con.execute(
                "DELETE FROM triples WHERE agent_id=? AND source_exchange_id=?", (agent_id, exchange_id)
            )
            return cur.rowcount

    def decay_stale_triples(self, agent_id: str = "main", half_life_days: float = 90) -> int:
        """Halve the confidence of triples untouched for more than ``half_life_days``.

        One discrete step per call; rows at or below the floor and fresh rows
        are left alone, and ``updated_at`` is not refreshed.
        """
        with self.transaction() as con:
            cur = con.execute(
                """
                UPDATE triples
                SET confidence = confidence * 0.5
                WHERE agent_id = ?
                  AND confidence > ?
                  AND julianday(?) - julianday(updated_at) > ?
                """,
                (agent_id, DECAY_FLOOR, self.timestamp(), float(half_life_days)),
            )
            return cur.rowcount

    # --------------------------
    # Co-occurrences
    # --------------------------

    def get_cooccurrences(self, entity_name: str, agent_id: str = "main", limit: int = 20) -> list[Cooccurrence]:
        entity_id = normalize_entity_id(entity_name)
        if not entity_id:
            return []
        rows = self.query(
            """
            SELECT entity_a, entity_b, count, last_seen FROM cooccurrences
            WHERE agent_id=? AND (entity_a=? OR entity_b=?)
            ORDER BY count DESC, last_seen DESC LIMIT ?
            """,
            (agent_id, entity_id, entity_id, limit),
        )
        return [Cooccurrence(r["entity_a"], r["entity_b"], int(r["count"]), r["last_seen"]) for r in rows]

    def cooccurrence_count(self, a: str, b: str, agent_id: str = "main") -> int:
        a_id, b_id = normalize_entity_id(a), normalize_entity_id(b)
        if not a_id or not b_id or a_id == b_id:
            return 0
        first, second = sorted((a_id, b_id))
        rows = self.query(
            "SELECT count FROM cooccurrences WHERE agent_id=? AND entity_a=? AND entity_b=?",
            (agent_id, first, second),
        )
        return int(rows[0]["count"]) if rows else 0

    # --------------------------
    # Meta-path patterns
    # --------------------------

    @staticmethod
    def _valid_sequence(predicates: Sequence[Any]) -> list[str] | None:
        if not isinstance(predicates, (list, tuple)):
            return None
        if not (MIN_PATTERN_LENGTH <= len(predicates) <= MAX_PATTERN_LENGTH):
            return None
        out = []
        for p in predicates:
            parsed = Predicate.parse(p)
            if parsed is None:
                return None
            out.append(parsed.value)
        return out

    def _load_patterns(self, rows: Iterable[sqlite3.Row]) -> list[MetaPattern]:
        out = []
        for row in rows:
            try:
                pattern = MetaPattern.from_row(row)
            except (ValueError, TypeError) as e:
                logger.warning("Ignoring unreadable meta-pattern %s: %s", row["id"], e)
                continue
            if self._valid_sequence(pattern.predicates) is None:
                logger.debug("Ignoring meta-pattern %s with unsupported length", pattern.id)
                continue
            out.append(pattern)
        return out

    def get_active_patterns(self, agent_id: str = "main") -> list[MetaPattern]:
        rows = self.query(
            "SELECT * FROM meta_patterns WHERE agent_id=? AND active=1 ORDER BY weight DESC, id",
            (agent_id,),
        )
        return self._load_patterns(rows)

    def list_patterns(self, agent_id: str = "main") -> list[MetaPattern]:
        rows = self.query(
            "SELECT * FROM meta_patterns WHERE agent_id=? ORDER BY active DESC, weight DESC, id",
            (agent_id,),
        )
        return self._load_patterns(rows)

    def get_pattern(self, predicates: Sequence[str], agent_id: str = "main") -> MetaPattern | None:
        rows = self.query(
            "SELECT * FROM meta_patterns WHERE agent_id=? AND predicates=? LIMIT 1",
            (agent_id, pattern_key(list(predicates))),
        )
        patterns = self._load_patterns(rows)
        return patterns[0] if patterns else None

    def seed_static_patterns(self, agent_id: str, patterns: Iterable[Any]) -> int:
        """Insert configured static patterns whose predicate sequence is not stored yet."""
        seeded = 0
        with self.transaction() as con:
            for p in patterns or ():
                preds = self._valid_sequence(_get(p, "predicates"))
                if preds is None:
                    logger.debug("Skipping invalid static pattern %r", p)
                    continue
                cur = con.execute(
                    """
                    INSERT OR IGNORE INTO meta_patterns(agent_id, predicates, pattern_type, weight,
                                                        yield_score, overlap_ratio, last_validated,
                                                        active, created_at)
                    VALUES (?,?,?,?,0,1.0,?,1,?)
                    """,
                    (
                        agent_id,
                        pattern_key(preds),
                        PatternType.STATIC.value,
                        float(_get(p, "weight", 1.0) or 1.0),
                        self.timestamp(),
                        self.timestamp(),
                    ),
                )
                seeded += cur.rowcount
        return seeded

    def save_pattern(
        self,
        agent_id: str,
        predicates: Sequence[str],
        weight: float,
        yield_score: float,
        overlap_ratio: float,
    ) -> int | None:
        """Store a discovered pattern, or refresh and reactivate an existing one."""
        preds = self._valid_sequence(predicates)
        if preds is None:
            logger.debug("Rejecting meta-pattern %r", predicates)
            return None
        key = pattern_key(preds)
        ts = self.timestamp()
        with self.transaction() as con:
            existing = con.execute(
                "SELECT id FROM meta_patterns WHERE agent_id=? AND predicates=?", (agent_id, key)
            ).fetchone()
            if existing:
                con.execute(
                    """
                    UPDATE meta_patterns
                    SET weight=?, yield_score=?, overlap_ratio=?, last_validated=?, active=1
                    WHERE id=?
                    """,
                    (weight, yield_score, overlap_ratio, ts, existing["id"]),
                )
                return int(existing["id"])
            cur = con.execute(
                """
                INSERT INTO meta_patterns(agent_id, predicates, pattern_type, weight, yield_score,
                                          overlap_ratio, last_validated, active, created_at)
                VALUES (?,?,?,?,?,?,?,1,?)
                """,
                (agent_id, key, PatternType.DISCOVERED.value, weight, yield_score, overlap_ratio, ts, ts),
            )
            return int(cur.lastrowid)

    def deactivate_pattern(self, pattern_id: int) -> bool:
        with self.transaction() as con:
            cur = con.execute("UPDATE meta_patterns SET active=0 WHERE id=?", (pattern_id,))
            return cur.rowcount > 0

    # --------------------------
    # Statistics / maintenance
    # --------------------------

    def get_predicate_stats(self, agent_id: str = "main") -> list[PredicateStats]:
        rows = self.query(
            """
            SELECT predicate,
                   COUNT(*) AS cnt,
                   COUNT(DISTINCT subject) AS unique_subjects,
                   COUNT(DISTINCT object) AS unique_objects,
                   AVG(confidence) AS avg_confidence
            FROM triples WHERE agent_id=?
            GROUP BY predicate
            ORDER BY cnt DESC, predicate
            """,
            (agent_id,),
        )
        return [
            PredicateStats(
                predicate=r["predicate"],
                count=int(r["cnt"]),
                unique_subjects=int(r["unique_subjects"]),
                unique_objects=int(r["unique_objects"]),
                avg_confidence=float(r["avg_confidence"] or 0.0),
            )
            for r in rows
        ]

    def get_stats(self, agent_id: str = "main") -> GraphStats:
        with self.reader() as con:
            entity_count = con.execute(
                "SELECT COUNT(*) FROM entities WHERE agent_id=?", (agent_id,)
            ).fetchone()[0]
            triple_count = con.execute(
                "SELECT COUNT(*) FROM triples WHERE agent_id=?", (agent_id,)
            ).fetchone()[0]
            pending_count = con.execute(
                "SELECT COUNT(*) FROM triples WHERE agent_id=? AND pending_resolution=1", (agent_id,)
            ).fetchone()[0]
            active_patterns = con.execute(
                "SELECT COUNT(*) FROM meta_patterns WHERE agent_id=? AND active=1", (agent_id,)
            ).fetchone()[0]
            top = con.execute(
                "SELECT * FROM cooccurrences WHERE agent_id=? ORDER BY count DESC LIMIT 10", (agent_id,)
            ).fetchall()
        return GraphStats(
            entity_count=int(entity_count),
            triple_count=int(triple_count),
            pending_count=int(pending_count),
            active_patterns=int(active_patterns),
            recent_entities=self.recent_entities(agent_id, 10),
            top_cooccurrences=[
                Cooccurrence(r["entity_a"], r["entity_b"], int(r["count"]), r["last_seen"]) for r in top
            ],
        )

    def rebuild(self, agent_id: str = "main") -> dict[str, int]:
        """Full reset of an agent's graph. The only path that hard-deletes entities and triples."""
        counts: dict[str, int] = {}
        with self.transaction() as con:
            for table in ("triples", "entities", "cooccurrences", "meta_patterns"):
                cur = con.execute(f"DELETE FROM {table} WHERE agent_id=?", (agent_id,))
                counts[table] = cur.rowcount
        logger.info("[graph:%s] rebuild cleared %s", agent_id, counts)
        return counts
