"""Shared fixtures: a controllable clock and temp-file graph stores."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from memory_graph.graph.store import TripleStore, format_timestamp
from memory_graph.service import GraphMemory
from memory_graph.settings import GraphMemorySettings

T0 = datetime(2026, 3, 2, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    s = TripleStore(tmp_path / "graph.db", clock=clock)
    yield s
    s.close()


@pytest.fixture
def make_memory(tmp_path, clock):
    created = []

    def _make(**overrides) -> GraphMemory:
        cfg = GraphMemorySettings(data_dir=str(tmp_path / "data"), **overrides)
        mem = GraphMemory(cfg, clock=clock)
        created.append(mem)
        return mem

    yield _make
    for mem in created:
        mem.close()


def set_updated_at(store: TripleStore, when: datetime, triple_id: int | None = None) -> None:
    """Backdate triples directly in SQL."""
    with store.transaction() as con:
        if triple_id is None:
            con.execute("UPDATE triples SET updated_at = ?", (format_timestamp(when),))
        else:
            con.execute("UPDATE triples SET updated_at = ? WHERE id = ?", (format_timestamp(when), triple_id))


def fetch_triples(store: TripleStore, agent_id: str = "main"):
    return store.query("SELECT * FROM triples WHERE agent_id = ? ORDER BY id", (agent_id,))
