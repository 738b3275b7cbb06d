"""Tests for the per-agent GraphMemory facade."""

import asyncio
from pathlib import Path

import pytest

from conftest import fetch_triples
from memory_graph.errors import GraphWriteError, InvalidAgentError, StoreBusyError
from memory_graph.schemas import (
    EnrichedEntity,
    EnrichedRelationship,
    EnrichmentItem,
    EnrichmentResult,
    IngestResult,
)
from memory_graph.settings import DEFAULT_META_PATHS


def _exchange(ex_id, entities, triples, agent_id="main"):
    return {
        "agent_id": agent_id,
        "source_exchange_id": ex_id,
        "source_date": "2026-03-01",
        "entities": [{"name": n, "type": t} for n, t in entities],
        "triples": [{"subject": s, "predicate": p, "object": o, "confidence": c} for s, p, o, c in triples],
        "cooccurrences": [[entities[0][0], entities[1][0]]] if len(entities) > 1 else [],
    }


def _ingest_story(memory, agent_id="main"):
    memory.ingest(
        _exchange("ex1", [("Chris", "PERSON"), ("Dashboard", "THING")], [("Chris", "created", "Dashboard", 0.9)], agent_id)
    )
    memory.ingest(_exchange("ex2", [("Chris", "PERSON"), ("Dan", "PERSON")], [("Chris", "knows", "Dan", 0.9)], agent_id))
    memory.ingest(
        _exchange("ex3", [("Dan", "PERSON"), ("Dashboard", "THING")], [("Dan", "works_on", "Dashboard", 0.8)], agent_id)
    )


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class TestAgents:
    def test_db_path_layout(self, make_memory, tmp_path):
        memory = make_memory()
        root = Path(tmp_path / "data")
        assert memory.db_path("main") == root / "graph.db"
        assert memory.db_path("research") == root / "agents" / "research" / "graph.db"

    @pytest.mark.parametrize("bad", ["../evil", "a b", "..", "-lead", "x" * 65])
    def test_unsafe_agent_ids_rejected(self, make_memory, bad):
        with pytest.raises(InvalidAgentError):
            make_memory().agent(bad)

    def test_none_means_main(self, make_memory):
        memory = make_memory()
        assert memory.agent(None).agent_id == "main"
        assert memory.agent(None) is memory.agent("main")

    def test_agents_are_isolated(self, make_memory):
        memory = make_memory()
        _ingest_story(memory, "research")
        assert memory.query({"entities": ["Chris"], "agent_id": "research"}).exchanges
        assert memory.query({"entities": ["Chris"]}).exchanges == []
        assert memory.db_path("research").exists()

    def test_static_patterns_seeded_once(self, make_memory):
        memory = make_memory()
        assert len(memory.patterns()) == len(DEFAULT_META_PATHS)
        memory.close()

        reopened = make_memory()
        assert len(reopened.patterns()) == len(DEFAULT_META_PATHS)

    def test_static_pattern_cap(self, make_memory):
        memory = make_memory(discovery={"max_static_patterns": 2})
        assert [p.predicates for p in memory.patterns()] == [["knows", "works_on"], ["knows", "created"]]

    def test_seed_entities(self, make_memory):
        seeds = {"seed_entities": [{"name": "Chris", "type": "PERSON"}]}
        memory = make_memory(resolution=seeds)
        assert memory.entity_context("Chris").entity.mention_count == 1
        memory.close()

        reopened = make_memory(resolution=seeds)
        assert reopened.entity_context("Chris").entity.mention_count == 1


# ---------------------------------------------------------------------------
# Ingest / query
# ---------------------------------------------------------------------------


class TestIngestAndQuery:
    def test_story_end_to_end(self, make_memory):
        memory = make_memory()
        _ingest_story(memory)

        result = memory.query({"entities": ["Chris"]})
        scores = {h.id: h.score for h in result.exchanges}
        assert result.exchanges[0].id == "ex3"
        assert scores["ex3"] == pytest.approx(0.882)
        assert scores["ex1"] == pytest.approx(0.63)
        assert result.exchanges[0].date == "2026-03-01"
        assert memory.last_result() is result

    def test_single_hop_query(self, make_memory):
        memory = make_memory()
        _ingest_story(memory)
        result = memory.query({"entities": ["Chris"], "max_hops": 1})
        assert {h.id for h in result.exchanges} == {"ex1", "ex2"}

    def test_ingest_result(self, make_memory):
        memory = make_memory()
        result = memory.ingest(_exchange("ex1", [("Chris", "PERSON"), ("Dan", "PERSON")], [("Chris", "knows", "Dan", 0.9)]))
        assert isinstance(result, IngestResult)
        assert len(result.triple_ids) == 1
        assert result.notes == [] and result.deferred == []
        assert result.resolve_ms >= 0 and result.write_ms >= 0

    def test_malformed_items_are_dropped(self, make_memory):
        memory = make_memory()
        result = memory.ingest(
            _exchange(
                "ex1",
                [("Chris", "PERSON"), ("", None)],
                [("Chris", "likes", "Dan", 0.9), ("Chris", "knows", "", 0.9), ("Chris", "knows", "Dan", 0.9)],
            )
        )
        assert len(result.triple_ids) == 1
        assert memory.stats().entity_count == 1

    def test_wrongly_typed_items_are_dropped(self, make_memory):
        memory = make_memory()
        result = memory.ingest(
            {
                "source_exchange_id": "ex1",
                "entities": [{"name": "Chris", "type": "PERSON"}, {"name": 42}, "Dan", None],
                "triples": [
                    {"subject": "Chris", "predicate": "knows", "object": "Dan", "confidence": "high"},
                    {"subject": ["Chris"], "predicate": "knows", "object": "Dan", "confidence": 0.9},
                    {"subject": "Chris", "predicate": "knows", "object": "Dan", "confidence": 0.9},
                    7,
                ],
                "cooccurrences": [["Chris", None], "nonsense", ["Chris"]],
            }
        )
        assert len(result.triple_ids) == 1
        assert memory.stats().entity_count == 1
        assert memory.query({"entities": ["Chris"]}).exchanges[0].id == "ex1"

    def test_close_match_is_canonicalized(self, make_memory):
        memory = make_memory()
        memory.ingest(_exchange("ex1", [("Bob Martinez", "PERSON")], []))
        memory.ingest(_exchange("ex2", [("Bob", "PERSON")], [("Bob", "uses", "Python", 0.9)]))

        store = memory.agent().store
        assert [r["subject"] for r in fetch_triples(store)] == ["bob_martinez"]
        assert store.get_entity("bob") is None
        assert store.get_entity("bob_martinez").mention_count == 2

    def test_uncertain_match_is_deferred(self, make_memory, clock):
        memory = make_memory()
        memory.ingest(_exchange("ex1", [("Bob Martinez", "PERSON")], []))
        clock.advance(days=10)
        result = memory.ingest(_exchange("ex2", [("Bob", "PERSON")], [("Bob", "uses", "Python", 0.9)]))

        assert result.deferred == ["Bob"]
        row = fetch_triples(memory.agent().store)[0]
        assert row["subject"] == "bob"
        assert row["pending_resolution"] == 1
        assert memory.stats().pending_count == 1

    def test_ambiguous_match_returns_note(self, make_memory):
        memory = make_memory()
        memory.ingest(_exchange("ex1", [("Bob Martinez", "PERSON"), ("Bob Smith", "PERSON")], []))
        assert len(memory.ask_notes(["Bob"])) == 1

        result = memory.ingest(_exchange("ex2", [("Bob", "PERSON")], []))
        assert len(result.notes) == 1
        assert "Bob Martinez" in result.notes[0] and "Bob Smith" in result.notes[0]

    def test_busy_writes_are_retried(self, make_memory, monkeypatch):
        memory = make_memory(write_retries=3)
        graph = memory.agent()
        calls = []

        def flaky(request):
            calls.append(request)
            if len(calls) < 3:
                raise StoreBusyError("database is locked")
            return IngestResult(triple_ids=[1])

        monkeypatch.setattr(graph.ingestor, "ingest", flaky)
        assert memory.ingest({"source_exchange_id": "ex1"}).triple_ids == [1]
        assert len(calls) == 3

    def test_busy_retries_exhausted(self, make_memory, monkeypatch):
        memory = make_memory(write_retries=2)
        graph = memory.agent()

        def busy(request):
            raise StoreBusyError("database is locked")

        monkeypatch.setattr(graph.ingestor, "ingest", busy)
        with pytest.raises(StoreBusyError) as exc:
            memory.ingest({"source_exchange_id": "ex1"})
        assert exc.value.agent_id == "main"

    def test_other_write_errors_are_not_retried(self, make_memory, monkeypatch):
        memory = make_memory(write_retries=3)
        graph = memory.agent()
        calls = []

        def broken(request):
            calls.append(request)
            raise GraphWriteError("disk I/O error")

        monkeypatch.setattr(graph.ingestor, "ingest", broken)
        with pytest.raises(GraphWriteError) as exc:
            memory.ingest({"source_exchange_id": "ex1"})
        assert len(calls) == 1
        assert exc.value.agent_id == "main"

    def test_trace_paths_and_entity_context(self, make_memory):
        memory = make_memory()
        _ingest_story(memory)
        paths = memory.trace_paths(["Chris"], max_hops=2)
        assert any(p.entities == ["chris", "dan", "dashboard"] for p in paths)

        ctx = memory.entity_context("Dan")
        assert set(ctx.relationships) == {"knows", "works_on"}
        assert memory.entity_context("Nobody") is None


# ---------------------------------------------------------------------------
# Resolution / maintenance
# ---------------------------------------------------------------------------


class TestMaintenance:
    def test_merge_through_facade(self, make_memory):
        memory = make_memory(resolution={"method": "exact"})
        memory.ingest(_exchange("ex1", [("Robert", "PERSON")], [("Robert", "knows", "Dan", 0.9)]))
        memory.ingest(_exchange("ex2", [("Rob", "PERSON")], [("Rob", "uses", "Python", 0.9)]))
        assert memory.agent().store.get_entity("rob") is not None

        assert memory.merge("robert", "rob") == 1
        assert memory.agent().store.get_entity("rob") is None
        assert {r["subject"] for r in fetch_triples(memory.agent().store)} == {"robert"}

    def test_discovery_interval_gates_maintenance(self, make_memory, clock):
        memory = make_memory()
        first = memory.run_maintenance()
        assert not first.discovery_skipped
        assert first.discovery is not None and first.validation is not None

        second = memory.run_maintenance()
        assert second.discovery_skipped
        assert second.discovery is None

        clock.advance(hours=25)
        assert not memory.run_maintenance().discovery_skipped
        assert not memory.run_maintenance(force=True).discovery_skipped

    def test_disabled_discovery_never_runs_unless_forced(self, make_memory):
        memory = make_memory(discovery={"enabled": False})
        assert memory.run_maintenance().discovery_skipped
        assert not memory.run_maintenance(force=True).discovery_skipped

    def test_maintenance_decays_and_resolves_pending(self, make_memory, clock):
        memory = make_memory()
        memory.ingest(_exchange("ex1", [("Chris", "PERSON"), ("Dan", "PERSON")], [("Chris", "knows", "Dan", 0.9)]))
        clock.advance(days=100)

        report = memory.run_maintenance()
        assert report.decayed == 1
        assert fetch_triples(memory.agent().store)[0]["confidence"] == pytest.approx(0.45)
        assert report.errors == []

    def test_gap_detection(self, make_memory, clock):
        memory = make_memory()
        for i in range(6):
            memory.ingest(_exchange(f"ex{i}", [("Chris", "PERSON")], []))
        assert [g.type for g in memory.detect_gaps()] == ["under_connected"]

        clock.advance(days=31)
        gaps = memory.detect_gaps()
        assert [g.type for g in gaps] == ["under_connected", "temporal_dead_zone"]
        assert gaps[1].to_dict()["sourceId"] == "graph:chris"

    def test_rebuild_reseeds(self, make_memory):
        memory = make_memory()
        _ingest_story(memory)
        counts = memory.rebuild()

        assert counts["triples"] == 3
        assert counts["entities"] == 3
        stats = memory.stats()
        assert (stats.entity_count, stats.triple_count) == (0, 0)
        assert stats.active_patterns == len(DEFAULT_META_PATHS)


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------


async def _enrich(item):
    return EnrichmentResult(
        entities=[EnrichedEntity(name="Chris", type="PERSON", aliases=["Christopher"]), EnrichedEntity(name="Dashboard")],
        relationships=[EnrichedRelationship(subject="Chris", predicate="created", object="Dashboard", confidence=0.8)],
    )


class TestEnrichment:
    def test_queue_is_bounded(self, make_memory):
        memory = make_memory(enrichment={"max_queue": 2})
        results = [memory.enqueue_enrichment({"exchange_id": f"ex{i}"}) for i in range(3)]
        assert results == [True, True, False]
        assert memory.pending_enrichment() == 2
        assert memory.agent().queue.dropped == 1

    def test_tick_applies_boosted_relationships(self, make_memory):
        memory = make_memory()
        memory.enqueue_enrichment(EnrichmentItem(exchange_id="ex9", date="2026-03-02"))

        assert asyncio.run(memory.run_enrichment_tick("main", _enrich)) == 1
        assert memory.pending_enrichment() == 0

        store = memory.agent().store
        row = fetch_triples(store)[0]
        assert (row["subject"], row["predicate"], row["object"]) == ("chris", "created", "dashboard")
        assert row["confidence"] == pytest.approx(0.9)
        assert row["source_exchange_id"] == "ex9"
        assert row["pending_resolution"] == 0
        assert store.get_entity("chris").aliases == ["Christopher"]

    def test_tick_respects_batch_size(self, make_memory):
        memory = make_memory(enrichment={"batch_size": 2})
        for i in range(3):
            memory.enqueue_enrichment({"exchange_id": f"ex{i}"})
        assert asyncio.run(memory.run_enrichment_tick(None, _enrich)) == 2
        assert memory.pending_enrichment() == 1

    def test_failing_enricher_skips_item(self, make_memory):
        memory = make_memory()
        memory.enqueue_enrichment({"exchange_id": "bad"})
        memory.enqueue_enrichment({"exchange_id": "good"})

        async def enricher(item):
            if item.exchange_id == "bad":
                raise RuntimeError("model timeout")
            return await _enrich(item)

        assert asyncio.run(memory.run_enrichment_tick("main", enricher)) == 1
        assert [r["source_exchange_id"] for r in fetch_triples(memory.agent().store)] == ["good"]

    def test_empty_result_writes_nothing(self, make_memory):
        memory = make_memory()
        memory.enqueue_enrichment({"exchange_id": "ex1"})

        async def nothing(item):
            return EnrichmentResult()

        assert asyncio.run(memory.run_enrichment_tick("main", nothing)) == 0
        assert memory.stats().entity_count == 0
