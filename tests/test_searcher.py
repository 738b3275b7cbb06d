"""Tests for single-hop, multi-hop and meta-path graph search."""

import pytest

from memory_graph.graph import searcher as searcher_mod
from memory_graph.graph.searcher import GraphSearcher
from memory_graph.settings import DEFAULT_META_PATHS, RetrievalConfig


def _searcher(store, **overrides):
    return GraphSearcher(store, RetrievalConfig(**overrides))


def _chris_dan_dashboard(store):
    for name, kind in (("Chris", "PERSON"), ("Dan", "PERSON"), ("Dashboard", "THING")):
        store.upsert_entity(name, kind)
    store.add_triple("chris", "created", "dashboard", 0.9, source_exchange_id="ex1")
    store.add_triple("chris", "knows", "dan", 0.9, source_exchange_id="ex2")
    store.add_triple("dan", "works_on", "dashboard", 0.8, source_exchange_id="ex3")


# ---------------------------------------------------------------------------
# Multi hop
# ---------------------------------------------------------------------------


class TestMultiHop:
    def test_two_hop_surfaces_indirect_exchange(self, store):
        _chris_dan_dashboard(store)
        result = _searcher(store, max_hops=2, hop_decay=0.7).search(["chris"])

        scores = {h.id: h.score for h in result.exchanges}
        assert set(scores) == {"ex1", "ex2", "ex3"}
        # reached from both dan and dashboard: 2 x (0.9 x 0.7) x 0.7
        assert scores["ex3"] == pytest.approx(0.882)
        assert scores["ex1"] == pytest.approx(0.63)
        assert scores["ex2"] == pytest.approx(0.63)
        assert result.exchanges[0].id == "ex3"
        assert result.entities == ["chris"]

    def test_single_hop_does_not_reach_indirect_exchange(self, store):
        _chris_dan_dashboard(store)
        result = _searcher(store, max_hops=1).search(["chris"])
        assert {h.id for h in result.exchanges} == {"ex1", "ex2"}

    def test_meta_path_score_merges_by_max(self, store):
        _chris_dan_dashboard(store)
        store.seed_static_patterns("main", DEFAULT_META_PATHS)
        s = _searcher(store, max_hops=2)

        meta = s.search_meta_paths(["chris"], "main", store.get_active_patterns("main"))
        # knows -> works_on: 0.9 x 0.8 x weight 0.9
        assert meta == {"ex3": pytest.approx(0.648)}

        scores = {h.id: h.score for h in s.search(["chris"]).exchanges}
        assert scores["ex3"] == pytest.approx(0.882)

    def test_merge_takes_max_not_sum(self, store, monkeypatch):
        s = _searcher(store, max_hops=2)
        monkeypatch.setattr(s, "search_multi_hop", lambda *a, **k: {"x": 0.2, "y": 0.6})
        monkeypatch.setattr(s, "search_meta_paths", lambda *a, **k: {"x": 0.5, "z": 0.1})

        result = s.search(["anything"])
        assert [(h.id, h.score) for h in result.exchanges] == [("y", 0.6), ("x", 0.5), ("z", 0.1)]

    def test_limit_truncates(self, store):
        _chris_dan_dashboard(store)
        result = _searcher(store, max_hops=2).search(["chris"], limit=2)
        assert [h.id for h in result.exchanges] == ["ex3", "ex1"]

    def test_cycle_is_never_revisited(self, store):
        for name in "ABCD":
            store.upsert_entity(name)
        for i, (s, o) in enumerate([("a", "b"), ("b", "c"), ("c", "d"), ("d", "a")], start=1):
            store.add_triple(s, "related_to", o, 1.0, source_exchange_id=f"e{i}")

        paths = _searcher(store, max_hops=3).trace_paths(["A"], max_hops=3)

        assert paths
        for p in paths:
            assert len(set(p.entities)) == len(p.entities)
            assert p.entities[0] == "a"
            assert p.depth <= 3
            assert len(p.predicates) == p.depth
        longest = sorted(p.entities for p in paths if p.depth == 3)
        assert longest == [["a", "b", "c", "d"], ["a", "d", "c", "b"]]

    def test_low_confidence_edges_are_not_traversed(self, store):
        for name in ("Chris", "Dan", "Dashboard"):
            store.upsert_entity(name)
        store.add_triple("chris", "knows", "dan", 0.9, source_exchange_id="ex1")
        store.add_triple("dan", "works_on", "dashboard", 0.5, source_exchange_id="ex2")

        scores = _searcher(store, max_hops=2, min_traversal_confidence=0.6).search_multi_hop(
            ["chris"], "main", 2
        )
        assert set(scores) == {"ex1"}

    def test_unregistered_intermediate_blocks_expansion(self, store):
        store.upsert_entity("Chris")
        store.upsert_entity("Project")
        store.add_triple("chris", "knows", "ghost", 0.9, source_exchange_id="ex1")
        store.add_triple("ghost", "works_on", "project", 0.9, source_exchange_id="ex2")

        scores = _searcher(store).search_multi_hop(["chris"], "main", 2)
        assert set(scores) == {"ex1"}

    def test_agents_do_not_leak(self, store):
        _chris_dan_dashboard(store)
        assert _searcher(store, max_hops=2).search(["chris"], "other").exchanges == []

    def test_traversal_failure_degrades_to_meta_paths(self, store, monkeypatch):
        _chris_dan_dashboard(store)
        store.seed_static_patterns("main", DEFAULT_META_PATHS)
        monkeypatch.setattr(searcher_mod, "_traversal_cte", lambda n: "WITH RECURSIVE broken AS (")

        result = _searcher(store, max_hops=2).search(["chris"])
        assert [(h.id, round(h.score, 3)) for h in result.exchanges] == [("ex3", 0.648)]

    def test_exchange_dates_are_filled(self, store):
        store.upsert_entity("Chris")
        store.add_triple("chris", "knows", "dan", 0.9, source_exchange_id="ex1", source_date="2026-02-01")
        result = _searcher(store, max_hops=2).search(["Chris"])
        assert result.exchanges[0].date == "2026-02-01"
        assert result.to_dict()["exchanges"][0]["sharedEntities"] == ["chris"]


# ---------------------------------------------------------------------------
# Single hop
# ---------------------------------------------------------------------------


class TestSingleHop:
    def _setup(self, store):
        store.add_triple("chris", "knows", "dan", 0.9, source_exchange_id="ex1", source_date="2026-02-01")
        store.add_triple("dan", "uses", "python", 0.8, source_exchange_id="ex2", source_date="2026-02-03")
        store.write_exchange(cooccurrences=[["Chris", "Dan"], ["Chris", "Dan"]])

    def test_confidence_plus_cooccurrence_boost(self, store):
        self._setup(store)
        result = _searcher(store, max_hops=1, cooccurrence_boost=0.1).search(["Chris"])

        assert [h.id for h in result.exchanges] == ["ex1"]
        hit = result.exchanges[0]
        assert hit.score == pytest.approx(0.9 + 0.1 * 2)
        assert hit.shared_entities == ["chris"]
        assert hit.max_confidence == pytest.approx(0.9)

    def test_min_shared_entities_filter(self, store):
        self._setup(store)
        result = _searcher(store, max_hops=1, min_shared_entities=0).search(["Chris"])
        scores = {h.id: h.score for h in result.exchanges}
        assert scores["ex2"] == pytest.approx(0.2)
        assert [h.id for h in result.exchanges] == ["ex1", "ex2"]

    def test_shared_entities_accumulate(self, store):
        self._setup(store)
        result = _searcher(store, max_hops=1, min_shared_entities=2).search(["Chris", "Dan"])
        assert [h.id for h in result.exchanges] == ["ex1"]
        assert result.exchanges[0].shared_entities == ["chris", "dan"]

    def test_empty_query(self, store):
        self._setup(store)
        result = _searcher(store).search(["", "   "])
        assert result.exchanges == [] and result.entities == []


# ---------------------------------------------------------------------------
# Entity context
# ---------------------------------------------------------------------------


class TestEntityContext:
    def test_context_groups_by_predicate(self, store):
        _chris_dan_dashboard(store)
        store.write_exchange(cooccurrences=[["Chris", "Dan"]])

        ctx = _searcher(store).get_entity_context("Chris")
        assert ctx.entity.canonical_name == "Chris"
        assert set(ctx.relationships) == {"created", "knows"}
        assert ctx.relationships["knows"][0]["object"] == "dan"
        assert ctx.cooccurrences == [{"entity": "dan", "count": 1, "last_seen": ctx.cooccurrences[0]["last_seen"]}]
        assert ctx.triple_count == 2

    def test_unknown_entity(self, store):
        assert _searcher(store).get_entity_context("Nobody") is None
