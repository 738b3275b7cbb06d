"""Tests for the memory-graph command line."""

import json

import pytest
from click.testing import CliRunner

from memory_graph import __version__
from memory_graph.cli.main import cli
from memory_graph.errors import GraphWriteError, StoreBusyError
from memory_graph.service import GraphMemory

STORY = [
    {
        "source_exchange_id": "ex1",
        "entities": [{"name": "Chris", "type": "PERSON"}, {"name": "Dashboard", "type": "THING"}],
        "triples": [{"subject": "Chris", "predicate": "created", "object": "Dashboard", "confidence": 0.9}],
    },
    {
        "source_exchange_id": "ex2",
        "entities": [{"name": "Chris", "type": "PERSON"}, {"name": "Dan", "type": "PERSON"}],
        "triples": [{"subject": "Chris", "predicate": "knows", "object": "Dan", "confidence": 0.9}],
    },
    {
        "source_exchange_id": "ex3",
        "entities": [{"name": "Dan", "type": "PERSON"}, {"name": "Dashboard", "type": "THING"}],
        "triples": [{"subject": "Dan", "predicate": "works_on", "object": "Dashboard", "confidence": 0.8}],
    },
]


@pytest.fixture
def run(tmp_path):
    runner = CliRunner()
    data_dir = str(tmp_path / "data")

    def _run(*args, input=None):
        return runner.invoke(cli, ["--data-dir", data_dir, *args], input=input)

    return _run


@pytest.fixture
def loaded(run, tmp_path):
    for i, exchange in enumerate(STORY):
        path = tmp_path / f"exchange{i}.json"
        path.write_text(json.dumps(exchange))
        result = run("ingest", str(path))
        assert result.exit_code == 0, result.output
        assert "Wrote 1 triples" in result.output
    return run


class TestCli:
    def test_version(self, run):
        result = run("version")
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_search(self, loaded):
        result = loaded("search", "Chris")
        assert result.exit_code == 0, result.output
        for ex in ("ex1", "ex2", "ex3"):
            assert ex in result.output
        assert "0.882" in result.output

    def test_search_without_results(self, run):
        result = run("search", "Nobody")
        assert result.exit_code == 0
        assert "No results found" in result.output

    def test_entity(self, loaded):
        result = loaded("entity", "Dan")
        assert result.exit_code == 0, result.output
        assert "works_on" in result.output
        assert "knows" in result.output

    def test_unknown_entity_exits_nonzero(self, run):
        result = run("entity", "Nobody")
        assert result.exit_code == 1
        assert "Unknown entity" in result.output

    def test_stats(self, loaded):
        result = loaded("stats")
        assert result.exit_code == 0, result.output
        assert "Entities" in result.output
        assert "Triples" in result.output

    def test_patterns_lists_static_paths(self, run):
        result = run("patterns")
        assert result.exit_code == 0, result.output
        assert "static" in result.output

    def test_resolve(self, loaded):
        result = loaded("resolve", "Dan")
        assert result.exit_code == 0, result.output
        assert "exact" in result.output

    def test_maintain(self, loaded):
        result = loaded("maintain", "--force")
        assert result.exit_code == 0, result.output
        assert "pending:" in result.output
        assert "discovery:" in result.output

    def test_other_agent_is_empty(self, loaded):
        result = loaded("--agent", "research", "search", "Chris")
        assert result.exit_code == 0
        assert "No results found" in result.output

    def test_ingest_from_stdin(self, run):
        result = run("ingest", "-", input=json.dumps(STORY[1]))
        assert result.exit_code == 0, result.output
        assert "Wrote 1 triples" in result.output
        assert "ex2" in run("search", "Dan").output

    @pytest.mark.parametrize(
        "method, args, label",
        [
            ("decay", ("decay",), "Decay failed"),
            ("merge", ("merge", "chris", "dan"), "Merge failed"),
            ("run_maintenance", ("maintain", "--force"), "Maintenance failed"),
            ("discover_patterns", ("discover",), "Discovery failed"),
            ("validate_patterns", ("validate",), "Validation failed"),
            ("process_pending", ("pending",), "Pending resolution failed"),
        ],
    )
    def test_store_errors_exit_cleanly(self, run, monkeypatch, method, args, label):
        def fail(self, *a, **kw):
            raise StoreBusyError("database is locked")

        monkeypatch.setattr(GraphMemory, method, fail)
        result = run(*args)
        assert result.exit_code == 1
        assert label in result.output
        assert "database is locked" in result.output
        assert result.exception is None or isinstance(result.exception, SystemExit)

    def test_write_error_during_merge(self, loaded, monkeypatch):
        def fail(self, *a, **kw):
            raise GraphWriteError("disk I/O error")

        monkeypatch.setattr(GraphMemory, "merge", fail)
        result = loaded("merge", "chris", "dan")
        assert result.exit_code == 1
        assert "Merge failed: disk I/O error" in result.output
