"""Per-agent graph memory facade.

Owns one :class:`TripleStore` (and the components reading it) per agent id and
exposes the ingest, query, entity-context, resolution, maintenance and
enrichment interfaces to the host.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from .enrichment import Enricher, EnrichmentQueue
from .errors import GraphWriteError, InvalidAgentError, StoreBusyError
from .graph.discovery import DiscoveryReport, PatternDiscovery, ValidationReport
from .graph.gaps import GraphGap, detect_gaps
from .graph.models import EntityContext, MetaPattern, ResolutionResult, ResolutionTier, SearchResult, TraversalPath
from .graph.pipeline import GraphIngestor
from .graph.resolver import EntityResolver, PendingReport
from .graph.searcher import GraphSearcher
from .graph.store import Clock, GraphStats, TripleStore
from .schemas import EnrichmentItem, EnrichmentResult, IngestRequest, IngestResult, QueryRequest
from .settings import GraphMemorySettings, settings as default_settings

logger = logging.getLogger(__name__)

DEFAULT_AGENT = "main"
AGENT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


def busy_retry(attempts: int):
    return retry(
        reraise=True,
        stop=stop_after_attempt(attempts),
        wait=wait_exponential_jitter(initial=0.05, max=1.0),
        retry=retry_if_exception_type(StoreBusyError),
    )


def validate_agent_id(agent_id: str | None) -> str:
    aid = agent_id or DEFAULT_AGENT
    if not AGENT_ID_RE.match(aid) or aid in (".", ".."):
        raise InvalidAgentError(f"invalid agent id: {agent_id!r}")
    return aid


class ResultChannel:
    """Latest query result per agent, for consumers outside the query path."""

    def __init__(self) -> None:
        self._results: dict[str, SearchResult] = {}
        self._lock = threading.Lock()

    def publish(self, agent_id: str, result: SearchResult) -> None:
        with self._lock:
            self._results[agent_id] = result

    def last(self, agent_id: str) -> SearchResult | None:
        with self._lock:
            return self._results.get(agent_id)


@dataclass(slots=True)
class AgentGraph:
    agent_id: str
    store: TripleStore
    resolver: EntityResolver
    searcher: GraphSearcher
    discovery: PatternDiscovery
    ingestor: GraphIngestor
    queue: EnrichmentQueue
    last_discovery: datetime | None = None
    enriching: bool = False


@dataclass(slots=True)
class MaintenanceReport:
    agent_id: str
    pending: PendingReport
    gaps: list[GraphGap] = field(default_factory=list)
    decayed: int = 0
    discovery: DiscoveryReport | None = None
    validation: ValidationReport | None = None
    discovery_skipped: bool = False
    errors: list[str] = field(default_factory=list)


class GraphMemory:
    def __init__(self, config: GraphMemorySettings | None = None, *, clock: Clock | None = None):
        self.config = config or default_settings
        self.clock = clock
        self.results = ResultChannel()
        self._agents: dict[str, AgentGraph] = {}
        self._lock = threading.Lock()

    # --------------------------
    # Agent registry
    # --------------------------

    def db_path(self, agent_id: str) -> Path:
        aid = validate_agent_id(agent_id)
        root = Path(self.config.data_dir).expanduser()
        if aid == DEFAULT_AGENT:
            return root / self.config.db_file
        return root / "agents" / aid / self.config.db_file

    def agent(self, agent_id: str | None = None) -> AgentGraph:
        aid = validate_agent_id(agent_id)
        with self._lock:
            graph = self._agents.get(aid)
            if graph is None:
                graph = self._open(aid)
                self._agents[aid] = graph
            return graph

    def _open(self, agent_id: str) -> AgentGraph:
        cfg = self.config
        store = TripleStore(
            self.db_path(agent_id), busy_timeout_ms=cfg.storage.busy_timeout_ms, clock=self.clock
        )
        resolver = EntityResolver(store, cfg.resolution)
        graph = AgentGraph(
            agent_id=agent_id,
            store=store,
            resolver=resolver,
            searcher=GraphSearcher(store, cfg.retrieval),
            discovery=PatternDiscovery(store, cfg.discovery),
            ingestor=GraphIngestor(store, resolver),
            queue=EnrichmentQueue(cfg.enrichment.max_queue),
        )
        self._seed(graph)
        logger.info("[graph:%s] opened %s", agent_id, store.path)
        return graph

    def _seed(self, graph: AgentGraph) -> None:
        store, aid = graph.store, graph.agent_id
        with store.transaction():
            for seed in self.config.resolution.seed_entities:
                if store.get_entity(store.normalize_entity_id(seed.name), aid) is None:
                    store.upsert_entity(seed.name, seed.type, aid)
            static = self.config.meta_paths[: self.config.discovery.max_static_patterns]
            seeded = store.seed_static_patterns(aid, static)
        if seeded:
            logger.info("[graph:%s] seeded %d static meta-paths", aid, seeded)

    def close(self) -> None:
        with self._lock:
            for graph in self._agents.values():
                graph.store.close()
            self._agents.clear()

    # --------------------------
    # Ingest / query
    # --------------------------

    def ingest(self, request: IngestRequest | dict[str, Any]) -> IngestResult:
        """Write one exchange. Raises ``GraphWriteError`` once retries are exhausted."""
        req = request if isinstance(request, IngestRequest) else IngestRequest.model_validate(request)
        graph = self.agent(req.agent_id)
        req = req.model_copy(update={"agent_id": graph.agent_id})
        try:
            return busy_retry(self.config.write_retries)(graph.ingestor.ingest)(req)
        except GraphWriteError as e:
            e.agent_id = graph.agent_id
            logger.error("[graph:%s] write failed for %s: %s", graph.agent_id, req.source_exchange_id, e)
            raise

    def query(self, request: QueryRequest | dict[str, Any]) -> SearchResult:
        req = request if isinstance(request, QueryRequest) else QueryRequest.model_validate(request)
        graph = self.agent(req.agent_id)
        result = graph.searcher.search(req.entities, graph.agent_id, limit=req.limit, max_hops=req.max_hops)
        self.results.publish(graph.agent_id, result)
        return result

    def last_result(self, agent_id: str | None = None) -> SearchResult | None:
        return self.results.last(validate_agent_id(agent_id))

    def trace_paths(self, entities: Iterable[str], agent_id: str | None = None, max_hops: int | None = None) -> list[TraversalPath]:
        graph = self.agent(agent_id)
        return graph.searcher.trace_paths(entities, graph.agent_id, max_hops)

    def entity_context(self, name: str, agent_id: str | None = None) -> EntityContext | None:
        graph = self.agent(agent_id)
        return graph.searcher.get_entity_context(name, graph.agent_id)

    # --------------------------
    # Resolution
    # --------------------------

    def resolve(self, mention: str, agent_id: str | None = None, context: Iterable[str] = ()) -> ResolutionResult:
        graph = self.agent(agent_id)
        return graph.resolver.resolve(mention, graph.agent_id, list(context))

    def ask_notes(self, entities: Iterable[str], agent_id: str | None = None) -> list[str]:
        graph = self.agent(agent_id)
        return graph.resolver.get_ask_notes(list(entities), graph.agent_id)

    def merge(self, keep_id: str, merge_id: str, agent_id: str | None = None) -> int:
        graph = self.agent(agent_id)
        return busy_retry(self.config.write_retries)(graph.resolver.merge_entities)(
            keep_id, merge_id, graph.agent_id
        )

    # --------------------------
    # Maintenance
    # --------------------------

    def decay(self, agent_id: str | None = None) -> int:
        graph = self.agent(agent_id)
        n = graph.store.decay_stale_triples(graph.agent_id, self.config.storage.confidence_half_life_days)
        if n:
            logger.info("[graph:%s] decayed confidence on %d stale triple(s)", graph.agent_id, n)
        return n

    def process_pending(self, agent_id: str | None = None) -> PendingReport:
        graph = self.agent(agent_id)
        return graph.resolver.process_pending(graph.agent_id)

    def discover_patterns(self, agent_id: str | None = None, cancel: threading.Event | None = None) -> DiscoveryReport:
        graph = self.agent(agent_id)
        report = graph.discovery.discover(graph.agent_id, cancel)
        graph.last_discovery = graph.store.now()
        return report

    def validate_patterns(self, agent_id: str | None = None, cancel: threading.Event | None = None) -> ValidationReport:
        graph = self.agent(agent_id)
        return graph.discovery.validate_patterns(graph.agent_id, cancel)

    def detect_gaps(self, agent_id: str | None = None) -> list[GraphGap]:
        graph = self.agent(agent_id)
        return detect_gaps(graph.store, graph.agent_id)

    def patterns(self, agent_id: str | None = None) -> list[MetaPattern]:
        graph = self.agent(agent_id)
        return graph.store.list_patterns(graph.agent_id)

    def stats(self, agent_id: str | None = None) -> GraphStats:
        graph = self.agent(agent_id)
        return graph.store.get_stats(graph.agent_id)

    def rebuild(self, agent_id: str | None = None) -> dict[str, int]:
        graph = self.agent(agent_id)
        counts = graph.store.rebuild(graph.agent_id)
        graph.last_discovery = None
        self._seed(graph)
        return counts

    def _discovery_due(self, graph: AgentGraph) -> bool:
        cfg = self.config.discovery
        if not cfg.enabled:
            return False
        if graph.last_discovery is None:
            return True
        return graph.store.now() - graph.last_discovery >= timedelta(hours=cfg.interval_hours)

    def run_maintenance(
        self,
        agent_id: str | None = None,
        *,
        force: bool = False,
        cancel: threading.Event | None = None,
    ) -> MaintenanceReport:
        """Pending resolution and gap detection every call; decay, discovery and
        validation at most once per ``discovery.interval_hours`` unless forced."""
        graph = self.agent(agent_id)
        aid = graph.agent_id
        report = MaintenanceReport(agent_id=aid, pending=PendingReport())

        try:
            report.pending = graph.resolver.process_pending(aid)
        except GraphWriteError as e:
            logger.warning("[graph:%s] pending resolution failed: %s", aid, e)
            report.errors.append(f"pending: {e}")
        report.gaps = detect_gaps(graph.store, aid)

        if not (force or self._discovery_due(graph)):
            report.discovery_skipped = True
            return report

        graph.last_discovery = graph.store.now()
        try:
            report.decayed = self.decay(aid)
            report.discovery = graph.discovery.discover(aid, cancel)
            report.validation = graph.discovery.validate_patterns(aid, cancel)
        except GraphWriteError as e:
            logger.warning("[graph:%s] pattern maintenance failed: %s", aid, e)
            report.errors.append(f"patterns: {e}")
        return report

    # --------------------------
    # Enrichment
    # --------------------------

    def enqueue_enrichment(self, item: EnrichmentItem | dict[str, Any]) -> bool:
        it = item if isinstance(item, EnrichmentItem) else EnrichmentItem.model_validate(item)
        graph = self.agent(it.agent_id)
        return graph.queue.put(it.model_copy(update={"agent_id": graph.agent_id}))

    def pending_enrichment(self, agent_id: str | None = None) -> int:
        return len(self.agent(agent_id).queue)

    async def run_enrichment_tick(
        self, agent_id: str | None, enricher: Enricher, max_items: int | None = None
    ) -> int:
        """Drain up to ``max_items`` queued exchanges through ``enricher``.

        The only suspension point is the enricher call; each result is written
        synchronously afterwards.
        """
        graph = self.agent(agent_id)
        if graph.enriching:
            return 0
        graph.enriching = True
        processed = 0
        try:
            for item in graph.queue.take(max_items or self.config.enrichment.batch_size):
                try:
                    result = await enricher(item)
                except Exception as e:  # external collaborator; one bad item must not stop the tick
                    logger.warning("[graph:%s] enrichment failed for %s: %s", graph.agent_id, item.exchange_id, e)
                    continue
                if result.empty:
                    continue
                try:
                    self._apply_enrichment(graph, item, result)
                except GraphWriteError as e:
                    logger.warning("[graph:%s] enrichment write failed for %s: %s", graph.agent_id, item.exchange_id, e)
                    continue
                processed += 1
                logger.info(
                    "[graph:%s] enriched %s: %d entities, %d relationships",
                    graph.agent_id,
                    item.exchange_id,
                    len(result.entities),
                    len(result.relationships),
                )
        finally:
            graph.enriching = False
        return processed

    def _apply_enrichment(self, graph: AgentGraph, item: EnrichmentItem, result: EnrichmentResult) -> None:
        store, aid = graph.store, graph.agent_id
        boost = self.config.enrichment.confidence_boost
        context = [e.name for e in result.entities]
        with store.transaction():
            for ent in result.entities:
                eid = store.upsert_entity(ent.name, ent.type, aid)
                if eid and ent.aliases:
                    store.add_aliases(eid, ent.aliases, aid)
            for rel in result.relationships:
                tiers = {
                    graph.resolver.resolve(rel.subject, aid, context).tier,
                    graph.resolver.resolve(rel.object, aid, context).tier,
                }
                store.add_triple(
                    rel.subject,
                    rel.predicate,
                    rel.object,
                    min(rel.confidence + boost, 1.0),
                    source_exchange_id=item.exchange_id,
                    source_date=item.date,
                    agent_id=aid,
                    pending_resolution=ResolutionTier.DEFER in tiers,
                )
