"""memory-graph command line: inspect and maintain per-agent knowledge graphs."""

from __future__ import annotations

import json
import logging

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from memory_graph.errors import GraphMemoryError
from memory_graph.schemas import IngestRequest, QueryRequest
from memory_graph.service import GraphMemory
from memory_graph.settings import settings

console = Console()


def _configure_logging() -> None:
    level = (settings.log_level or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _memory(ctx: click.Context) -> GraphMemory:
    return ctx.obj["memory"]


@click.group()
@click.option("--data-dir", default=None, help="Root directory of the graph stores")
@click.option("--agent", "agent_id", default="main", show_default=True, help="Agent id")
@click.pass_context
def cli(ctx, data_dir, agent_id):
    """Per-agent knowledge graph memory"""
    _configure_logging()
    config = settings.model_copy(update={"data_dir": data_dir}) if data_dir else settings
    ctx.obj = {"memory": GraphMemory(config), "agent_id": agent_id}
    ctx.call_on_close(ctx.obj["memory"].close)


@cli.command()
def version():
    """Print the package version"""
    from memory_graph import __version__

    click.echo(__version__)


@cli.command()
@click.argument("payload", type=click.File("r"))
@click.pass_context
def ingest(ctx, payload):
    """Write one exchange from a JSON payload file ('-' for stdin)"""
    data = json.load(payload)
    data.setdefault("agent_id", ctx.obj["agent_id"])
    try:
        result = _memory(ctx).ingest(IngestRequest.model_validate(data))
    except GraphMemoryError as e:
        console.print(f"[red]Write failed: {e}[/red]")
        raise SystemExit(1)

    console.print(f"[green]✓ Wrote {len(result.triple_ids)} triples[/green]")
    for name in result.deferred:
        console.print(f"[yellow]Deferred resolution: {name}[/yellow]")
    for note in result.notes:
        console.print(Panel(note, title="Graph note", border_style="yellow"))


@cli.command()
@click.argument("entities", nargs=-1, required=True)
@click.option("--limit", default=None, type=int, help="Number of exchanges")
@click.option("--hops", default=None, type=int, help="Max traversal hops (1 = single-hop)")
@click.option("--paths", is_flag=True, help="Also show the traversal paths")
@click.pass_context
def search(ctx, entities, limit, hops, paths):
    """Rank exchanges connected to ENTITIES"""
    memory = _memory(ctx)
    agent_id = ctx.obj["agent_id"]
    result = memory.query(
        QueryRequest(entities=list(entities), agent_id=agent_id, limit=limit, max_hops=hops)
    )

    if not result.exchanges:
        console.print("[yellow]No results found[/yellow]")
        return

    table = Table(title=f"Graph results for {', '.join(entities)}")
    table.add_column("Score", style="cyan", width=8)
    table.add_column("Exchange", style="green")
    table.add_column("Date", style="blue", width=12)
    table.add_column("Shared", style="magenta", overflow="fold")
    for hit in result.exchanges:
        table.add_row(f"{hit.score:.3f}", hit.id, hit.date or "", ", ".join(hit.shared_entities))
    console.print(table)

    if paths:
        for p in memory.trace_paths(entities, agent_id, hops):
            chain = p.entities[0]
            for pred, ent in zip(p.predicates, p.entities[1:]):
                chain += f" -[{pred}]- {ent}"
            console.print(f"  [cyan]{p.score:.3f}[/cyan] {chain} [dim]({p.source_exchange_id})[/dim]")


@cli.command()
@click.argument("name")
@click.pass_context
def entity(ctx, name):
    """Show an entity with its relationships and co-occurrences"""
    context = _memory(ctx).entity_context(name, ctx.obj["agent_id"])
    if context is None:
        console.print(f"[yellow]Unknown entity: {name}[/yellow]")
        raise SystemExit(1)

    e = context.entity
    aliases = ", ".join(e.aliases) or "-"
    console.print(
        Panel(
            f"type: {e.entity_type.value}\nmentions: {e.mention_count}\n"
            f"first seen: {e.first_seen}\nlast seen: {e.last_seen}\naliases: {aliases}",
            title=e.canonical_name,
        )
    )

    table = Table(title=f"Relationships ({context.triple_count})")
    table.add_column("Predicate", style="magenta")
    table.add_column("Subject", style="green")
    table.add_column("Object", style="green")
    table.add_column("Conf", style="cyan", width=6)
    for predicate, rels in context.relationships.items():
        for r in rels:
            table.add_row(predicate, r["subject"], r["object"], f"{r['confidence']:.2f}")
    console.print(table)

    if context.cooccurrences:
        console.print("[bold]Co-occurs with:[/bold] " + ", ".join(f"{c['entity']} ({c['count']})" for c in context.cooccurrences))


@cli.command()
@click.argument("mention")
@click.option("--context", "context_names", multiple=True, help="Other entities in the exchange")
@click.pass_context
def resolve(ctx, mention, context_names):
    """Show how MENTION would resolve"""
    result = _memory(ctx).resolve(mention, ctx.obj["agent_id"], context_names)
    target = result.entity.canonical_name if result.entity else "-"
    console.print(f"[bold]{result.tier.value}[/bold] confidence={result.confidence:.2f} entity={target}")
    for c in result.candidates:
        console.print(f"  {c.entity.canonical_name}  score={c.score:.2f}  seen {c.days_since_seen}d ago")
    if result.note:
        console.print(Panel(result.note, title="Graph note", border_style="yellow"))


@cli.command()
@click.argument("keep_id")
@click.argument("merge_id")
@click.pass_context
def merge(ctx, keep_id, merge_id):
    """Merge entity MERGE_ID into KEEP_ID"""
    try:
        n = _memory(ctx).merge(keep_id, merge_id, ctx.obj["agent_id"])
    except GraphMemoryError as e:
        console.print(f"[red]Merge failed: {e}[/red]")
        raise SystemExit(1)
    console.print(f"[green]✓ Merged {merge_id} into {keep_id}, {n} triples rewritten[/green]")


@cli.command()
@click.option("--force", is_flag=True, help="Run discovery even if the interval has not elapsed")
@click.pass_context
def maintain(ctx, force):
    """Run pending resolution, gap detection, decay and pattern maintenance"""
    try:
        report = _memory(ctx).run_maintenance(ctx.obj["agent_id"], force=force)
    except GraphMemoryError as e:
        console.print(f"[red]Maintenance failed: {e}[/red]")
        raise SystemExit(1)
    console.print(f"pending: {report.pending.resolved} resolved, {report.pending.expired} expired")
    console.print(f"gaps: {len(report.gaps)}")
    if report.discovery_skipped:
        console.print("[dim]pattern discovery not due[/dim]")
    else:
        console.print(f"decayed: {report.decayed}")
        if report.discovery:
            d = report.discovery
            console.print(f"discovery: {d.candidates} candidates, {d.viable} viable, {d.novel} novel, {d.saved} saved")
        if report.validation:
            console.print(f"validation: {report.validation.validated} kept, {report.validation.retired} retired")
    for err in report.errors:
        console.print(f"[red]{err}[/red]")


@cli.command()
@click.pass_context
def decay(ctx):
    """Halve confidence of stale triples"""
    try:
        n = _memory(ctx).decay(ctx.obj["agent_id"])
    except GraphMemoryError as e:
        console.print(f"[red]Decay failed: {e}[/red]")
        raise SystemExit(1)
    console.print(f"Decayed {n} triple(s)")


@cli.command()
@click.pass_context
def discover(ctx):
    """Mine new meta-path patterns"""
    try:
        d = _memory(ctx).discover_patterns(ctx.obj["agent_id"])
    except GraphMemoryError as e:
        console.print(f"[red]Discovery failed: {e}[/red]")
        raise SystemExit(1)
    console.print(f"{d.candidates} candidates, {d.viable} viable, {d.novel} novel, {d.saved} saved ({d.elapsed_ms:.0f} ms)")


@cli.command()
@click.pass_context
def validate(ctx):
    """Re-check discovered patterns and retire redundant ones"""
    try:
        v = _memory(ctx).validate_patterns(ctx.obj["agent_id"])
    except GraphMemoryError as e:
        console.print(f"[red]Validation failed: {e}[/red]")
        raise SystemExit(1)
    console.print(f"{v.validated} kept, {v.retired} retired")


@cli.command()
@click.pass_context
def pending(ctx):
    """Resolve or expire deferred entities"""
    try:
        r = _memory(ctx).process_pending(ctx.obj["agent_id"])
    except GraphMemoryError as e:
        console.print(f"[red]Pending resolution failed: {e}[/red]")
        raise SystemExit(1)
    console.print(f"{r.resolved} resolved, {r.expired} expired")


@cli.command()
@click.pass_context
def patterns(ctx):
    """List meta-path patterns"""
    rows = _memory(ctx).patterns(ctx.obj["agent_id"])
    if not rows:
        console.print("[yellow]No patterns[/yellow]")
        return
    table = Table(title="Meta-paths")
    table.add_column("ID", style="dim", width=4)
    table.add_column("Predicates", style="green")
    table.add_column("Type", style="magenta")
    table.add_column("Weight", style="cyan", width=7)
    table.add_column("Yield", width=6)
    table.add_column("Overlap", width=7)
    table.add_column("Active")
    for p in rows:
        table.add_row(
            str(p.id),
            " → ".join(p.predicates),
            p.type.value,
            f"{p.weight:.2f}",
            f"{p.yield_score:.0f}",
            f"{p.overlap_ratio:.2f}",
            "yes" if p.active else "no",
        )
    console.print(table)


@cli.command()
@click.pass_context
def gaps(ctx):
    """Questions suggested by thin spots in the graph"""
    found = _memory(ctx).detect_gaps(ctx.obj["agent_id"])
    if not found:
        console.print("[green]No gaps found[/green]")
        return
    for g in found:
        console.print(f"[magenta]{g.type}[/magenta] {g.question}")


@cli.command()
@click.pass_context
def stats(ctx):
    """Show graph statistics"""
    s = _memory(ctx).stats(ctx.obj["agent_id"])
    table = Table(title=f"Graph: {ctx.obj['agent_id']}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Entities", str(s.entity_count))
    table.add_row("Triples", str(s.triple_count))
    table.add_row("Pending", str(s.pending_count))
    table.add_row("Active patterns", str(s.active_patterns))
    console.print(table)

    if s.recent_entities:
        console.print("[bold]Recent:[/bold] " + ", ".join(e.canonical_name for e in s.recent_entities))


def app() -> None:
    cli()


if __name__ == "__main__":
    app()
