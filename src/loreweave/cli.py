"""loreweave command line."""

from __future__ import annotations

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .errors import LoreError
from .extraction import ExtractionOptions
from .importer import ImportOptions
from .logging_utils import configure_logging
from .models import RelationType, is_default_type
from .parsers import parser_for_file, parser_for_format
from .services import Services
from .settings import LoreweaveSettings

console = Console()

_SEVERITY_STYLE = {"minor": "yellow", "major": "red", "critical": "bold red"}


def _truncate(text: str, n: int = 80) -> str:
    return text if len(text) <= n else text[: n - 3] + "..."


class LoreCommandGroup(click.Group):
    """Turns package errors into a one-line message and exit code 1."""

    def invoke(self, ctx: click.Context):
        try:
            return super().invoke(ctx)
        except LoreError as e:
            console.print(f"[red]Error:[/red] {e}")
            ctx.exit(1)
        finally:
            services = ctx.obj
            if isinstance(services, Services):
                services.close()


@click.group(cls=LoreCommandGroup)
@click.option("--world", default=None, help="World to operate on (overrides LOREWEAVE_WORLD)")
@click.option("--log-level", default=None, help="Logging level (overrides LOREWEAVE_LOG_LEVEL)")
@click.pass_context
def cli(ctx: click.Context, world: str | None, log_level: str | None):
    """Extract, store and query facts about fictional worlds."""
    overrides = {}
    if world:
        overrides["world"] = world
    if log_level:
        overrides["log_level"] = log_level
    settings = LoreweaveSettings(**overrides)
    configure_logging(settings.log_level)
    ctx.obj = Services(settings)


@cli.command()
@click.pass_obj
def init(services: Services):
    """Create the stores and seed the default entity types."""
    seeded = services.initialize()
    console.print(
        f"[green]✓ World '{services.settings.world}' ready[/green] "
        f"({seeded} default types added)"
    )


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--check", "check_consistency", is_flag=True, help="Check new facts against stored ones")
@click.option("--check-only", is_flag=True, help="Check and preview; save nothing")
@click.pass_obj
def ingest(services: Services, path: str, check_consistency: bool, check_only: bool):
    """Extract facts from a text file and store them."""
    opts = ExtractionOptions(check_consistency=check_consistency or check_only, check_only=check_only)
    with open(path, encoding="utf-8") as fh:
        result = services.extraction.extract_from_stream(fh, path, opts)

    if not result.facts:
        console.print("[yellow]No facts extracted[/yellow]")
        return

    table = Table(title=f"Facts from {path}")
    table.add_column("Type", style="magenta", width=12)
    table.add_column("Subject", style="cyan")
    table.add_column("Predicate", style="blue")
    table.add_column("Object", style="white", overflow="fold")
    table.add_column("Conf", style="green", width=5)
    for f in result.facts:
        table.add_row(f.type, f.subject, f.predicate, f.object, f"{f.confidence:.2f}")
    console.print(table)

    if result.consistency_error:
        console.print(f"[yellow]Consistency check skipped: {result.consistency_error}[/yellow]")
    for issue in result.issues:
        style = _SEVERITY_STYLE.get(issue.severity, "yellow")
        console.print(
            Panel(
                f"new: {issue.new_fact.to_text()}\n"
                f"existing: {issue.existing_fact.to_text()}\n\n{issue.description}",
                title=f"[{style}]{issue.severity}[/{style}]",
            )
        )

    s = result.stats
    if result.saved:
        console.print(f"[green]✓ Saved {len(result.facts)} facts[/green] from {s.segments} segments")
    else:
        console.print(f"[yellow]Check only: {len(result.facts)} facts not saved[/yellow]")


@cli.command(name="import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--format", "fmt", type=click.Choice(["json", "csv"]), default=None, help="Defaults to the file extension")
@click.option("--dry-run", is_flag=True, help="Validate and embed only")
@click.option("--on-conflict", type=click.Choice(["skip", "overwrite"]), default="skip", show_default=True)
@click.pass_obj
def import_(services: Services, path: str, fmt: str | None, dry_run: bool, on_conflict: str):
    """Import pre-structured facts from JSON or CSV."""
    parse = parser_for_format(fmt) if fmt else parser_for_file(path)
    if parse is None:
        raise click.UsageError(f"cannot tell the format of {path}; pass --format")
    with open(path, encoding="utf-8", newline="") as fh:
        records = parse(fh)

    result = services.importer.import_facts(
        records, ImportOptions(dry_run=dry_run, on_conflict=on_conflict)
    )
    for issue in result.errors:
        console.print(f"[red]✗[/red] {issue}")
    verb = "Would import" if dry_run else "Imported"
    console.print(
        f"[green]{verb} {result.imported}[/green], skipped {result.skipped}, "
        f"invalid {len(result.errors)}"
    )


@cli.command()
@click.argument("text")
@click.option("--type", "fact_type", default=None, help="Restrict to one entity type")
@click.option("--limit", default=10, show_default=True, help="Number of results")
@click.pass_obj
def query(services: Services, text: str, fact_type: str | None, limit: int):
    """Semantic search over stored facts."""
    facts = services.query.search(text, limit=limit, fact_type=fact_type)
    if not facts:
        console.print("[yellow]No results found[/yellow]")
        return
    table = Table(title=f"Results for '{text}'")
    table.add_column("Type", style="magenta", width=12)
    table.add_column("Fact", style="white", overflow="fold")
    table.add_column("Source", style="blue")
    for f in facts:
        table.add_row(f.type, _truncate(f.to_text(), 120), f.source_file)
    console.print(table)


@cli.group()
def types():
    """Manage entity types."""


@types.command(name="list")
@click.pass_obj
def types_list(services: Services):
    table = Table(title="Entity types")
    table.add_column("Name", style="cyan")
    table.add_column("Description", style="white")
    table.add_column("Default", style="green", width=8)
    for et in services.taxonomy.list():
        table.add_row(et.name, et.description, "yes" if is_default_type(et.name) else "")
    console.print(table)


@types.command(name="add")
@click.argument("name")
@click.option("--description", "-d", default="", help="What facts of this type describe")
@click.pass_obj
def types_add(services: Services, name: str, description: str):
    et = services.taxonomy.add(name, description)
    console.print(f"[green]✓ Added type {et.name}[/green]")


@types.command(name="remove")
@click.argument("name")
@click.pass_obj
def types_remove(services: Services, name: str):
    services.taxonomy.remove(name)
    console.print(f"[green]✓ Removed type {name.strip().lower()}[/green]")


@cli.command()
@click.argument("source")
@click.argument("rel_type", metavar="TYPE", type=click.Choice([t.value for t in RelationType]))
@click.argument("target")
@click.option("--bidirectional", "-b", is_flag=True, help="Relationship holds both ways")
@click.pass_obj
def relate(services: Services, source: str, rel_type: str, target: str, bidirectional: bool):
    """Create a relationship: SOURCE TYPE TARGET."""
    rel = services.relationships.create(
        services.settings.world, source, rel_type, target, bidirectional
    )
    arrow = "<->" if bidirectional else "->"
    console.print(f"[green]✓ {source} {arrow} {rel_type} {arrow} {target}[/green] ({rel.id})")


@cli.command()
@click.argument("entity")
@click.option("--type", "rel_type", type=click.Choice([t.value for t in RelationType]), default=None)
@click.option("--depth", default=1, show_default=True, help="Hops to follow")
@click.pass_obj
def relations(services: Services, entity: str, rel_type: str | None, depth: int):
    """Show relationships of an entity."""
    if depth > 1 and rel_type:
        raise click.UsageError("--type only applies to direct relationships (--depth 1)")
    world = services.settings.world
    found = services.entities.find_by_name(world, entity)
    if found is None:
        console.print(f"[yellow]Unknown entity '{entity}'[/yellow]")
        return

    def name_of(entity_id: str) -> str:
        e = services.entities.find_by_id(entity_id)
        return e.name if e else entity_id

    if depth > 1:
        related = services.relationships.list_with_depth(found.id, depth)
        if not related:
            console.print("[yellow]No related entities[/yellow]")
            return
        console.print(f"[bold]Entities within {depth} hops of {found.name}:[/bold]")
        for r in related:
            console.print(f"  {name_of(r.entity_id)}")
        return

    rels = services.relationships.list(found.id, rel_type)
    if not rels:
        console.print("[yellow]No relationships[/yellow]")
        return
    table = Table(title=f"Relationships of {found.name}")
    table.add_column("ID", style="dim")
    table.add_column("Source", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Target", style="cyan")
    table.add_column("Both ways", style="green")
    for r in rels:
        table.add_row(
            r.id,
            name_of(r.source_entity_id),
            r.type.value,
            name_of(r.target_entity_id),
            "yes" if r.bidirectional else "",
        )
    console.print(table)


@cli.command()
@click.argument("rel_id", metavar="ID")
@click.pass_obj
def unrelate(services: Services, rel_id: str):
    """Delete a relationship by id."""
    services.relationships.delete(rel_id)
    console.print(f"[green]✓ Deleted relationship {rel_id}[/green]")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
