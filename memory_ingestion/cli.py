"""Operator command line for the memory ingestion service."""

import asyncio
import signal
from collections import Counter
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from .core.config import get_settings
from .core.logging import setup_logging
from .models.source import SourceKind
from .services.container import IngestionServices, build_services

console = Console()

KIND_CHOICE = click.Choice([kind.value for kind in SourceKind])


def _services(ctx: click.Context) -> IngestionServices:
    services = ctx.obj.get("services")
    if services is None:
        services = build_services(ctx.obj["settings"])
        ctx.obj["services"] = services
    return services


async def _with_services(services: IngestionServices, coro):
    try:
        return await coro
    finally:
        await services.aclose()


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL.")
@click.pass_context
def cli(ctx: click.Context, log_level: Optional[str]) -> None:
    """Memory ingestion service."""
    settings = get_settings()
    if log_level:
        settings = settings.model_copy(update={"log_level": log_level})
    setup_logging(settings)
    ctx.ensure_object(dict)
    ctx.obj.setdefault("settings", settings)


@cli.command()
@click.option("--host", default=None, help="Bind address.")
@click.option("--port", default=None, type=int, help="Bind port.")
@click.option("--reload", is_flag=True, help="Reload on code changes.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP API (webhooks, status, corrections, Inngest endpoint)."""
    import uvicorn

    settings = ctx.obj["settings"]
    uvicorn.run(
        "memory_ingestion.main:create_app",
        factory=True,
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload or settings.api_reload,
        log_level=settings.log_level.lower(),
    )


@cli.command()
@click.option("--once", is_flag=True, help="Drain eligible jobs and exit.")
@click.pass_context
def worker(ctx: click.Context, once: bool) -> None:
    """Run the ingestion worker pool."""
    services = _services(ctx)

    async def _run() -> None:
        if once:
            results = await services.pool.drain()
            outcomes = Counter(result.outcome.value for result in results)
            console.print(f"Processed [bold]{len(results)}[/bold] jobs: {dict(outcomes)}")
            return

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        console.print(f"Worker pool running with {services.pool.concurrency} workers; Ctrl+C to stop")
        await services.pool.run(stop_event)

    asyncio.run(_with_services(services, _run()))


@cli.command()
@click.option("--kind", type=KIND_CHOICE, default=None, help="Source kind to reconcile.")
@click.option("--tenant", default=None, help="Tenant to reconcile (with --kind).")
@click.option("--force", is_flag=True, help="Ignore the reconcile interval.")
@click.pass_context
def reconcile(ctx: click.Context, kind: Optional[str], tenant: Optional[str], force: bool) -> None:
    """Run the delta reconciler."""
    if bool(kind) != bool(tenant):
        raise click.UsageError("--kind and --tenant go together")

    services = _services(ctx)

    async def _run():
        if kind:
            return [await services.reconciler.run(SourceKind(kind), tenant)]
        return await services.reconciler.run_due(force=force)

    results = asyncio.run(_with_services(services, _run()))

    table = Table(title="Reconcile results")
    for column in ("Source", "Status", "Pages", "Enqueued", "Ledgered", "Removed", "Cursor", "Note"):
        table.add_column(column)
    for result in results:
        table.add_row(
            f"{result.source_kind.value}:{result.tenant_id}",
            result.status.value,
            str(result.pages),
            str(result.enqueued),
            str(result.already_ledgered),
            str(result.removed),
            (result.cursor or "")[:40],
            result.error or result.reason or ("re-backfilled" if result.rebackfilled else ""),
        )
    console.print(table)


@cli.command("renew-subscriptions")
@click.pass_context
def renew_subscriptions(ctx: click.Context) -> None:
    """Renew expiring push subscriptions and retry fallbacks."""
    services = _services(ctx)

    async def _run():
        renewed = await services.subscriptions.renew_due()
        recovered = await services.subscriptions.recover_fallbacks()
        return renewed + recovered

    subscriptions = asyncio.run(_with_services(services, _run()))
    if not subscriptions:
        console.print("No subscriptions due")
        return

    table = Table(title="Subscriptions")
    for column in ("Source", "State", "Expires", "Attempts", "Last error"):
        table.add_column(column)
    for sub in subscriptions:
        table.add_row(
            f"{sub.source_kind.value}:{sub.tenant_id}",
            sub.state.value,
            sub.expires_at.isoformat() if sub.expires_at else "",
            str(sub.renewal_attempts),
            sub.last_error or "",
        )
    console.print(table)


@cli.group("dead-letters")
def dead_letters() -> None:
    """Inspect and replay dead-lettered jobs."""


@dead_letters.command("list")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def list_dead_letters(ctx: click.Context, limit: int) -> None:
    services = _services(ctx)
    letters = asyncio.run(_with_services(services, services.queue.list_dead_letters(limit=limit)))
    if not letters:
        console.print("No dead letters")
        return

    table = Table(title="Dead letters")
    for column in ("Job", "Source", "Resource", "Attempts", "When", "Last error"):
        table.add_column(column)
    for letter in letters:
        table.add_row(
            letter.job.job_id,
            f"{letter.job.source_kind.value}:{letter.job.tenant.tenant_id}",
            letter.job.resource_id,
            str(letter.attempts),
            letter.dead_lettered_at.isoformat(),
            (letter.last_error or "")[:80],
        )
    console.print(table)


@dead_letters.command("replay")
@click.argument("job_id")
@click.pass_context
def replay_dead_letter(ctx: click.Context, job_id: str) -> None:
    services = _services(ctx)
    job = asyncio.run(_with_services(services, services.queue.replay_dead_letter(job_id)))
    if job is None:
        raise click.ClickException(f"No dead letter {job_id}")
    console.print(f"Replayed [bold]{job.job_id}[/bold] ({job.source_kind.value} {job.resource_id})")


@cli.command("purge-ledger")
@click.pass_context
def purge_ledger(ctx: click.Context) -> None:
    """Delete expired idempotency records."""
    services = _services(ctx)
    removed = asyncio.run(_with_services(services, services.ledger.purge_expired()))
    console.print(f"Removed {removed} expired records")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show queue depth, dead letters, and per-source state."""
    services = _services(ctx)
    snapshot = asyncio.run(_with_services(services, services.status()))

    console.print(
        f"Queue depth: [bold]{snapshot['queue_depth']}[/bold]  "
        f"Dead letters: [bold]{snapshot['dead_letters']}[/bold]  "
        f"Ledger records: {snapshot['ledger_records']}"
    )
    table = Table(title="Sources")
    for column in ("Source", "Enabled", "Subscription", "Cursor advanced", "Last reconciled"):
        table.add_column(column)
    for source in snapshot["sources"]:
        table.add_row(
            source["source"],
            "yes" if source["enabled"] else "no",
            source["subscription_state"],
            source["cursor_advanced_at"] or "",
            source["last_reconciled_at"] or "",
        )
    console.print(table)


@cli.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("tenant")
@click.option("--user", "user_id", default=None, help="User the source acts on behalf of.")
@click.pass_context
def enable(ctx: click.Context, kind: str, tenant: str, user_id: Optional[str]) -> None:
    """Enable a source and create its push subscription."""
    services = _services(ctx)
    try:
        subscription = asyncio.run(
            _with_services(services, services.subscriptions.enable(SourceKind(kind), tenant, user_id))
        )
    except ValueError as e:
        raise click.ClickException(str(e))
    console.print(f"Enabled {kind}:{tenant}; subscription {subscription.state.value}")


@cli.command()
@click.argument("kind", type=KIND_CHOICE)
@click.argument("tenant")
@click.pass_context
def disable(ctx: click.Context, kind: str, tenant: str) -> None:
    """Disable a source and retire its push subscription."""
    services = _services(ctx)
    subscription = asyncio.run(_with_services(services, services.subscriptions.disable(SourceKind(kind), tenant)))
    console.print(f"Disabled {kind}:{tenant}; subscription {subscription.state.value}")


if __name__ == "__main__":
    cli()
