"""CLI interface for IntentX."""

import asyncio
import json
import logging
import sys
import time

import click
import uvicorn

from intentx import __version__
from intentx.config import get_settings, load_env_or_exit
from intentx.errors import IntentError
from intentx.execution.intents import IntentRequest, IntentStatus, format_amount, parse_amount
from intentx.runtime import Runtime, build_runtime
from intentx.utils.logging import setup_logging

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """IntentX - signed swap intents with at-most-once execution."""
    if any(arg in ("-h", "--help") for arg in sys.argv[1:]):
        return

    # Load .env and fail fast when contract settlement is half-configured
    load_env_or_exit()


def _runtime() -> Runtime:
    setup_logging()
    return build_runtime(get_settings())


@cli.command()
@click.option("--host", default=None, help="API host")
@click.option("--port", default=None, type=int, help="API port")
@click.option("--no-scheduler", is_flag=True, help="Serve HTTP only, do not execute intents")
def serve(host: str | None, port: int | None, no_scheduler: bool) -> None:
    """Start the API server with the polling scheduler.

    Startup resolves intents left executing by a previous run, then sweeps
    pending intents every INTENTX_POLL_INTERVAL_SECONDS.
    """
    from intentx.api.app import create_app

    runtime = _runtime()
    settings = runtime.settings

    api_host = host or settings.api_host
    api_port = port or settings.api_port

    click.echo(f"Starting API server on {api_host}:{api_port}")
    click.echo(f"  http://{api_host}:{api_port}/health")
    click.echo(f"  http://{api_host}:{api_port}/api/intents-pending\n")

    app = create_app(runtime, run_scheduler=not no_scheduler and settings.scheduler_enabled)
    try:
        uvicorn.run(app, host=api_host, port=api_port, log_level=settings.log_level.lower())
    finally:
        runtime.close()


@cli.command()
@click.option("--json-output", is_flag=True, help="Output as JSON")
def sweep(json_output: bool) -> None:
    """Run a single sweep over pending intents."""
    runtime = _runtime()
    try:
        summary = asyncio.run(runtime.scheduler.run_once())
    finally:
        runtime.close()

    if json_output:
        click.echo(json.dumps(summary, indent=2))
        return
    click.echo(
        f"Processed {summary['processed']}: {summary['executed']} executed, "
        f"{summary['retried']} retried, {summary['failed']} failed, "
        f"{summary['skipped']} skipped, {summary['errors']} errors"
    )


@cli.command()
def recover() -> None:
    """Resolve intents left executing by a crashed process.

    Do not run while a server is executing intents against the same database.
    """
    runtime = _runtime()
    try:
        summary = asyncio.run(runtime.engine.recover())
    finally:
        runtime.close()
    click.echo(
        f"Recovery: {summary['finalized']} finalized, {summary['released']} released, "
        f"{summary['unresolved']} unresolved"
    )
    if summary["unresolved"]:
        raise SystemExit(1)


@cli.group()
def intents() -> None:
    """Inspect and cancel intents."""


@intents.command(name="list")
@click.option("--user", "user_address", default=None, help="Only this user's intents")
@click.option(
    "--status",
    type=click.Choice([s.value for s in IntentStatus]),
    default=None,
    help="Only intents in this status",
)
@click.option("--json-output", is_flag=True, help="Output as JSON")
def list_intents(user_address: str | None, status: str | None, json_output: bool) -> None:
    """List intents, most recent first."""
    runtime = _runtime()
    try:
        if user_address:
            rows = runtime.engine.list_by_user(user_address)
        else:
            rows = runtime.engine.list_all()
    finally:
        runtime.close()

    if status:
        rows = [i for i in rows if i.status.value == status]

    if json_output:
        click.echo(json.dumps([i.to_dict() for i in rows], indent=2))
    else:
        _print_intents(rows)


@intents.command(name="show")
@click.argument("intent_id")
def show_intent(intent_id: str) -> None:
    """Show one intent as JSON."""
    runtime = _runtime()
    try:
        intent = runtime.engine.get(intent_id)
    except IntentError as e:
        click.echo(f"ERROR: {e.message}")
        raise SystemExit(1)
    finally:
        runtime.close()
    click.echo(json.dumps(intent.to_dict(), indent=2))


@intents.command(name="cancel")
@click.argument("intent_id")
@click.option("--requester", required=True, help="Address of the intent owner")
def cancel_intent(intent_id: str, requester: str) -> None:
    """Cancel a pending intent."""
    runtime = _runtime()
    try:
        intent = runtime.engine.cancel(intent_id, requester)
    except IntentError as e:
        click.echo(f"ERROR: {e.name}: {e.message}")
        raise SystemExit(1)
    finally:
        runtime.close()
    click.echo(f"✓ Intent {intent.intent_id[:8]} cancelled")


@cli.command()
@click.option("--user", "user_address", default=None, help="Scope to one user")
def analytics(user_address: str | None) -> None:
    """Print aggregate intent counts as JSON."""
    runtime = _runtime()
    try:
        result = runtime.engine.analytics(user_address)
    finally:
        runtime.close()
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.group()
def db() -> None:
    """Database management commands."""


@db.command(name="init")
def db_init() -> None:
    """Initialize database tables."""
    setup_logging()
    settings = get_settings()
    if not settings.db_url:
        click.echo("INTENTX_DB_URL is empty (in-memory store); nothing to initialize")
        return

    from intentx.data.storage import create_db_engine

    click.echo("Initializing database...")
    engine = create_db_engine(settings.db_url)
    engine.dispose()
    click.echo("✓ Database initialized successfully")


@cli.group()
def dev() -> None:
    """Developer helpers."""


@dev.command(name="sign")
@click.option(
    "--private-key",
    envvar="INTENTX_DEV_PRIVATE_KEY",
    required=True,
    help="Key to sign with (or INTENTX_DEV_PRIVATE_KEY). Never use a funded key.",
)
@click.option("--source-token", required=True)
@click.option("--target-token", required=True)
@click.option("--source-amount", required=True)
@click.option("--min-target-amount", required=True)
@click.option(
    "--slippage-bps",
    default=300,
    type=int,
    show_default=True,
    help="Tolerance; the simulated routes lose 2-3% of the quote",
)
@click.option("--timestamp", default=None, type=int, help="Signing time in ms (default: now)")
def dev_sign(
    private_key: str,
    source_token: str,
    target_token: str,
    source_amount: str,
    min_target_amount: str,
    slippage_bps: int,
    timestamp: int | None,
) -> None:
    """Sign an intent and print a POST /intents body."""
    from eth_account import Account

    from intentx.execution.signatures import sign_canonical_message

    account = Account.from_key(private_key)
    try:
        request = IntentRequest(
            source_token=source_token,
            target_token=target_token,
            source_amount=parse_amount(source_amount, "sourceAmount"),
            min_target_amount=parse_amount(min_target_amount, "minTargetAmount"),
            slippage_bps=slippage_bps,
            user_address=account.address,
            timestamp=timestamp or int(time.time() * 1000),
        )
        request.validate()
    except IntentError as e:
        click.echo(f"ERROR: {e.message}")
        raise SystemExit(1)

    body = {
        "sourceToken": request.source_token,
        "targetToken": request.target_token,
        "sourceAmount": format_amount(request.source_amount),
        "minTargetAmount": format_amount(request.min_target_amount),
        "slippageBps": request.slippage_bps,
        "userAddress": request.user_address,
        "timestamp": request.timestamp,
        "signature": sign_canonical_message(request.canonical_message(), private_key),
    }
    click.echo(json.dumps(body, indent=2))


def _print_intents(rows: list) -> None:
    """Print intents in human-readable format.

    Args:
        rows: List of Intent objects.
    """
    if not rows:
        click.echo("\nNo intents found.\n")
        return

    click.echo(f"\n{len(rows)} Intent(s):\n")
    header = f"{'ID':8}  {'STATUS':10}  {'PAIR':16}  {'AMOUNT':>14}  {'MIN OUT':>14}  {'EXECUTED':>14}  TRIES"
    click.echo(header)
    click.echo("-" * len(header))

    for intent in rows:
        pair = f"{intent.source_token}/{intent.target_token}"[:16]
        executed = format_amount(intent.executed_amount) or "-"
        click.echo(
            f"{intent.intent_id[:8]:8}  {intent.status.value:10}  {pair:16}  "
            f"{format_amount(intent.source_amount):>14}  {format_amount(intent.min_target_amount):>14}  "
            f"{executed:>14}  {intent.attempts}"
        )
    click.echo("")


if __name__ == "__main__":
    cli()
