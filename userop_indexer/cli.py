import click

from userop_indexer.helpers.config import create_db_connection, load_config
from userop_indexer.helpers.database import Database
from userop_indexer.helpers.resumption_tracker import ResumptionTracker
from userop_indexer.models import UserOperationEvent


def format_event(event: UserOperationEvent) -> str:
    status = "success" if event.success else "failed"
    return (
        f"{event.block_number} {event.user_op_hash} nonce={event.nonce} "
        f"sender={event.sender} paymaster={event.paymaster} {status} "
        f"gas_cost={event.actual_gas_cost} gas_used={event.actual_gas_used}"
    )


def open_database(db_url: str | None) -> Database:
    if not db_url:
        raise click.UsageError("Pass --db-url or set DB_URL.")
    return Database(create_db_connection(db_url), db_url=db_url)


@click.group()
def cli() -> None:
    """Index ERC-4337 UserOperationEvents into a relational database."""


@cli.command("run")
def run_cmd() -> None:
    """Backfill from the checkpoint (or START_BLOCK), then follow the chain until stopped."""
    from userop_indexer.main import main

    main()


@cli.command("query")
@click.option("--db-url", envvar="DB_URL", help="SQLAlchemy database URL")
@click.option("--hash", "user_op_hash", help="userOpHash")
@click.option("--sender", help="Sender account address")
@click.option("--paymaster", help="Paymaster address")
@click.option("--from-block", type=int, help="First block, inclusive")
@click.option("--to-block", type=int, help="Last block, inclusive")
@click.option("--success/--failed", "success", default=None, help="Outcome of the operation")
@click.option("--limit", type=int, default=100, show_default=True)
def query_cmd(
    db_url: str | None,
    user_op_hash: str | None,
    sender: str | None,
    paymaster: str | None,
    from_block: int | None,
    to_block: int | None,
    success: bool | None,
    limit: int,
) -> None:
    """Print stored events matching all given filters."""
    db = open_database(db_url)
    filters = {
        "user_op_hash": user_op_hash,
        "sender": sender,
        "paymaster": paymaster,
        "from_block": from_block,
        "to_block": to_block,
        "success": success,
    }
    try:
        events = db.get_events(**filters, limit=limit)
        total = db.count_events(**filters)
    except ValueError as e:
        raise click.BadParameter(str(e)) from e
    for event in events:
        click.echo(format_event(event))
    click.echo(f"{len(events)} of {total} matching events shown.")


@cli.command("reset-checkpoint")
@click.argument("block", type=int)
@click.option("--db-url", envvar="DB_URL", help="SQLAlchemy database URL")
def reset_checkpoint_cmd(block: int, db_url: str | None) -> None:
    """Set the checkpoint of the configured stream to BLOCK, also backwards."""
    config = load_config()
    db = open_database(db_url)
    db.create_tables()
    tracker = ResumptionTracker(db, config.source_id)
    previous = tracker.load()
    tracker.reset(block)
    click.echo(f"Checkpoint of {config.source_id} moved from {previous} to {block}.")


if __name__ == "__main__":
    cli()
