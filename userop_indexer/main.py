import signal
import threading

from userop_indexer.helpers.blockchain_data import ChainEventSource
from userop_indexer.helpers.config import (
    IndexerConfig,
    initialize_connections,
    load_config,
    logger,
)
from userop_indexer.helpers.database import Database
from userop_indexer.helpers.resumption_tracker import ResumptionTracker
from userop_indexer.reconnect_supervisor import ReconnectSupervisor


def build_supervisor(
    config: IndexerConfig, stop_event: threading.Event
) -> tuple[ReconnectSupervisor, Database]:
    """Wire node, database and checkpoint store into a supervisor."""
    web3, db_engine = initialize_connections(config)
    source = ChainEventSource(
        web3,
        address=config.entry_point_address,
        max_span=config.max_block_span,
        poll_interval=config.poll_interval,
        stop_event=stop_event,
    )
    db = Database(
        db_engine,
        db_url=config.db_url,
        max_workers=config.persist_workers,
        persist_retries=config.persist_retries,
    )
    tracker = ResumptionTracker(db, config.source_id)
    supervisor = ReconnectSupervisor(
        source,
        db,
        tracker,
        start_block=config.start_block,
        max_span=config.max_block_span,
        base_delay=config.reconnect_base_delay,
        max_delay=config.reconnect_max_delay,
        jitter=config.reconnect_jitter,
        stop_event=stop_event,
    )
    return supervisor, db


def install_signal_handlers(stop_event: threading.Event) -> None:
    """SIGINT and SIGTERM request a clean shutdown instead of killing the process."""

    def handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down.")
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)


def main() -> None:
    config = load_config()
    if config.node_url is None:
        logger.error("NODE_URL environment variable is not set.")
        return
    if config.db_url is None:
        logger.error("DB_URL environment variable is not set.")
        return

    stop_event = threading.Event()
    # tables are created by the supervisor on each connect
    supervisor, _ = build_supervisor(config, stop_event)

    install_signal_handlers(stop_event)
    logger.info(
        "Indexing UserOperationEvents of %s on %s.",
        config.entry_point_address,
        config.chain_name,
    )
    supervisor.run()


if __name__ == "__main__":
    main()
