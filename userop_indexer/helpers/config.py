import os
from dataclasses import dataclass

from dotenv import load_dotenv
from sqlalchemy import create_engine, text, Engine
from sqlalchemy.exc import OperationalError
from web3 import Web3

from userop_indexer.constants import ENTRY_POINT_ADDRESS, MAX_BLOCK_SPAN
from userop_indexer.helpers.helper_functions import get_logger, get_web3_instance


load_dotenv()

logger = get_logger(os.getenv("LOG_FILE"))


def get_env_int(var_name: str, default: int | None = None) -> int:
    """
    Retrieve environment variable and convert to int.
    Raise an error if it is not set and no default is given, or if it is not an int.
    """
    value = os.getenv(var_name)
    if value is None or value == "":
        if default is None:
            raise ValueError(f"Environment variable {var_name} is not set.")
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {var_name} must be a int.")


def get_env_float(var_name: str, default: float) -> float:
    """Retrieve environment variable and convert to float, falling back to default."""
    value = os.getenv(var_name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {var_name} must be a number.")


@dataclass(frozen=True)
class IndexerConfig:
    """Settings for one ingestion stream (one chain, one EntryPoint)."""

    # pylint: disable=too-many-instance-attributes

    node_url: str | None
    db_url: str | None
    chain_name: str = "mainnet"
    entry_point_address: str = ENTRY_POINT_ADDRESS
    start_block: int | None = None
    max_block_span: int = MAX_BLOCK_SPAN
    poll_interval: float = 2.0
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    reconnect_jitter: float = 1.0
    persist_workers: int = 8
    persist_retries: int = 3

    @property
    def source_id(self) -> str:
        """Key of the checkpoint row for this stream."""
        return f"{self.chain_name}:{self.entry_point_address.lower()}"


def load_config() -> IndexerConfig:
    """Build the indexer configuration from environment variables."""
    start_block = os.getenv("START_BLOCK")
    return IndexerConfig(
        node_url=os.getenv("NODE_URL"),
        db_url=os.getenv("DB_URL"),
        chain_name=os.getenv("CHAIN_NAME", "mainnet"),
        entry_point_address=os.getenv("ENTRY_POINT_ADDRESS", ENTRY_POINT_ADDRESS),
        start_block=get_env_int("START_BLOCK") if start_block else None,
        max_block_span=get_env_int("MAX_BLOCK_SPAN", MAX_BLOCK_SPAN),
        poll_interval=get_env_float("CHAIN_SLEEP_TIME", 2.0),
        reconnect_base_delay=get_env_float("RECONNECT_BASE_DELAY", 1.0),
        reconnect_max_delay=get_env_float("RECONNECT_MAX_DELAY", 30.0),
        reconnect_jitter=get_env_float("RECONNECT_JITTER", 1.0),
        persist_workers=get_env_int("PERSIST_WORKERS", 8),
        persist_retries=get_env_int("PERSIST_RETRIES", 3),
    )


def create_db_connection(db_url: str | None) -> Engine:
    """
    Function that creates a connection to the database.
    A URL without a scheme is treated as a PostgreSQL connection string.
    """
    if not db_url:
        raise ValueError("Database URL not found in environment variables.")
    if "://" not in db_url:
        db_url = f"postgresql+psycopg://{db_url}"
    return create_engine(db_url)


def check_db_connection(connection: Engine, db_url: str | None) -> Engine:
    """
    Check if the database connection is still active. If not, create a new one.
    """
    try:
        if connection:
            with connection.connect() as conn:
                conn.execute(text("SELECT 1"))
    except OperationalError:
        # if connection is closed, create new one
        logger.warning("Database connection lost, reconnecting.")
        connection = create_db_connection(db_url)
    return connection


def initialize_connections(config: IndexerConfig) -> tuple[Web3, Engine]:
    web3 = get_web3_instance(config.node_url)
    db_engine = create_db_connection(config.db_url)

    return web3, db_engine
