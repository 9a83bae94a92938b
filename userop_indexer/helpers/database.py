import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    func,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.types import TypeDecorator
from web3 import Web3

from userop_indexer.constants import UINT256_DIGITS
from userop_indexer.helpers.config import check_db_connection, logger
from userop_indexer.models import PersistOutcome, PersistResult, UserOperationEvent


class Uint256(TypeDecorator):
    """
    Exact uint256 column: NUMERIC(78, 0) on PostgreSQL, decimal text elsewhere
    (SQLite would round large NUMERIC values through a float).
    """

    impl = Numeric(UINT256_DIGITS, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0))
        return dialect.type_descriptor(String(UINT256_DIGITS))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if dialect.name == "postgresql":
            return Decimal(int(value))
        return str(int(value))

    def process_result_value(self, value, dialect):
        return None if value is None else int(value)


metadata = MetaData()

user_operation_events = Table(
    "user_operation_events",
    metadata,
    Column(
        "id", BigInteger().with_variant(Integer, "sqlite"), primary_key=True
    ),
    Column("user_op_hash", String(66), nullable=False),
    Column("sender", String(42), nullable=False),
    Column("paymaster", String(42), nullable=False),
    # decimal text, uint256 does not fit any native integer column
    Column("nonce", String(UINT256_DIGITS), nullable=False),
    Column("success", Boolean, nullable=False),
    Column("actual_gas_cost", Uint256, nullable=False),
    Column("actual_gas_used", Uint256, nullable=False),
    Column("block_number", BigInteger, nullable=False),
    Column("transaction_hash", String(66), nullable=False, default=""),
    Column("log_index", Integer, nullable=False, default=0),
    Column(
        "created_at", DateTime(timezone=True), nullable=False, server_default=func.now()
    ),
    UniqueConstraint("user_op_hash", "nonce", name="uq_user_op_hash_nonce"),
    Index("ix_user_operation_events_sender", "sender"),
    Index("ix_user_operation_events_paymaster", "paymaster"),
    Index("ix_user_operation_events_block_number", "block_number"),
)

ingestion_checkpoints = Table(
    "ingestion_checkpoints",
    metadata,
    Column("source_id", String(128), primary_key=True),
    Column("block_number", BigInteger, nullable=False),
    Column(
        "updated_at",
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    ),
)


def event_to_row(event: UserOperationEvent) -> dict[str, Any]:
    return {
        "user_op_hash": event.user_op_hash,
        "sender": event.sender,
        "paymaster": event.paymaster,
        "nonce": str(event.nonce),
        "success": event.success,
        "actual_gas_cost": event.actual_gas_cost,
        "actual_gas_used": event.actual_gas_used,
        "block_number": event.block_number,
        "transaction_hash": event.transaction_hash,
        "log_index": event.log_index,
    }


def row_to_event(row: Any) -> UserOperationEvent:
    return UserOperationEvent(
        user_op_hash=row.user_op_hash,
        sender=row.sender,
        paymaster=row.paymaster,
        nonce=int(row.nonce),
        success=bool(row.success),
        actual_gas_cost=row.actual_gas_cost,
        actual_gas_used=row.actual_gas_used,
        block_number=row.block_number,
        transaction_hash=row.transaction_hash,
        log_index=row.log_index,
        created_at=row.created_at,
    )


class Database:
    """
    Class is used to write UserOperationEvents exactly once and to read them back.
    Uniqueness of (user_op_hash, nonce) is enforced by the table, not in memory,
    so concurrent writers and restarts cannot produce duplicates.
    """

    # pylint: disable=too-many-arguments

    def __init__(
        self,
        engine: Engine,
        db_url: str | None = None,
        max_workers: int = 8,
        persist_retries: int = 3,
        retry_delay: float = 0.1,
    ):
        self.engine = engine
        self.db_url = db_url
        self.max_workers = max_workers
        self.persist_retries = persist_retries
        self.retry_delay = retry_delay

    def create_tables(self) -> None:
        """Create the events and checkpoint tables if they do not exist yet."""
        metadata.create_all(self.engine)

    def check_connection(self) -> None:
        """Replace the engine if the database went away, then confirm it answers."""
        engine = check_db_connection(self.engine, self.db_url)
        if engine is not self.engine:
            self.engine.dispose()
            self.engine = engine
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))

    def insert_ignoring_conflicts(self, table: Table):
        """Dialect specific INSERT that supports ON CONFLICT DO NOTHING."""
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            return postgresql_insert(table)
        if dialect == "sqlite":
            return sqlite_insert(table)
        raise ValueError(f"Unsupported database dialect {dialect}.")

    def execute_and_commit(self, statement, params: dict | None = None) -> list:
        """Function writes to the table in its own transaction, returning any RETURNING rows."""
        with self.engine.connect() as connection:
            try:
                result = connection.execute(statement, params or {})
                rows = result.all() if result.returns_rows else []
                connection.commit()
                return rows
            except Exception as e:
                logger.info(f"Error executing and committing query: {e}")
                connection.rollback()
                raise

    def persist_event(self, event: UserOperationEvent) -> PersistResult:
        """
        Atomic conditional insert keyed on (user_op_hash, nonce).
        A pair that is already stored is a no-op reported as ALREADY_EXISTS.
        """
        statement = (
            self.insert_ignoring_conflicts(user_operation_events)
            .values(**event_to_row(event))
            .on_conflict_do_nothing(index_elements=["user_op_hash", "nonce"])
            .returning(user_operation_events.c.id)
        )
        if self.execute_and_commit(statement):
            return PersistResult.INSERTED
        return PersistResult.ALREADY_EXISTS

    def persist_events(self, events: list[UserOperationEvent]) -> list[PersistOutcome]:
        """
        Persist a batch in parallel, one transaction per event.
        Returns once every event is either stored or has exhausted its retries,
        with one outcome per event in input order.
        """
        if not events:
            return []
        workers = max(1, min(self.max_workers, len(events)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(self._persist_with_retry, events))

    def _persist_with_retry(self, event: UserOperationEvent) -> PersistOutcome:
        error: Exception | None = None
        for attempt in range(1, self.persist_retries + 1):
            try:
                return PersistOutcome(event, result=self.persist_event(event))
            except SQLAlchemyError as e:
                error = e
                logger.warning(
                    f"Attempt {attempt}/{self.persist_retries} to persist "
                    f"{event.user_op_hash} (nonce {event.nonce}) failed: {e}"
                )
                if attempt < self.persist_retries:
                    time.sleep(self.retry_delay * attempt)
        return PersistOutcome(event, error=error)

    def get_events(
        self,
        user_op_hash: str | None = None,
        sender: str | None = None,
        paymaster: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
        success: bool | None = None,
        limit: int | None = None,
    ) -> list[UserOperationEvent]:
        """
        Read-only access for operators. All given filters must match,
        results are ordered by block and log index.
        """
        query = (
            select(user_operation_events)
            .where(
                *self._filters(
                    user_op_hash, sender, paymaster, from_block, to_block, success
                )
            )
            .order_by(
                user_operation_events.c.block_number, user_operation_events.c.log_index
            )
        )
        if limit is not None:
            query = query.limit(limit)
        with self.engine.connect() as connection:
            return [row_to_event(row) for row in connection.execute(query)]

    def count_events(self, **filters: Any) -> int:
        """Number of stored events matching the same filters as get_events."""
        query = (
            select(func.count())
            .select_from(user_operation_events)
            .where(*self._filters(**filters))
        )
        with self.engine.connect() as connection:
            return int(connection.execute(query).scalar_one())

    @staticmethod
    def _filters(
        user_op_hash: str | None = None,
        sender: str | None = None,
        paymaster: str | None = None,
        from_block: int | None = None,
        to_block: int | None = None,
        success: bool | None = None,
    ) -> list:
        columns = user_operation_events.c
        conditions = []
        if user_op_hash is not None:
            conditions.append(columns.user_op_hash == user_op_hash.lower())
        if sender is not None:
            conditions.append(columns.sender == Web3.to_checksum_address(sender))
        if paymaster is not None:
            conditions.append(columns.paymaster == Web3.to_checksum_address(paymaster))
        if from_block is not None:
            conditions.append(columns.block_number >= from_block)
        if to_block is not None:
            conditions.append(columns.block_number <= to_block)
        if success is not None:
            conditions.append(columns.success == success)
        return conditions
