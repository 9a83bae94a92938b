"""Narrow interfaces the ReconnectSupervisor depends on.

Production implementations are ChainEventSource, Database and ResumptionTracker.
Tests substitute in-memory fakes.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol, runtime_checkable

from userop_indexer.models import PersistOutcome, RawLog, UserOperationEvent


@runtime_checkable
class EventSource(Protocol):
    """Provider of raw UserOperationEvent logs for one contract and topic."""

    def connect(self) -> int:
        """Confirm the node is reachable and return the chain height."""
        ...

    def is_connected(self) -> bool: ...

    def get_latest_block(self) -> int: ...

    def fetch_range(self, from_block: int, to_block: int) -> list[RawLog]:
        """Return all matching logs of the inclusive range, oldest first."""
        ...

    def subscribe(self) -> Iterator[list[RawLog]]:
        """
        Establish a live subscription and return the lazy sequence of new logs,
        delivered in non-empty batches, oldest first.
        The subscription must exist when this returns.
        """
        ...

    def close(self) -> None:
        """Release any open subscription, started or not."""
        ...


@runtime_checkable
class EventPersister(Protocol):
    """Idempotent sink for decoded events."""

    def check_connection(self) -> None: ...

    def create_tables(self) -> None:
        """Create the storage schema if it does not exist yet."""
        ...

    def persist_events(self, events: list[UserOperationEvent]) -> list[PersistOutcome]:
        """Persist every event, returning one outcome per event once all are done."""
        ...


@runtime_checkable
class CheckpointStore(Protocol):
    """Monotonic store of the last processed block."""

    def load(self) -> int | None: ...

    def commit(self, block_number: int) -> None: ...
