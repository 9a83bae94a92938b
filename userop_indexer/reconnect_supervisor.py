"""
Long running ingestion loop for UserOperationEvents.

The supervisor is an explicit state machine:

    DISCONNECTED -> CONNECTING -> BACKFILLING -> LIVE_TAILING
         ^               |              |              |
         +---------------+--------------+--------------+   (on connection level errors)

Every state can move to STOPPED once the stop event is set. The stop event is only
observed between block ranges and between live batches, so a persist followed by
its checkpoint commit always completes.
"""

import threading
from collections.abc import Iterator
from enum import Enum
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from userop_indexer.backfill_planner import plan
from userop_indexer.constants import MAX_BLOCK_SPAN
from userop_indexer.event_decoder import decode_logs
from userop_indexer.exceptions import (
    CheckpointRegression,
    PersistFailed,
    RangeQueryFailed,
    RangeTooLarge,
    SourceDisconnected,
)
from userop_indexer.helpers.config import logger
from userop_indexer.helpers.helper_functions import backoff_delay
from userop_indexer.interfaces import CheckpointStore, EventPersister, EventSource
from userop_indexer.models import BatchReport, BlockRange, PersistResult, RawLog

# Errors that end the current phase and trigger a reconnect
PHASE_ERRORS = (
    SourceDisconnected,
    RangeQueryFailed,
    RangeTooLarge,
    PersistFailed,
    SQLAlchemyError,
)


class SupervisorState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    LIVE_TAILING = "live_tailing"
    STOPPED = "stopped"


class ReconnectSupervisor:
    """Class drives a single ingestion stream from historical backfill into the live tail."""

    # pylint: disable=too-many-instance-attributes, too-many-arguments

    def __init__(
        self,
        source: EventSource,
        database: EventPersister,
        tracker: CheckpointStore,
        start_block: int | None = None,
        max_span: int = MAX_BLOCK_SPAN,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 1.0,
        stop_event: threading.Event | None = None,
    ):
        self.source = source
        self.database = database
        self.tracker = tracker
        self.start_block = start_block
        self.max_span = max_span
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.stop_event = stop_event or threading.Event()

        self.state = SupervisorState.DISCONNECTED
        self.attempt = 0
        self.checkpoint: int | None = None
        # first block that is not yet known to be fully persisted
        self.next_block: int | None = None
        self.totals = BatchReport()
        self._handlers: dict[SupervisorState, Callable[[], SupervisorState]] = {
            SupervisorState.DISCONNECTED: self._on_disconnected,
            SupervisorState.CONNECTING: self._on_connecting,
            SupervisorState.BACKFILLING: self._on_backfilling,
            SupervisorState.LIVE_TAILING: self._on_live_tailing,
            SupervisorState.STOPPED: lambda: SupervisorState.STOPPED,
        }

    def stop(self) -> None:
        """Request a clean shutdown at the next suspension point."""
        self.stop_event.set()

    def run(self) -> None:
        """Run until stopped. Transient errors never end this loop."""
        logger.info("Ingestion supervisor started.")
        try:
            while self.state is not SupervisorState.STOPPED:
                self.state = self.step()
        finally:
            self.source.close()
            logger.info(
                "Ingestion supervisor stopped. Inserted %d events, %d duplicates, "
                "%d malformed logs. Checkpoint: %s",
                self.totals.inserted,
                self.totals.already_existing,
                self.totals.malformed,
                self.checkpoint,
            )

    def step(self) -> SupervisorState:
        """Execute the action of the current state and return the next state."""
        if self.stop_event.is_set():
            return SupervisorState.STOPPED
        try:
            return self._handlers[self.state]()
        except PHASE_ERRORS as e:
            self.attempt += 1
            logger.error(f"Error while {self.state.value}: {e}")
            return SupervisorState.DISCONNECTED

    def _on_disconnected(self) -> SupervisorState:
        delay = backoff_delay(self.attempt, self.base_delay, self.max_delay, self.jitter)
        if delay > 0:
            logger.info(f"Reconnecting in {delay:.1f} seconds (attempt {self.attempt}).")
            if self.stop_event.wait(delay):
                return SupervisorState.STOPPED
        return SupervisorState.CONNECTING

    def _on_connecting(self) -> SupervisorState:
        self.source.connect()
        self.database.check_connection()
        self.database.create_tables()
        return SupervisorState.BACKFILLING

    def _on_backfilling(self) -> SupervisorState:
        height = self.source.get_latest_block()
        self.checkpoint = self.tracker.load()
        if self.checkpoint is not None:
            start = self.checkpoint + 1
        elif self.start_block is not None:
            start = self.start_block
        else:
            logger.warning(
                f"No checkpoint and no start block found. Using latest block {height} instead."
            )
            start = height
        self.next_block = start

        logger.info(f"Backfilling blocks {start} to {height}.")
        self._backfill(start, height)
        if self.stop_event.is_set():
            return SupervisorState.STOPPED
        self.attempt = 0
        return SupervisorState.LIVE_TAILING

    def _on_live_tailing(self) -> SupervisorState:
        live_logs = self.source.subscribe()
        try:
            # blocks mined between the backfill height and the subscription
            height = self.source.get_latest_block()
            if self.next_block is None:
                self.next_block = height + 1
            if self.next_block <= height:
                logger.info(f"Closing gap from block {self.next_block} to {height}.")
                self._backfill(self.next_block, height)
            if self.stop_event.is_set():
                return SupervisorState.STOPPED
            logger.info(f"Listening for new events from block {height + 1}.")
            self._tail(live_logs)
        finally:
            close = getattr(live_logs, "close", None)
            if close is not None:
                close()
            # a sequence that was never iterated does not release its filter
            self.source.close()
        if self.stop_event.is_set():
            return SupervisorState.STOPPED
        raise SourceDisconnected("Live subscription ended.")

    def _backfill(self, start: int, height: int) -> None:
        for block_range in plan(start, height, self.max_span):
            if self.stop_event.is_set():
                return
            self._process_range(block_range)

    def _process_range(self, block_range: BlockRange) -> None:
        """fetch -> decode -> persist -> checkpoint for one range."""
        try:
            raw_logs = self.source.fetch_range(block_range.start, block_range.end)
        except (RangeQueryFailed, RangeTooLarge) as e:
            if len(block_range) < 2 or not self.source.is_connected():
                raise
            logger.warning(f"Splitting block range {block_range} after error: {e}")
            for half in block_range.split():
                if self.stop_event.is_set():
                    return
                self._process_range(half)
            return

        report = self.process_logs(raw_logs)
        self._commit(block_range.end)
        self.next_block = block_range.end + 1
        logger.info(
            "Processed blocks %s: %d logs, %d inserted, %d duplicates, %d malformed.",
            block_range,
            report.logs,
            report.inserted,
            report.already_existing,
            report.malformed,
        )

    def _tail(self, live_logs: Iterator[list[RawLog]]) -> None:
        for batch in live_logs:
            self.process_logs(batch)
            newest = max(
                (log.block_number for log in batch if log.block_number is not None),
                default=None,
            )
            if newest is not None and newest >= (self.next_block or 0):
                # a log of a newer block means all earlier blocks were delivered
                self._commit(newest - 1)
                self.next_block = newest
            if self.stop_event.is_set():
                return

    def process_logs(self, raw_logs: list[RawLog]) -> BatchReport:
        """
        Decode and persist a batch. Malformed logs are skipped.
        Raises PersistFailed if any decoded event could not be stored.
        """
        events, failures = decode_logs(raw_logs)
        outcomes = self.database.persist_events(events)

        report = BatchReport(logs=len(raw_logs), malformed=len(failures))
        for outcome in outcomes:
            if not outcome.ok:
                report.failed += 1
            elif outcome.result is PersistResult.INSERTED:
                report.inserted += 1
            else:
                report.already_existing += 1
        self.totals.add(report)

        if report.failed:
            raise PersistFailed(
                f"{report.failed} of {len(events)} events could not be persisted.",
                failed=report.failed,
            )
        return report

    def _commit(self, block_number: int) -> None:
        if self.checkpoint is not None and block_number <= self.checkpoint:
            return
        try:
            self.tracker.commit(block_number)
            self.checkpoint = block_number
        except CheckpointRegression as e:
            logger.warning(f"Checkpoint not moved: {e}")
            self.checkpoint = e.stored
