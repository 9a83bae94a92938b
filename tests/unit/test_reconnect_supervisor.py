import threading
from dataclasses import replace
from unittest.mock import Mock, PropertyMock

import pytest
from requests.exceptions import ConnectionError as RequestsConnectionError
from sqlalchemy import create_engine, inspect, select
from sqlalchemy.exc import OperationalError

from userop_indexer.exceptions import RangeQueryFailed, SourceDisconnected
from userop_indexer.helpers.blockchain_data import ChainEventSource
from userop_indexer.helpers.database import Database, user_operation_events
from userop_indexer.helpers.resumption_tracker import ResumptionTracker
from userop_indexer.interfaces import EventSource
from userop_indexer.models import RawLog
from userop_indexer.reconnect_supervisor import ReconnectSupervisor, SupervisorState

SOURCE_ID = "test:0x0000000071727de22e5e9d8baf0edac6f37da032"


class Mined:
    """Script step: a log is mined but not delivered on the live stream."""

    def __init__(self, raw_log: RawLog):
        self.raw_log = raw_log


class FakeChainSource:
    """
    In-memory chain. Each call to subscribe() consumes one scripted subscription:
    (logs mined while subscribing, stream steps). A stream step is a RawLog or a list
    of RawLogs that is mined and delivered as one batch, a Mined log, or an exception
    that ends the stream. After the last step of the last subscription the stop event
    is set. With stop_after_batches, the stop event is set as that batch is delivered.
    """

    def __init__(self, stop_event, logs=(), subscriptions=(), height=None):
        self.stop_event = stop_event
        self.logs: list[RawLog] = []
        self.height = 0
        for raw_log in logs:
            self.mine(raw_log)
        if height is not None:
            self.height = height
        self.subscriptions = list(subscriptions)
        self.fetched: list[tuple[int, int]] = []
        self.failing_ranges: set[tuple[int, int]] = set()
        self.fail_connects = 0
        self.stop_after_fetches: int | None = None
        self.stop_after_batches: int | None = None
        self.delivered: list[RawLog] = []
        self.batches = 0
        self.closed = False

    def mine(self, raw_log: RawLog) -> None:
        if raw_log not in self.logs:
            self.logs.append(raw_log)
        self.height = max(self.height, raw_log.block_number)

    def connect(self) -> int:
        if self.fail_connects:
            self.fail_connects -= 1
            raise SourceDisconnected("connection refused")
        return self.height

    def is_connected(self) -> bool:
        return True

    def get_latest_block(self) -> int:
        return self.height

    def fetch_range(self, from_block: int, to_block: int) -> list[RawLog]:
        self.fetched.append((from_block, to_block))
        if self.stop_after_fetches is not None and len(self.fetched) >= self.stop_after_fetches:
            self.stop_event.set()
        if (from_block, to_block) in self.failing_ranges:
            raise RangeQueryFailed("query timeout", from_block=from_block, to_block=to_block)
        matching = [log for log in self.logs if from_block <= log.block_number <= to_block]
        return sorted(matching, key=lambda log: (log.block_number, log.log_index))

    def subscribe(self):
        if not self.subscriptions:
            self.stop_event.set()
            return iter(())
        mined_on_subscribe, steps = self.subscriptions.pop(0)
        for raw_log in mined_on_subscribe:
            self.mine(raw_log)
        return self._stream(steps)

    def _stream(self, steps):
        for step in steps:
            if isinstance(step, Exception):
                raise step
            if isinstance(step, Mined):
                self.mine(step.raw_log)
                continue
            batch = step if isinstance(step, list) else [step]
            for raw_log in batch:
                self.mine(raw_log)
            self.delivered.extend(batch)
            self.batches += 1
            if self.batches == self.stop_after_batches:
                self.stop_event.set()
            yield batch
        if not self.subscriptions:
            self.stop_event.set()

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def stop_event():
    return threading.Event()


@pytest.fixture()
def tracker(database):
    return ResumptionTracker(database, SOURCE_ID)


@pytest.fixture()
def make_supervisor(database, tracker, stop_event):
    def _make(source, start_block=100, max_span=2):
        return ReconnectSupervisor(
            source,
            database,
            tracker,
            start_block=start_block,
            max_span=max_span,
            base_delay=0,
            max_delay=0,
            jitter=0,
            stop_event=stop_event,
        )

    return _make


def stored_blocks(database) -> list[int]:
    query = select(user_operation_events.c.block_number).order_by(
        user_operation_events.c.block_number
    )
    with database.engine.connect() as conn:
        return list(conn.execute(query).scalars())


def advance(supervisor) -> SupervisorState:
    supervisor.state = supervisor.step()
    return supervisor.state


def test_fake_source_satisfies_interface(stop_event):
    assert isinstance(FakeChainSource(stop_event), EventSource)


def test_backfill_then_tail(make_log, make_supervisor, database, tracker, stop_event):
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=b) for b in range(100, 104)],
        subscriptions=[((), [])],
    )
    supervisor = make_supervisor(source)

    supervisor.run()

    assert source.fetched == [(100, 101), (102, 103)]
    assert tracker.load() == 103
    assert stored_blocks(database) == [100, 101, 102, 103]
    assert supervisor.state is SupervisorState.STOPPED
    assert source.closed


def test_reconnect_closes_gaps_without_duplicates(
    make_log, make_supervisor, database, tracker, stop_event
):
    logs = {b: make_log(block_number=b) for b in range(100, 109)}
    source = FakeChainSource(
        stop_event,
        logs=[logs[b] for b in range(100, 104)],
        subscriptions=[
            ((), [logs[104], logs[105], Mined(logs[106]), SourceDisconnected("socket closed")]),
            # 107 is mined while subscribing: seen by the gap pass and again live
            ((logs[107],), [logs[107], logs[108]]),
        ],
    )
    supervisor = make_supervisor(source)

    supervisor.run()

    assert source.fetched == [(100, 101), (102, 103), (105, 106), (107, 107)]
    assert stored_blocks(database) == list(range(100, 109))
    assert tracker.load() == 107
    assert supervisor.totals.inserted == 9
    assert supervisor.totals.already_existing == 2
    assert supervisor.attempt == 0


def test_live_log_commits_previous_block(make_log, make_supervisor, tracker, stop_event):
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=100)],
        subscriptions=[
            ((), [make_log(block_number=101), make_log(block_number=105, log_index=1)]),
        ],
    )
    supervisor = make_supervisor(source)

    supervisor.run()

    # block 105 may still have logs in flight, so only 104 is known complete
    assert tracker.load() == 104
    assert supervisor.next_block == 105


def test_malformed_log_is_skipped(make_log, make_supervisor, database, tracker, stop_event):
    malformed = replace(make_log(block_number=101), data="0x")
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=100), malformed, make_log(block_number=102)],
        subscriptions=[((), [])],
    )
    supervisor = make_supervisor(source, max_span=10)

    supervisor.run()

    assert stored_blocks(database) == [100, 102]
    assert tracker.load() == 102
    assert supervisor.totals.malformed == 1


def test_persist_failure_keeps_checkpoint(make_log, make_supervisor, database, tracker, stop_event):
    source = FakeChainSource(stop_event, logs=[make_log(block_number=100)])
    supervisor = make_supervisor(source)

    def broken_persist(event):
        raise OperationalError("INSERT", {}, Exception("disk full"))

    database.persist_event = broken_persist

    assert advance(supervisor) is SupervisorState.CONNECTING
    assert advance(supervisor) is SupervisorState.BACKFILLING
    assert advance(supervisor) is SupervisorState.DISCONNECTED
    assert supervisor.attempt == 1
    assert tracker.load() is None
    assert stored_blocks(database) == []


def test_connect_failures_are_retried(make_log, make_supervisor, stop_event):
    source = FakeChainSource(stop_event, logs=[make_log(block_number=100)])
    source.fail_connects = 2
    supervisor = make_supervisor(source)

    states = [advance(supervisor) for _ in range(7)]

    assert states == [
        SupervisorState.CONNECTING,
        SupervisorState.DISCONNECTED,
        SupervisorState.CONNECTING,
        SupervisorState.DISCONNECTED,
        SupervisorState.CONNECTING,
        SupervisorState.BACKFILLING,
        SupervisorState.LIVE_TAILING,
    ]
    assert supervisor.attempt == 0


def test_failed_range_is_split(make_log, make_supervisor, database, tracker, stop_event):
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=b) for b in range(100, 104)],
        subscriptions=[((), [])],
    )
    source.failing_ranges.add((100, 103))
    supervisor = make_supervisor(source, max_span=4)

    supervisor.run()

    assert source.fetched == [(100, 103), (100, 101), (102, 103)]
    assert stored_blocks(database) == [100, 101, 102, 103]
    assert tracker.load() == 103


def test_single_block_failure_disconnects(make_log, make_supervisor, tracker, stop_event):
    source = FakeChainSource(stop_event, logs=[make_log(block_number=100)])
    source.failing_ranges.add((100, 100))
    supervisor = make_supervisor(source)
    supervisor.state = SupervisorState.BACKFILLING

    assert advance(supervisor) is SupervisorState.DISCONNECTED
    assert supervisor.attempt == 1
    assert tracker.load() is None


def test_checkpoint_overrides_start_block(make_log, make_supervisor, tracker, stop_event):
    tracker.commit(101)
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=b) for b in range(100, 104)],
        subscriptions=[((), [])],
    )
    supervisor = make_supervisor(source, start_block=50)

    supervisor.run()

    assert source.fetched == [(102, 103)]
    assert tracker.load() == 103


def test_without_start_block_begins_at_chain_head(make_log, make_supervisor, stop_event):
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=b) for b in range(100, 104)],
        subscriptions=[((), [])],
    )
    supervisor = make_supervisor(source, start_block=None)

    supervisor.run()

    assert source.fetched == [(103, 103)]


def test_stop_between_ranges(make_log, make_supervisor, tracker, stop_event):
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=b) for b in range(100, 106)],
    )
    source.stop_after_fetches = 1
    supervisor = make_supervisor(source)

    supervisor.run()

    # the range in flight is finished and committed before stopping
    assert source.fetched == [(100, 101)]
    assert tracker.load() == 101
    assert supervisor.state is SupervisorState.STOPPED
    assert source.closed


def test_stop_before_start(make_supervisor, stop_event):
    source = FakeChainSource(stop_event)
    supervisor = make_supervisor(source)
    supervisor.stop()

    supervisor.run()

    assert source.fetched == []
    assert source.closed


def test_stop_during_live_tail(make_log, make_supervisor, database, tracker, stop_event):
    first = make_log(block_number=103)
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=100)],
        subscriptions=[
            ((), [first, make_log(block_number=104), make_log(block_number=105)]),
        ],
    )
    source.stop_after_batches = 1
    supervisor = make_supervisor(source)

    supervisor.run()

    # the batch in flight is persisted and its checkpoint committed before stopping
    assert supervisor.state is SupervisorState.STOPPED
    assert stored_blocks(database) == [100, 103]
    assert tracker.load() == 102
    assert source.delivered == [first]
    assert source.closed


def test_live_batch_is_persisted_together(make_log, make_supervisor, database, tracker, stop_event):
    batch = [
        make_log(block_number=101, log_index=0),
        make_log(block_number=101, log_index=1),
        make_log(block_number=102, log_index=0),
    ]
    source = FakeChainSource(
        stop_event,
        logs=[make_log(block_number=100)],
        subscriptions=[((), [batch])],
    )
    supervisor = make_supervisor(source)
    persist_events = database.persist_events
    batch_sizes = []

    def counting_persist(events):
        batch_sizes.append(len(events))
        return persist_events(events)

    database.persist_events = counting_persist

    supervisor.run()

    assert batch_sizes == [1, 3]
    assert stored_blocks(database) == [100, 101, 101, 102]
    assert tracker.load() == 101


def test_live_tail_failure_releases_filter(make_supervisor):
    web3 = Mock()
    web3.eth.filter.side_effect = [Mock(filter_id="0xa"), Mock(filter_id="0xb")]
    type(web3.eth).block_number = PropertyMock(
        side_effect=RequestsConnectionError("node restarting")
    )
    supervisor = make_supervisor(ChainEventSource(web3, poll_interval=0))

    for _ in range(2):
        supervisor.state = SupervisorState.LIVE_TAILING
        assert advance(supervisor) is SupervisorState.DISCONNECTED

    released = [call.args[0] for call in web3.eth.uninstall_filter.call_args_list]
    assert released == ["0xa", "0xb"]


def test_tables_created_on_connect(tmp_path, make_log, stop_event):
    engine = create_engine(f"sqlite:///{tmp_path / 'fresh.db'}")
    fresh = Database(engine, retry_delay=0)
    source = FakeChainSource(stop_event, logs=[make_log(block_number=100)])
    supervisor = ReconnectSupervisor(
        source,
        fresh,
        ResumptionTracker(fresh, SOURCE_ID),
        start_block=100,
        base_delay=0,
        max_delay=0,
        jitter=0,
        stop_event=stop_event,
    )

    assert advance(supervisor) is SupervisorState.CONNECTING
    assert advance(supervisor) is SupervisorState.BACKFILLING

    tables = set(inspect(fresh.engine).get_table_names())
    assert {"user_operation_events", "ingestion_checkpoints"} <= tables
    engine.dispose()


def test_database_down_on_connect_backs_off(make_log, make_supervisor, database, stop_event):
    source = FakeChainSource(stop_event, logs=[make_log(block_number=100)])
    supervisor = make_supervisor(source)

    def unreachable():
        raise OperationalError("CREATE TABLE", {}, Exception("connection refused"))

    database.create_tables = unreachable
    supervisor.state = SupervisorState.CONNECTING

    assert advance(supervisor) is SupervisorState.DISCONNECTED
    assert supervisor.attempt == 1
