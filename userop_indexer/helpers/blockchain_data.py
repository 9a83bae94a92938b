import threading
from collections.abc import Iterable, Iterator
from typing import Any

from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import Web3Exception
from web3.types import FilterParams

from userop_indexer.constants import (
    ENTRY_POINT_ADDRESS,
    MAX_BLOCK_SPAN,
    USER_OPERATION_EVENT_TOPIC,
)
from userop_indexer.exceptions import RangeQueryFailed, RangeTooLarge, SourceDisconnected
from userop_indexer.helpers.config import logger
from userop_indexer.helpers.helper_functions import to_hex
from userop_indexer.models import RawLog

# Errors raised by web3 and its HTTP transport when the node misbehaves or is unreachable
NODE_ERRORS = (Web3Exception, RequestException, OSError, ValueError)


class ChainEventSource:
    """
    Class provides UserOperationEvent logs of a single EntryPoint contract,
    either for a bounded block range or as a live subscription.
    Logs from any other address or with any other topic0 are never returned.
    """

    # pylint: disable=too-many-arguments

    def __init__(
        self,
        web3: Web3,
        address: str = ENTRY_POINT_ADDRESS,
        topic: str = USER_OPERATION_EVENT_TOPIC,
        max_span: int = MAX_BLOCK_SPAN,
        poll_interval: float = 2.0,
        stop_event: threading.Event | None = None,
    ):
        self.web3 = web3
        self.address = Web3.to_checksum_address(address)
        self.topic = topic.lower()
        self.max_span = max_span
        self.poll_interval = poll_interval
        self.stop_event = stop_event or threading.Event()
        self._active_filter: Any = None

    def connect(self) -> int:
        """Confirm the node is reachable and return the current chain height."""
        if not self.is_connected():
            raise SourceDisconnected(f"Node for {self.address} is not reachable.")
        height = self.get_latest_block()
        logger.info("Connected to node. Latest block: %d", height)
        return height

    def is_connected(self) -> bool:
        try:
            return bool(self.web3.is_connected())
        except NODE_ERRORS:
            return False

    def get_latest_block(self) -> int:
        """Returns the current chain height."""
        try:
            return int(self.web3.eth.block_number)
        except NODE_ERRORS as e:
            raise SourceDisconnected(f"Latest block unknown: {e}") from e

    def fetch_range(self, from_block: int, to_block: int) -> list[RawLog]:
        """
        Fetch all matching logs in the inclusive range [from_block, to_block].
        Ranges longer than max_span are refused, never truncated.
        """
        if from_block > to_block:
            raise ValueError(f"from_block {from_block} is after to_block {to_block}.")
        if to_block - from_block + 1 > self.max_span:
            raise RangeTooLarge(
                f"Range [{from_block}, {to_block}] exceeds {self.max_span} blocks.",
                from_block=from_block,
                to_block=to_block,
            )
        params = self._filter_params()
        params["fromBlock"] = from_block
        params["toBlock"] = to_block
        try:
            entries = self.web3.eth.get_logs(params)
        except NODE_ERRORS as e:
            raise RangeQueryFailed(
                f"eth_getLogs failed for [{from_block}, {to_block}]: {e}",
                from_block=from_block,
                to_block=to_block,
            ) from e
        return self._to_raw_logs(entries)

    def subscribe(self) -> Iterator[list[RawLog]]:
        """
        Install a log filter on the node and return a lazy, unbounded sequence
        of new matching logs, one non-empty batch per poll, oldest first.
        The filter exists once this method returns. A filter left over from an
        earlier subscription is released first.
        Connection loss ends the sequence with SourceDisconnected.
        """
        self.close()
        try:
            log_filter = self.web3.eth.filter(self._filter_params())
        except NODE_ERRORS as e:
            raise SourceDisconnected(f"Could not install log filter: {e}") from e
        self._active_filter = log_filter
        logger.info(f"Subscribed to {self.topic} logs of {self.address}.")
        return self._stream(log_filter)

    def _stream(self, log_filter: Any) -> Iterator[list[RawLog]]:
        try:
            while not self.stop_event.is_set():
                try:
                    entries = log_filter.get_new_entries()
                except NODE_ERRORS as e:
                    raise SourceDisconnected(f"Log subscription lost: {e}") from e
                raw_logs = self._to_raw_logs(entries)
                if raw_logs:
                    yield raw_logs
                self.stop_event.wait(self.poll_interval)
        finally:
            self._uninstall(log_filter)

    def close(self) -> None:
        """
        Release the node-side filter, if a subscription is still open.
        Also covers a subscription whose sequence was never iterated.
        """
        if self._active_filter is not None:
            self._uninstall(self._active_filter)

    def _uninstall(self, log_filter: Any) -> None:
        if self._active_filter is not log_filter:
            # already released through close()
            return
        self._active_filter = None
        try:
            self.web3.eth.uninstall_filter(log_filter.filter_id)
        except NODE_ERRORS as e:
            # the node drops filters on its own once the connection is gone
            logger.debug(f"Could not uninstall log filter: {e}")

    def _filter_params(self) -> FilterParams:
        return {"address": self.address, "topics": [self.topic]}

    def _to_raw_logs(self, entries: Iterable[Any]) -> list[RawLog]:
        raw_logs = []
        for entry in entries:
            raw_log = RawLog(
                address=to_hex(entry.get("address", "")),
                topics=tuple(to_hex(topic) for topic in entry.get("topics", [])),
                data=to_hex(entry.get("data", "")),
                block_number=entry.get("blockNumber"),
                transaction_hash=to_hex(entry.get("transactionHash", "")),
                log_index=entry.get("logIndex") or 0,
            )
            if raw_log.address != self.address.lower() or not raw_log.topics:
                continue
            if raw_log.topics[0] != self.topic:
                continue
            raw_logs.append(raw_log)
        raw_logs.sort(key=lambda log: (log.block_number or 0, log.log_index))
        return raw_logs
