"""
Decoding of raw EntryPoint logs into UserOperationEvent records.

Layout of a UserOperationEvent log:

    topics[0]  keccak("UserOperationEvent(bytes32,address,address,uint256,bool,uint256,uint256)")
    topics[1]  userOpHash (bytes32)
    topics[2]  sender (address, left padded to 32 bytes)
    topics[3]  paymaster (address, left padded to 32 bytes)
    data       nonce (uint256) | success (bool) | actualGasCost (uint256) | actualGasUsed (uint256)

Decoding is pure: the same log always yields the same record. Anything that does
not match this layout raises MalformedEvent.
"""

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3 import Web3

from userop_indexer.constants import (
    USER_OPERATION_EVENT_DATA_TYPES,
    USER_OPERATION_EVENT_TOPIC,
    USER_OPERATION_EVENT_TOPIC_COUNT,
    WORD_SIZE,
)
from userop_indexer.exceptions import MalformedEvent
from userop_indexer.helpers.config import logger
from userop_indexer.models import DecodeFailure, RawLog, UserOperationEvent

ADDRESS_PADDING = b"\x00" * 12


def _word(value: str, what: str) -> bytes:
    """Parse a hex string that must hold exactly one 32 byte word."""
    try:
        raw = bytes(HexBytes(value))
    except (TypeError, ValueError) as e:
        raise MalformedEvent(f"{what} is not valid hex: {value!r}") from e
    if len(raw) != WORD_SIZE:
        raise MalformedEvent(f"{what} has {len(raw)} bytes, expected {WORD_SIZE}.")
    return raw


def _address_from_topic(value: str, what: str) -> str:
    raw = _word(value, what)
    if raw[:12] != ADDRESS_PADDING:
        raise MalformedEvent(f"{what} is not a left padded address: {value}")
    return Web3.to_checksum_address("0x" + raw[12:].hex())


def decode_user_operation_event(raw_log: RawLog) -> UserOperationEvent:
    """Decode a single log. Raises MalformedEvent on any layout mismatch."""
    topics = raw_log.topics
    if len(topics) != USER_OPERATION_EVENT_TOPIC_COUNT:
        raise MalformedEvent(
            f"Invalid number of topics: {len(topics)}, "
            f"expected {USER_OPERATION_EVENT_TOPIC_COUNT}."
        )
    if "0x" + _word(topics[0], "topic0").hex() != USER_OPERATION_EVENT_TOPIC:
        raise MalformedEvent(f"Unexpected topic0 {topics[0]}.")
    if raw_log.block_number is None:
        raise MalformedEvent("Log has no block number (pending log).")

    user_op_hash = "0x" + _word(topics[1], "userOpHash").hex()
    sender = _address_from_topic(topics[2], "sender")
    paymaster = _address_from_topic(topics[3], "paymaster")

    try:
        data = bytes(HexBytes(raw_log.data))
    except (TypeError, ValueError) as e:
        raise MalformedEvent(f"Log data is not valid hex: {raw_log.data!r}") from e
    expected_length = WORD_SIZE * len(USER_OPERATION_EVENT_DATA_TYPES)
    if len(data) != expected_length:
        raise MalformedEvent(
            f"Unexpected data length: {len(data)}, expected {expected_length}."
        )

    try:
        nonce, success, actual_gas_cost, actual_gas_used = decode(
            USER_OPERATION_EVENT_DATA_TYPES, data
        )
    except DecodingError as e:
        raise MalformedEvent(f"Log data cannot be decoded: {e}") from e

    return UserOperationEvent(
        user_op_hash=user_op_hash,
        sender=sender,
        paymaster=paymaster,
        nonce=nonce,
        success=success,
        actual_gas_cost=actual_gas_cost,
        actual_gas_used=actual_gas_used,
        block_number=raw_log.block_number,
        transaction_hash=raw_log.transaction_hash,
        log_index=raw_log.log_index,
    )


def decode_logs(
    raw_logs: list[RawLog],
) -> tuple[list[UserOperationEvent], list[DecodeFailure]]:
    """
    Decode a batch of logs. Malformed logs are reported and skipped,
    the remainder of the batch is still decoded.
    """
    events: list[UserOperationEvent] = []
    failures: list[DecodeFailure] = []
    for raw_log in raw_logs:
        try:
            events.append(decode_user_operation_event(raw_log))
        except MalformedEvent as e:
            logger.warning(
                f"Skipping malformed log {raw_log.transaction_hash}:{raw_log.log_index} "
                f"in block {raw_log.block_number}: {e}"
            )
            failures.append(DecodeFailure(raw_log, str(e)))
    return events, failures
