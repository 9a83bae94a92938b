from eth_abi import encode
import pytest
from sqlalchemy import create_engine

from userop_indexer.constants import (
    ENTRY_POINT_ADDRESS,
    USER_OPERATION_EVENT_DATA_TYPES,
    USER_OPERATION_EVENT_TOPIC,
)
from userop_indexer.helpers.database import Database
from userop_indexer.models import RawLog

SENDER = "0x8ba1f109551bd432803012645ac136ddd64dba72"
PAYMASTER = "0x0000000000000039cd5e8ae05257ce51c473ddd1"


def address_topic(address: str) -> str:
    return "0x" + "00" * 12 + address[2:].lower()


def make_raw_log(
    block_number: int | None = 100,
    log_index: int = 0,
    user_op_hash: str | None = None,
    sender: str = SENDER,
    paymaster: str = PAYMASTER,
    nonce: int = 5,
    success: bool = True,
    actual_gas_cost: int = 123_456_789_000_000,
    actual_gas_used: int = 98_765,
) -> RawLog:
    """Build a well formed UserOperationEvent log, unique per (block, log index) by default."""
    if user_op_hash is None:
        user_op_hash = "0x" + f"{block_number or 0:032x}{log_index:032x}"
    data = encode(
        USER_OPERATION_EVENT_DATA_TYPES,
        [nonce, success, actual_gas_cost, actual_gas_used],
    )
    return RawLog(
        address=ENTRY_POINT_ADDRESS.lower(),
        topics=(
            USER_OPERATION_EVENT_TOPIC,
            user_op_hash,
            address_topic(sender),
            address_topic(paymaster),
        ),
        data="0x" + data.hex(),
        block_number=block_number,
        transaction_hash="0x" + f"{block_number or 0:064x}",
        log_index=log_index,
    )


@pytest.fixture()
def make_log():
    return make_raw_log


@pytest.fixture()
def database(tmp_path) -> Database:
    engine = create_engine(f"sqlite:///{tmp_path / 'userop_indexer.db'}")
    db = Database(engine, max_workers=4, persist_retries=3, retry_delay=0)
    db.create_tables()
    yield db
    engine.dispose()
