"""
Data types shared by the ingestion pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


@dataclass(frozen=True)
class RawLog:
    """Log entry as delivered by the node, before decoding."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int | None
    transaction_hash: str = ""
    log_index: int = 0


@dataclass(frozen=True)
class UserOperationEvent:
    """Decoded UserOperationEvent emitted by the EntryPoint contract"""

    # pylint: disable=too-many-instance-attributes

    user_op_hash: str
    sender: str
    paymaster: str
    nonce: int
    success: bool
    actual_gas_cost: int
    actual_gas_used: int
    block_number: int
    transaction_hash: str = ""
    log_index: int = 0
    created_at: datetime | None = field(default=None, compare=False)

    def key(self) -> tuple[str, int]:
        """Identity of the operation: a given hash with a given nonce is stored once."""
        return self.user_op_hash, self.nonce


@dataclass(frozen=True)
class BlockRange:
    """Closed block interval [start, end]."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Invalid block range [{self.start}, {self.end}].")

    def __len__(self) -> int:
        return self.end - self.start + 1

    def split(self) -> tuple[BlockRange, BlockRange]:
        """Split the range into two contiguous halves. Needs at least two blocks."""
        if len(self) < 2:
            raise ValueError(f"Cannot split single block range {self}.")
        mid = (self.start + self.end) // 2
        return BlockRange(self.start, mid), BlockRange(mid + 1, self.end)

    def __str__(self) -> str:
        return f"[{self.start}, {self.end}]"


class PersistResult(Enum):
    """Result of a conditional insert"""

    INSERTED = "inserted"
    ALREADY_EXISTS = "already_exists"


@dataclass
class PersistOutcome:
    """Per-item result of a batch write. Exactly one of result and error is set."""

    event: UserOperationEvent
    result: PersistResult | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class DecodeFailure:
    """A log that could not be decoded, with the reason."""

    raw_log: RawLog
    reason: str


@dataclass(kw_only=True)
class BatchReport:
    """Counters for one processed batch of logs."""

    logs: int = 0
    inserted: int = 0
    already_existing: int = 0
    malformed: int = 0
    failed: int = 0

    def add(self, other: BatchReport) -> None:
        self.logs += other.logs
        self.inserted += other.inserted
        self.already_existing += other.already_existing
        self.malformed += other.malformed
        self.failed += other.failed
