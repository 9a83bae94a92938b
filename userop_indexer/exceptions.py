"""Exceptions raised by the ingestion pipeline"""


class SourceDisconnected(Exception):
    """This exception signals that the connection to the node was lost.
    It is transient and should result in a reconnect with backoff.
    """


class RangeTooLarge(Exception):
    """This exception signals a log query over more blocks than the source allows.
    The range is never truncated silently, the caller has to chunk it.
    """

    def __init__(self, message: str, /, from_block: int, to_block: int) -> None:
        super().__init__(message)
        self.from_block = from_block
        self.to_block = to_block


class RangeQueryFailed(Exception):
    """This exception signals that the node failed to answer a bounded log query.
    The range should be re-chunked or retried later.
    """

    def __init__(self, message: str, /, from_block: int, to_block: int) -> None:
        super().__init__(message)
        self.from_block = from_block
        self.to_block = to_block


class MalformedEvent(Exception):
    """This exception signals a log that does not have the layout of a UserOperationEvent.
    It is permanent for that log, which is reported and skipped.
    """


class CheckpointRegression(Exception):
    """This exception signals an attempt to move the checkpoint backwards.
    The write is rejected. It indicates a logic bug if it ever occurs.
    """

    def __init__(self, message: str, /, stored: int, attempted: int) -> None:
        super().__init__(message)
        self.stored = stored
        self.attempted = attempted


class PersistFailed(Exception):
    """This exception signals that some events of a block range could not be written.
    The checkpoint must not advance past that range, so it is retried on the next connect.
    """

    def __init__(self, message: str, /, failed: int) -> None:
        super().__init__(message)
        self.failed = failed
