"""Block range planning for historical backfill.

All ranges are inclusive on both ends.
"""

from collections.abc import Iterator

from userop_indexer.models import BlockRange


def plan(start_block: int, current_height: int, max_span: int) -> Iterator[BlockRange]:
    """
    Lazily yield contiguous, non-overlapping ranges of at most max_span blocks
    covering [start_block, current_height], oldest first.

    Nothing is yielded when start_block > current_height.
    """
    if max_span < 1:
        raise ValueError(f"max_span must be positive, got {max_span}.")
    block = start_block
    while block <= current_height:
        end = min(current_height, block + max_span - 1)
        yield BlockRange(block, end)
        block = end + 1
