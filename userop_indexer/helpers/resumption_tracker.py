from sqlalchemy import func, select

from userop_indexer.exceptions import CheckpointRegression
from userop_indexer.helpers.config import logger
from userop_indexer.helpers.database import Database, ingestion_checkpoints


class ResumptionTracker:
    """
    Class keeps the last fully processed block of one ingestion stream.
    The stored value only moves forward, except through an explicit reset.
    """

    def __init__(self, database: Database, source_id: str):
        self.database = database
        self.source_id = source_id

    def load(self) -> int | None:
        """Return the checkpoint, or None if this stream never committed one."""
        query = select(ingestion_checkpoints.c.block_number).where(
            ingestion_checkpoints.c.source_id == self.source_id
        )
        with self.database.engine.connect() as connection:
            return connection.execute(query).scalar_one_or_none()

    def commit(self, block_number: int) -> None:
        """
        Durably advance the checkpoint to block_number.
        Only call this once every event up to block_number is persisted.
        A value lower than the stored one is rejected with CheckpointRegression.
        """
        table = ingestion_checkpoints
        statement = self.database.insert_ignoring_conflicts(table).values(
            source_id=self.source_id, block_number=block_number
        )
        statement = statement.on_conflict_do_update(
            index_elements=["source_id"],
            set_={
                "block_number": statement.excluded.block_number,
                "updated_at": func.now(),
            },
            where=table.c.block_number <= statement.excluded.block_number,
        ).returning(table.c.block_number)
        if self.database.execute_and_commit(statement):
            return
        stored = self.load()
        raise CheckpointRegression(
            f"Refusing to move checkpoint of {self.source_id} "
            f"back from {stored} to {block_number}.",
            stored=stored if stored is not None else -1,
            attempted=block_number,
        )

    def reset(self, block_number: int) -> None:
        """Operator override: set the checkpoint to any value, including a lower one."""
        table = ingestion_checkpoints
        statement = self.database.insert_ignoring_conflicts(table).values(
            source_id=self.source_id, block_number=block_number
        )
        statement = statement.on_conflict_do_update(
            index_elements=["source_id"],
            set_={
                "block_number": statement.excluded.block_number,
                "updated_at": func.now(),
            },
        )
        self.database.execute_and_commit(statement)
        logger.warning(f"Checkpoint of {self.source_id} reset to block {block_number}.")
