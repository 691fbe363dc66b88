"""
TimeSync Backend — Change Journal
===================================

What:  Append-only log of accepted (and overridden) changes, keyed by a
       gapless, strictly increasing sequence number.
How:   Each append advances the `journal_position` row with a compare-and-set
       (UPDATE ... WHERE position = :expected) and inserts the entry with the
       new sequence, all inside the caller's transaction. A concurrent
       transaction that advanced the position first makes the compare fail;
       that surfaces as RevisionConflictError and the whole merge is retried.
Who:   Written by RecordStore.put / record_overridden; read by
       RecordStore.list_since and by the coordinator's watermark check.

`entries_after(cursor)` is the only way deltas are computed. Entries are
immutable, so calling it twice with the same cursor on an unchanged journal
returns identical results.
"""

import logging
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timesync.exceptions import RevisionConflictError
from timesync.models.journal import JournalEntry, JournalPosition

logger = logging.getLogger(__name__)


class ChangeJournal:
    """
    Journal bound to one session (one transaction).

    The position read at the first append is cached for the rest of the
    transaction; later appends compare-and-set against the cached value.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._position: Optional[int] = None

    async def current_position(self) -> int:
        """Last assigned sequence number (0 for an empty journal)."""
        result = await self.session.execute(
            select(JournalPosition.position).where(JournalPosition.id == JournalPosition.ROW_ID)
        )
        position = result.scalar_one_or_none()
        if position is None:
            # Counter row not initialized yet (fresh schema): derive from the entries
            result = await self.session.execute(select(func.max(JournalEntry.sequence)))
            position = result.scalar() or 0
        return position

    async def lock_position(self) -> int:
        """
        Lock the position row for the rest of the transaction and return it.

        Writers take this lock before touching any record row, so two change
        sets that write the same records in opposite orders queue on the
        position row instead of deadlocking on the records. SQLite ignores
        FOR UPDATE; its database lock already serializes writers.
        """
        self._position = await self._read_or_create_position(for_update=True)
        return self._position

    async def append(
        self,
        record_kind: str,
        record_id: str,
        revision: int,
        operation: str,
        client_id: str,
        client_timestamp: int,
        applied: bool = True,
    ) -> int:
        """
        Append one entry and return its sequence number.

        Raises:
            RevisionConflictError: another transaction advanced the journal
                position since this transaction read it.
        """
        if self._position is None:
            self._position = await self._read_or_create_position()

        expected = self._position
        sequence = expected + 1

        result = await self.session.execute(
            update(JournalPosition)
            .where(
                JournalPosition.id == JournalPosition.ROW_ID,
                JournalPosition.position == expected,
            )
            .values(position=sequence)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.debug("Journal position moved past %d; retrying merge", expected)
            raise RevisionConflictError(
                kind="journal", record_id="position", expected_revision=expected
            )

        self.session.add(
            JournalEntry(
                sequence=sequence,
                record_kind=record_kind,
                record_id=record_id,
                revision=revision,
                operation=operation,
                client_id=client_id,
                client_timestamp=client_timestamp,
                applied=applied,
            )
        )
        try:
            await self.session.flush()
        except IntegrityError:
            raise RevisionConflictError(
                kind="journal", record_id="position", expected_revision=expected
            )

        self._position = sequence
        return sequence

    async def entries_after(self, cursor: int) -> List[JournalEntry]:
        """All entries with sequence > cursor, oldest first."""
        result = await self.session.execute(
            select(JournalEntry)
            .where(JournalEntry.sequence > cursor)
            .order_by(JournalEntry.sequence)
        )
        return list(result.scalars().all())

    async def _read_or_create_position(self, for_update: bool = False) -> int:
        query = select(JournalPosition.position).where(JournalPosition.id == JournalPosition.ROW_ID)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        position = result.scalar_one_or_none()
        if position is not None:
            return position

        # First append on a fresh schema. A concurrent creator makes the
        # insert fail on the primary key, which is retried like any other race.
        self.session.add(JournalPosition(id=JournalPosition.ROW_ID, position=0))
        try:
            await self.session.flush()
        except IntegrityError:
            raise RevisionConflictError(
                kind="journal", record_id="position", expected_revision=0
            )
        return 0


async def initialize_position(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """
    Initialize the persisted journal position from the journal itself.

    When:  Once at startup (lifespan).
    How:   Creates the counter row from max(sequence) if it is missing, and
           moves it forward if it lags behind the entries.

    Returns:
        The journal position after initialization.
    """
    async with session_factory() as session:
        async with session.begin():
            result = await session.execute(select(func.max(JournalEntry.sequence)))
            max_sequence = result.scalar() or 0

            row = await session.get(JournalPosition, JournalPosition.ROW_ID)
            if row is None:
                session.add(JournalPosition(id=JournalPosition.ROW_ID, position=max_sequence))
                position = max_sequence
            elif row.position < max_sequence:
                logger.warning(
                    "Journal position %d lags behind max sequence %d; advancing",
                    row.position,
                    max_sequence,
                )
                row.position = max_sequence
                position = max_sequence
            else:
                position = row.position

    logger.info("Change journal at position %d", position)
    return position
