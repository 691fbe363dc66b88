"""
TimeSync Backend — Change Journal Tests
=========================================

What we test:
    ✅ Appends get gapless, strictly increasing sequence numbers
    ✅ entries_after is ordered, exclusive of the cursor, and idempotent
    ✅ A lost compare-and-set on the position raises RevisionConflictError
    ✅ lock_position takes a row lock (FOR UPDATE) and seeds later appends
    ✅ initialize_position creates and repairs the counter row
"""

from unittest.mock import MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from timesync.exceptions import RevisionConflictError
from timesync.models.journal import JournalEntry, JournalPosition
from timesync.services.change_journal import ChangeJournal, initialize_position


async def _append(journal: ChangeJournal, record_id: str, revision: int = 1, applied: bool = True) -> int:
    return await journal.append(
        record_kind="time_entry",
        record_id=record_id,
        revision=revision,
        operation="create" if revision == 1 else "update",
        client_id="client-a",
        client_timestamp=1_000 + revision,
        applied=applied,
    )


class TestAppend:

    @pytest.mark.asyncio
    async def test_empty_journal_is_at_zero(self, db_session):
        assert await ChangeJournal(db_session).current_position() == 0

    @pytest.mark.asyncio
    async def test_sequences_are_gapless(self, db_session):
        journal = ChangeJournal(db_session)
        sequences = [await _append(journal, f"t{i}") for i in range(5)]
        await db_session.commit()

        assert sequences == [1, 2, 3, 4, 5]
        assert await journal.current_position() == 5

    @pytest.mark.asyncio
    async def test_sequences_continue_across_transactions(self, session_factory):
        async with session_factory() as session:
            await _append(ChangeJournal(session), "t1")
            await session.commit()

        async with session_factory() as session:
            sequence = await _append(ChangeJournal(session), "t2")
            await session.commit()

        assert sequence == 2

    @pytest.mark.asyncio
    async def test_lost_race_raises_revision_conflict(self, session_factory):
        """A journal whose cached position is stale must not overwrite a newer one."""
        async with session_factory() as session:
            stale = ChangeJournal(session)
            await _append(stale, "t1")
            await session.commit()

        async with session_factory() as session:
            await _append(ChangeJournal(session), "t2")
            await session.commit()

        # `stale` still believes the position is 1
        async with session_factory() as session:
            stale.session = session
            with pytest.raises(RevisionConflictError):
                await _append(stale, "t3")
            await session.rollback()

    @pytest.mark.asyncio
    async def test_rolled_back_append_leaves_no_gap(self, session_factory):
        async with session_factory() as session:
            await _append(ChangeJournal(session), "t1")
            await session.rollback()

        async with session_factory() as session:
            sequence = await _append(ChangeJournal(session), "t2")
            await session.commit()

        assert sequence == 1


class TestLockPosition:

    @pytest.mark.asyncio
    async def test_locks_the_position_row_for_update(self, mock_db_session):
        mock_db_session.execute.return_value = MagicMock(
            scalar_one_or_none=MagicMock(return_value=7)
        )

        assert await ChangeJournal(mock_db_session).lock_position() == 7

        statement = mock_db_session.execute.await_args.args[0]
        assert "FOR UPDATE" in str(statement.compile(dialect=postgresql.dialect()))

    @pytest.mark.asyncio
    async def test_creates_row_on_fresh_schema(self, db_session):
        journal = ChangeJournal(db_session)

        assert await journal.lock_position() == 0
        assert await _append(journal, "t1") == 1
        await db_session.commit()
        assert (await db_session.get(JournalPosition, JournalPosition.ROW_ID)).position == 1

    @pytest.mark.asyncio
    async def test_appends_continue_from_locked_position(self, session_factory):
        async with session_factory() as session:
            await _append(ChangeJournal(session), "t1")
            await session.commit()

        async with session_factory() as session:
            journal = ChangeJournal(session)
            assert await journal.lock_position() == 1
            assert await _append(journal, "t2") == 2
            await session.commit()


class TestEntriesAfter:


    @pytest.mark.asyncio
    async def test_returns_entries_after_cursor_in_order(self, db_session):
        journal = ChangeJournal(db_session)
        for i in range(4):
            await _append(journal, f"t{i}")
        await db_session.commit()

        entries = await journal.entries_after(2)

        assert [e.sequence for e in entries] == [3, 4]
        assert [e.record_id for e in entries] == ["t2", "t3"]

    @pytest.mark.asyncio
    async def test_is_idempotent(self, db_session):
        journal = ChangeJournal(db_session)
        await _append(journal, "t1")
        await _append(journal, "t1", revision=2)
        await _append(journal, "t2", applied=False)
        await db_session.commit()

        first = [(e.sequence, e.record_id, e.revision, e.applied) for e in await journal.entries_after(0)]
        second = [(e.sequence, e.record_id, e.revision, e.applied) for e in await journal.entries_after(0)]

        assert first == second
        assert first[-1] == (3, "t2", 1, False)

    @pytest.mark.asyncio
    async def test_cursor_at_head_is_empty(self, db_session):
        journal = ChangeJournal(db_session)
        await _append(journal, "t1")
        await db_session.commit()

        assert await journal.entries_after(1) == []


class TestInitializePosition:

    @pytest.mark.asyncio
    async def test_creates_row_on_fresh_schema(self, session_factory):
        assert await initialize_position(session_factory) == 0

        async with session_factory() as session:
            row = await session.get(JournalPosition, JournalPosition.ROW_ID)
            assert row is not None
            assert row.position == 0

    @pytest.mark.asyncio
    async def test_repairs_lagging_position(self, session_factory):
        async with session_factory() as session:
            await _append(ChangeJournal(session), "t1")
            await _append(ChangeJournal(session), "t2")
            await session.commit()

        # Simulate a counter that fell behind the persisted entries
        async with session_factory() as session:
            row = await session.get(JournalPosition, JournalPosition.ROW_ID)
            row.position = 0
            await session.commit()

        assert await initialize_position(session_factory) == 2

        async with session_factory() as session:
            sequence = await _append(ChangeJournal(session), "t3")
            await session.commit()
            result = await session.execute(select(JournalEntry.sequence).order_by(JournalEntry.sequence))
            assert list(result.scalars()) == [1, 2, 3]

        assert sequence == 3
