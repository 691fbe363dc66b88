"""
TimeSync Backend — Record Store Tests
=======================================

What we test:
    ✅ put inserts at revision 1 and increments by exactly one per write
    ✅ Every put journals exactly one entry with the new revision
    ✅ Compare-and-set failures raise RevisionConflictError
    ✅ get raises NotFoundError; tombstones stay readable
    ✅ list_since deduplicates per record and flags create/update/delete
"""

from unittest.mock import MagicMock

import pytest

from timesync.exceptions import NotFoundError, RevisionConflictError, ValidationError
from timesync.schemas.sync import Operation
from timesync.services.change_journal import ChangeJournal
from timesync.services.record_store import RecordStore, RecordWrite, model_for, to_record_out


def _write(record_id="p1", operation=Operation.CREATE, deleted=False, timestamp=1_000, **fields):
    return RecordWrite(
        kind="project",
        record_id=record_id,
        operation=operation,
        client_id="client-a",
        client_timestamp=timestamp,
        deleted=deleted,
        fields=fields or {"name": "Website", "color": "#ff0000"},
    )


class TestPut:

    @pytest.mark.asyncio
    async def test_insert_starts_at_revision_one(self, db_session):
        store = RecordStore(db_session)
        record = await store.put(_write(), expected_revision=0)
        await db_session.commit()

        assert record.revision == 1
        assert record.deleted is False
        assert record.modified_by == "client-a"
        assert record.domain_values() == {"name": "Website", "color": "#ff0000"}

    @pytest.mark.asyncio
    async def test_revision_counts_accepted_mutations(self, db_session):
        store = RecordStore(db_session)
        await store.put(_write(), expected_revision=0)
        for revision in range(1, 5):
            record = await store.put(
                _write(operation=Operation.UPDATE, name=f"Website v{revision}", color="#00ff00"),
                expected_revision=revision,
            )
        await db_session.commit()

        assert record.revision == 5
        assert record.name == "Website v4"

    @pytest.mark.asyncio
    async def test_every_put_journals_one_entry(self, db_session):
        store = RecordStore(db_session)
        await store.put(_write(), expected_revision=0)
        await store.put(_write(operation=Operation.DELETE, deleted=True), expected_revision=1)
        await db_session.commit()

        entries = await ChangeJournal(db_session).entries_after(0)
        assert [(e.sequence, e.revision, e.operation, e.applied) for e in entries] == [
            (1, 1, "create", True),
            (2, 2, "delete", True),
        ]

    @pytest.mark.asyncio
    async def test_stale_expected_revision_raises(self, db_session):
        store = RecordStore(db_session)
        await store.put(_write(), expected_revision=0)
        await store.put(_write(operation=Operation.UPDATE, name="B"), expected_revision=1)

        with pytest.raises(RevisionConflictError) as exc_info:
            await store.put(_write(operation=Operation.UPDATE, name="C"), expected_revision=1)
        assert exc_info.value.expected_revision == 1

    @pytest.mark.asyncio
    async def test_duplicate_insert_raises(self, session_factory):
        async with session_factory() as session:
            await RecordStore(session).put(_write(), expected_revision=0)
            await session.commit()

        async with session_factory() as session:
            with pytest.raises(RevisionConflictError):
                await RecordStore(session).put(_write(), expected_revision=0)
            await session.rollback()

    @pytest.mark.asyncio
    async def test_compare_and_set_miss_with_mock_session(self, mock_db_session):
        """An UPDATE that touches no rows means someone else moved the revision."""
        mock_db_session.execute.return_value = MagicMock(rowcount=0)
        store = RecordStore(mock_db_session, journal=MagicMock())

        with pytest.raises(RevisionConflictError):
            await store.put(_write(operation=Operation.UPDATE), expected_revision=3)
        store.journal.append.assert_not_called()


class TestGet:

    @pytest.mark.asyncio
    async def test_missing_record_raises_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            await RecordStore(db_session).get("project", "nope")

    @pytest.mark.asyncio
    async def test_find_returns_none(self, db_session):
        assert await RecordStore(db_session).find("time_entry", "nope") is None

    @pytest.mark.asyncio
    async def test_tombstone_is_retained(self, db_session):
        store = RecordStore(db_session)
        await store.put(_write(), expected_revision=0)
        await store.put(_write(operation=Operation.DELETE, deleted=True), expected_revision=1)
        await db_session.commit()

        record = await store.get("project", "p1")
        assert record.deleted is True
        assert record.revision == 2
        assert to_record_out(record).fields["name"] == "Website"

    def test_unknown_kind_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            model_for("invoice")


class TestListSince:

    @pytest.mark.asyncio
    async def test_deduplicates_and_flags_operations(self, db_session):
        store = RecordStore(db_session)
        await store.put(_write("p1"), expected_revision=0)                                        # seq 1
        await store.put(_write("p2"), expected_revision=0)                                        # seq 2
        await store.put(_write("p1", Operation.UPDATE, name="Renamed"), expected_revision=1)       # seq 3
        await store.put(_write("p2", Operation.DELETE, deleted=True), expected_revision=1)         # seq 4
        await db_session.commit()

        delta = [(seq, rec.id, rec.operation, rec.revision) async for seq, rec in store.list_since(0)]

        assert delta == [
            (3, "p1", Operation.CREATE, 2),
            (4, "p2", Operation.DELETE, 2),
        ]

    @pytest.mark.asyncio
    async def test_record_created_before_cursor_is_an_update(self, db_session):
        store = RecordStore(db_session)
        await store.put(_write("p1"), expected_revision=0)
        await store.put(_write("p1", Operation.UPDATE, name="Renamed"), expected_revision=1)
        await db_session.commit()

        delta = [rec async for _, rec in store.list_since(1)]

        assert len(delta) == 1
        assert delta[0].operation == Operation.UPDATE
        assert delta[0].fields["name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_overridden_change_carries_current_state(self, db_session):
        store = RecordStore(db_session)
        await store.put(_write("p1"), expected_revision=0)
        sequence = await store.record_overridden(
            kind="project",
            record_id="p1",
            current_revision=1,
            operation=Operation.UPDATE,
            client_id="client-b",
            client_timestamp=500,
        )
        await db_session.commit()

        delta = [(seq, rec) async for seq, rec in store.list_since(1)]

        assert sequence == 2
        assert len(delta) == 1
        assert delta[0][0] == 2
        assert delta[0][1].revision == 1
        assert delta[0][1].modified_by == "client-a"

    @pytest.mark.asyncio
    async def test_empty_after_head(self, db_session):
        store = RecordStore(db_session)
        await store.put(_write("p1"), expected_revision=0)
        await db_session.commit()

        assert [rec async for _, rec in store.list_since(1)] == []
