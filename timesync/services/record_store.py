"""
TimeSync Backend — Record Store
=================================

What:  Keyed storage for time entries, projects and categories with
       optimistic concurrency and tombstones.
How:   `put` is a compare-and-set on (id, revision): an INSERT when the
       expected revision is 0, otherwise an UPDATE ... WHERE revision =
       :expected that must touch exactly one row. Every successful put
       appends exactly one journal entry through the same session, so the
       record write and the journal append commit or roll back together.
Who:   Used by the Merge Engine (writes), the Sync Coordinator (deltas) and
       the records route (single-record reads).

Store Contract:
    get(kind, id)              → record, or NotFoundError
    find(kind, id)             → record or None
    put(write, expected_rev)   → committed record, or RevisionConflictError
    record_overridden(...)     → journals a losing change, record untouched
    list_since(cursor)         → async iterator of DeltaRecord (journal-driven)
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple, Type

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from timesync.exceptions import NotFoundError, RevisionConflictError, ValidationError
from timesync.models.records import RECORD_MODELS, SyncedRecordMixin
from timesync.schemas.sync import DeltaRecord, Operation, RecordOut
from timesync.services.change_journal import ChangeJournal

logger = logging.getLogger(__name__)


@dataclass
class RecordWrite:
    """
    A resolved write to apply to one record.

    `fields` holds the complete, validated domain state after the write
    (ignored for pure tombstone writes on an existing record).
    """
    kind: str
    record_id: str
    operation: Operation
    client_id: str
    client_timestamp: int
    deleted: bool = False
    fields: Dict[str, Any] = field(default_factory=dict)


def model_for(kind: str) -> Type[SyncedRecordMixin]:
    try:
        return RECORD_MODELS[kind]
    except KeyError:
        raise ValidationError(
            message=f"Unknown record kind '{kind}'",
            field="kind",
            context={"allowed_kinds": sorted(RECORD_MODELS)},
        )


def to_record_out(record: SyncedRecordMixin) -> RecordOut:
    return RecordOut(
        kind=record.KIND,
        id=record.id,
        revision=record.revision,
        deleted=record.deleted,
        modified_at=record.modified_at,
        modified_by=record.modified_by,
        server_updated_at=record.server_updated_at,
        fields=record.domain_values(),
    )


class RecordStore:
    """Record storage bound to one session and its change journal."""

    def __init__(self, session: AsyncSession, journal: Optional[ChangeJournal] = None):
        self.session = session
        self.journal = journal or ChangeJournal(session)

    async def find(self, kind: str, record_id: str) -> Optional[SyncedRecordMixin]:
        model = model_for(kind)
        result = await self.session.execute(
            select(model)
            .where(model.id == record_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, kind: str, record_id: str) -> SyncedRecordMixin:
        record = await self.find(kind, record_id)
        if record is None:
            raise NotFoundError(resource=kind, resource_id=record_id)
        return record

    async def put(self, write: RecordWrite, expected_revision: int) -> SyncedRecordMixin:
        """
        Compare-and-set a record and journal the change.

        Args:
            write: The resolved write.
            expected_revision: Revision the stored record must have (0 when the
                record must not exist yet).

        Returns:
            The stored record at revision expected_revision + 1.

        Raises:
            RevisionConflictError: the stored revision differs from
                expected_revision, or a concurrent transaction created the
                same id first.
        """
        model = model_for(write.kind)
        new_revision = expected_revision + 1
        now = datetime.now(timezone.utc)

        if expected_revision == 0:
            record = model(
                id=write.record_id,
                revision=new_revision,
                deleted=write.deleted,
                modified_at=write.client_timestamp,
                modified_by=write.client_id,
                server_updated_at=now,
                **write.fields,
            )
            self.session.add(record)
            try:
                await self.session.flush()
            except IntegrityError:
                raise RevisionConflictError(
                    kind=write.kind, record_id=write.record_id, expected_revision=0
                )
        else:
            values: Dict[str, Any] = {
                "revision": new_revision,
                "deleted": write.deleted,
                "modified_at": write.client_timestamp,
                "modified_by": write.client_id,
                "server_updated_at": now,
            }
            values.update(write.fields)
            result = await self.session.execute(
                update(model)
                .where(model.id == write.record_id, model.revision == expected_revision)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise RevisionConflictError(
                    kind=write.kind,
                    record_id=write.record_id,
                    expected_revision=expected_revision,
                )
            record = await self.get(write.kind, write.record_id)

        await self.journal.append(
            record_kind=write.kind,
            record_id=write.record_id,
            revision=new_revision,
            operation=write.operation.value,
            client_id=write.client_id,
            client_timestamp=write.client_timestamp,
        )
        logger.debug(
            "Stored %s '%s' at revision %d (%s)",
            write.kind, write.record_id, new_revision, write.operation.value,
        )
        return record

    async def record_overridden(
        self,
        kind: str,
        record_id: str,
        current_revision: int,
        operation: Operation,
        client_id: str,
        client_timestamp: int,
    ) -> int:
        """Journal a change that lost conflict resolution. Returns its sequence."""
        return await self.journal.append(
            record_kind=kind,
            record_id=record_id,
            revision=current_revision,
            operation=operation.value,
            client_id=client_id,
            client_timestamp=client_timestamp,
            applied=False,
        )

    async def list_since(self, cursor: int) -> AsyncIterator[Tuple[int, DeltaRecord]]:
        """
        Materialize the delta after `cursor` from the change journal.

        Yields (last_sequence, DeltaRecord) per changed record, ordered by the
        record's most recent journal entry. A record that changed several
        times appears once, in its current state, flagged:
            delete  → the record is tombstoned
            create  → the record was created after the cursor
            update  → otherwise
        """
        entries = await self.journal.entries_after(cursor)
        if not entries:
            return

        # (kind, id) → [last sequence, created after cursor]
        changed: Dict[Tuple[str, str], List[Any]] = {}
        for entry in entries:
            key = (entry.record_kind, entry.record_id)
            state = changed.pop(key, [0, False])
            state[0] = entry.sequence
            if entry.applied and entry.operation == Operation.CREATE.value:
                state[1] = True
            changed[key] = state  # re-insert to keep last-change order

        ids_by_kind: Dict[str, List[str]] = {}
        for kind, record_id in changed:
            ids_by_kind.setdefault(kind, []).append(record_id)

        records: Dict[Tuple[str, str], SyncedRecordMixin] = {}
        for kind, ids in ids_by_kind.items():
            model = model_for(kind)
            result = await self.session.execute(
                select(model)
                .where(model.id.in_(ids))
                .execution_options(populate_existing=True)
            )
            for record in result.scalars():
                records[(kind, record.id)] = record

        for key, (sequence, created) in changed.items():
            record = records.get(key)
            if record is None:
                # Journal entries are only written together with their record
                logger.error("Journal references missing %s '%s'", *key)
                continue
            if record.deleted:
                operation = Operation.DELETE
            elif created:
                operation = Operation.CREATE
            else:
                operation = Operation.UPDATE
            yield sequence, DeltaRecord(
                **to_record_out(record).model_dump(), operation=operation
            )
