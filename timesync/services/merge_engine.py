"""
TimeSync Backend — Merge Engine
=================================

What:  Decides, for each change in a client's change set, whether to apply
       it, reject the whole call, or resolve it against newer server state.
How:   Changes are processed in submission order, so several changes to the
       same id apply in the order the client made them: a change to an id the
       same set already wrote is based on that write. All writes go through
       the RecordStore of the caller's transaction; the caller commits or
       rolls back the outcome as one unit.
Who:   Called by the Sync Coordinator during the Merging stage.

Decision table (R = stored revision, 0 when the record does not exist):

    base_revision > R   → StaleClientError (whole call fails)
    record missing      → create/update: insert at revision 1
                          delete: nothing to delete, acknowledged
    base_revision == R  → apply, revision R+1
    base_revision <  R  → conflict, the ConflictResolver picks the winner:
                          incoming wins → apply, revision R+1
                          stored wins   → journal as overridden, revision R

Applying a change:
    create  on an existing record → replace its fields (journaled as update)
    update                        → submitted fields merged over stored ones;
                                    restores a tombstoned record
    delete                        → set the tombstone (again, if already set)
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from timesync.exceptions import StaleClientError
from timesync.models.records import SyncedRecordMixin
from timesync.schemas.records import validate_fields
from timesync.schemas.sync import ClientChange, ConflictNotice, Operation
from timesync.services.conflict import ConflictResolver, LastWriterWinsResolver, WriteStamp
from timesync.services.record_store import RecordStore, RecordWrite

logger = logging.getLogger(__name__)


@dataclass
class MergeOutcome:
    """Result of merging one change set."""
    applied: int = 0
    skipped: int = 0
    conflicts: List[ConflictNotice] = field(default_factory=list)


class MergeEngine:
    """
    Merges client change sets into the store.

    Stateless apart from its conflict strategy; one instance is shared by all
    sync calls.
    """

    def __init__(self, resolver: Optional[ConflictResolver] = None):
        self.resolver = resolver or LastWriterWinsResolver()

    async def merge(
        self,
        store: RecordStore,
        client_id: str,
        changes: Sequence[ClientChange],
    ) -> MergeOutcome:
        """
        Merge a change set.

        Raises:
            StaleClientError: a change claims a revision the server never had.
            ValidationError: the merged state of an update is invalid.
            RevisionConflictError: a concurrent transaction won a
                compare-and-set; the caller rolls back and retries.
        """
        outcome = MergeOutcome()
        # (kind, id) -> revision written earlier in this change set
        written: Dict[Tuple[str, str], int] = {}
        for change in changes:
            await self._merge_one(store, client_id, change, outcome, written)
        return outcome

    async def _merge_one(
        self,
        store: RecordStore,
        client_id: str,
        change: ClientChange,
        outcome: MergeOutcome,
        written: Dict[Tuple[str, str], int],
    ) -> None:
        kind = change.kind.value
        current = await store.find(kind, change.id)
        stored_revision = current.revision if current is not None else 0

        # A later change to an id this change set already wrote builds on
        # that write, not on the base the client recorded offline.
        base_revision = max(change.base_revision, written.get((kind, change.id), 0))

        if base_revision > stored_revision:
            raise StaleClientError(
                kind=kind,
                record_id=change.id,
                base_revision=change.base_revision,
                stored_revision=stored_revision,
            )

        if current is None:
            if change.operation == Operation.DELETE:
                logger.debug("Delete of unknown %s '%s' acknowledged", kind, change.id)
                outcome.skipped += 1
                return
            record = await store.put(
                RecordWrite(
                    kind=kind,
                    record_id=change.id,
                    operation=Operation.CREATE,
                    client_id=client_id,
                    client_timestamp=change.client_timestamp,
                    fields=validate_fields(kind, change.fields, change.id),
                ),
                expected_revision=0,
            )
            written[(kind, change.id)] = record.revision
            outcome.applied += 1
            return

        if base_revision < stored_revision:
            incoming = WriteStamp(change.client_timestamp, client_id)
            stored = WriteStamp(current.modified_at, current.modified_by)
            if not self.resolver.incoming_wins(incoming, stored):
                await store.record_overridden(
                    kind=kind,
                    record_id=change.id,
                    current_revision=stored_revision,
                    operation=change.operation,
                    client_id=client_id,
                    client_timestamp=change.client_timestamp,
                )
                outcome.conflicts.append(
                    ConflictNotice(
                        kind=change.kind,
                        id=change.id,
                        client_timestamp=change.client_timestamp,
                        base_revision=change.base_revision,
                        current_revision=stored_revision,
                    )
                )
                logger.info(
                    "Conflict on %s '%s': change from %s overridden by revision %d",
                    kind, change.id, client_id, stored_revision,
                )
                return
            logger.info(
                "Conflict on %s '%s': change from %s overrides revision %d",
                kind, change.id, client_id, stored_revision,
            )

        record = await store.put(
            self._resolve_write(kind, client_id, change, current),
            expected_revision=stored_revision,
        )
        written[(kind, change.id)] = record.revision
        outcome.applied += 1

    @staticmethod
    def _resolve_write(
        kind: str,
        client_id: str,
        change: ClientChange,
        current: SyncedRecordMixin,
    ) -> RecordWrite:
        """Build the write applying `change` on top of the existing record."""
        if change.operation == Operation.DELETE:
            return RecordWrite(
                kind=kind,
                record_id=change.id,
                operation=Operation.DELETE,
                client_id=client_id,
                client_timestamp=change.client_timestamp,
                deleted=True,
            )

        if change.operation == Operation.CREATE:
            merged = dict(change.fields)
        else:
            merged = {**current.domain_values(), **change.fields}

        return RecordWrite(
            kind=kind,
            record_id=change.id,
            operation=Operation.UPDATE,
            client_id=client_id,
            client_timestamp=change.client_timestamp,
            deleted=False,
            fields=validate_fields(kind, merged, change.id),
        )
