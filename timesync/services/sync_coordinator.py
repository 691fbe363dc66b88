"""
TimeSync Backend — Sync Coordinator (Exchange Orchestrator)
=============================================================

What:  Runs one sync exchange: validate the request, merge the client's
       changes, commit, compute the delta since the client's watermark and
       build the response.
How:   Composes MergeEngine, RecordStore and ChangeJournal over sessions from
       the injected session factory. Merge + commit run in one transaction per
       attempt, retried with tenacity when a compare-and-set loses a race.
Who:   Called by the /sync route handlers.

Exchange stages (strictly sequential; a retry re-enters Validating):

    ┌──────────┐   ┌────────────┐   ┌─────────┐   ┌────────────┐
    │ Received │──▶│ Validating │──▶│ Merging │──▶│ Committing │
    └──────────┘   └────────────┘   └─────────┘   └────────────┘
                          ▲   retry      │              │
                          └──────────────┴──────────────┘
                                                         │
                   ┌────────────┐   ┌────────────────┐   │
                   │ Responding │◀──│ DeltaComputing │◀──┘
                   └────────────┘   └────────────────┘

Error Recovery:
    Received/Validating fail → ValidationError / InvalidWatermarkError, nothing written
    Merging fails            → StaleClientError / ValidationError, transaction rolled back
    Compare-and-set lost     → rollback, retry (SYNC_MAX_ATTEMPTS), then ConcurrentConflictError
    Database failure         → StorageError, transaction rolled back

Cancellation:
    A client disconnect cancels the request task. Before Committing that
    rolls everything back; once the commit has started it is shielded and
    runs to completion.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional

from sqlalchemy.exc import DBAPIError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from timesync.config import Settings, settings as default_settings
from timesync.exceptions import (
    ConcurrentConflictError,
    InvalidWatermarkError,
    RevisionConflictError,
    StorageError,
    TransactionAbortedError,
    ValidationError,
)
from timesync.middleware.request_id import request_id_var
from timesync.schemas.records import check_field_names, validate_fields
from timesync.schemas.sync import Operation, SyncRequest, SyncResponse
from timesync.services.change_journal import ChangeJournal
from timesync.services.conflict import get_resolver
from timesync.services.merge_engine import MergeEngine, MergeOutcome
from timesync.services.record_store import RecordStore

logger = logging.getLogger(__name__)

# deadlock_detected, serialization_failure
TRANSIENT_SQLSTATES = frozenset({"40P01", "40001"})


def transient_sqlstate(error: SQLAlchemyError) -> Optional[str]:
    """SQLSTATE of a driver error the database raised to abort the transaction, else None."""
    if not isinstance(error, DBAPIError):
        return None
    for source in (error.orig, getattr(error.orig, "__cause__", None)):
        for attr in ("sqlstate", "pgcode"):
            code = getattr(source, attr, None)
            if code in TRANSIENT_SQLSTATES:
                return code
    return None


class SyncStage(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    MERGING = "merging"
    COMMITTING = "committing"
    DELTA_COMPUTING = "delta_computing"
    RESPONDING = "responding"


_TRANSITIONS: Dict[SyncStage, FrozenSet[SyncStage]] = {
    SyncStage.RECEIVED: frozenset({SyncStage.VALIDATING}),
    SyncStage.VALIDATING: frozenset({SyncStage.MERGING}),
    SyncStage.MERGING: frozenset({SyncStage.COMMITTING, SyncStage.VALIDATING}),
    SyncStage.COMMITTING: frozenset({SyncStage.DELTA_COMPUTING, SyncStage.VALIDATING}),
    SyncStage.DELTA_COMPUTING: frozenset({SyncStage.RESPONDING}),
    SyncStage.RESPONDING: frozenset(),
}


@dataclass
class SyncExchange:
    """Per-call state: where the exchange is and what it has produced."""
    request: SyncRequest
    stage: SyncStage = SyncStage.RECEIVED
    attempts: int = 0
    outcome: Optional[MergeOutcome] = None

    def advance(self, stage: SyncStage) -> None:
        if stage not in _TRANSITIONS[self.stage]:
            raise RuntimeError(f"Invalid sync stage transition {self.stage.value} → {stage.value}")
        logger.debug(
            "[%s] sync %s: %s → %s",
            request_id_var.get(""), self.request.client_id, self.stage.value, stage.value,
        )
        self.stage = stage


class SyncCoordinator:
    """
    Orchestrates sync exchanges.

    Holds no per-call state; concurrent calls share one instance and only
    meet in the database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        merge_engine: Optional[MergeEngine] = None,
        config: Optional[Settings] = None,
    ):
        self.session_factory = session_factory
        self.config = config or default_settings
        self.merge_engine = merge_engine or MergeEngine(get_resolver(self.config.conflict_strategy))

    async def sync(self, request: SyncRequest) -> SyncResponse:
        """
        Run a full sync exchange.

        Returns:
            SyncResponse with the new watermark, every record changed after
            request.last_synced_at (including this call's own changes, with
            their server revisions) and the changes that lost a conflict.

        Raises:
            ValidationError, InvalidWatermarkError, StaleClientError,
            ConcurrentConflictError, StorageError
        """
        exchange = SyncExchange(request=request)
        rid = request_id_var.get("")
        logger.info(
            "[%s] Sync from %s: watermark=%d, %d change(s)",
            rid, request.client_id, request.last_synced_at, len(request.changes),
        )

        self._validate_request(request)

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(RevisionConflictError),
                stop=stop_after_attempt(self.config.sync_max_attempts),
                wait=(
                    wait_exponential(
                        multiplier=self.config.sync_retry_min_wait,
                        max=self.config.sync_retry_max_wait,
                    )
                    + wait_random(0, self.config.sync_retry_min_wait)
                ),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    exchange.attempts += 1
                    exchange.outcome = await self._merge_and_commit(exchange)
        except RevisionConflictError as e:
            logger.warning(
                "[%s] Sync from %s gave up after %d attempts: %s",
                rid, request.client_id, exchange.attempts, e.message,
            )
            raise ConcurrentConflictError(
                attempts=exchange.attempts,
                context={"kind": e.kind, "record_id": e.record_id},
            )

        exchange.advance(SyncStage.DELTA_COMPUTING)
        response = await self._compute_delta(request.last_synced_at)
        response.conflicts = exchange.outcome.conflicts if exchange.outcome else []

        exchange.advance(SyncStage.RESPONDING)
        logger.info(
            "[%s] Sync from %s done: applied=%d, conflicts=%d, delta=%d, watermark=%d",
            rid,
            request.client_id,
            exchange.outcome.applied if exchange.outcome else 0,
            len(response.conflicts),
            len(response.changes),
            response.new_watermark,
        )
        return response

    async def pull(self, client_id: str, last_synced_at: int) -> SyncResponse:
        """Delta-only exchange: a sync with an empty change set."""
        return await self.sync(
            SyncRequest(client_id=client_id, last_synced_at=last_synced_at, changes=[])
        )

    # ── Stages ────────────────────────────────────────────────────────────

    def _validate_request(self, request: SyncRequest) -> None:
        """Received stage: structural checks that need no database access."""
        if len(request.changes) > self.config.max_changes_per_sync:
            raise ValidationError(
                message=(
                    f"Too many changes in one sync ({len(request.changes)}); "
                    f"the limit is {self.config.max_changes_per_sync}"
                ),
                field="changes",
            )
        for change in request.changes:
            kind = change.kind.value
            if change.operation == Operation.DELETE:
                continue
            check_field_names(kind, change.fields, change.id)
            if change.operation == Operation.CREATE:
                validate_fields(kind, change.fields, change.id)

    async def _merge_and_commit(self, exchange: SyncExchange) -> MergeOutcome:
        """One attempt of Validating → Merging → Committing in a single transaction."""
        request = exchange.request
        exchange.advance(SyncStage.VALIDATING)

        async with self.session_factory() as session:
            try:
                journal = ChangeJournal(session)
                if request.changes:
                    position = await journal.lock_position()
                else:
                    position = await journal.current_position()
                if request.last_synced_at > position:
                    raise InvalidWatermarkError(
                        watermark=request.last_synced_at, current_position=position
                    )

                exchange.advance(SyncStage.MERGING)
                outcome = await self.merge_engine.merge(
                    RecordStore(session, journal), request.client_id, request.changes
                )

                exchange.advance(SyncStage.COMMITTING)
                await self._commit(session)
                return outcome
            except SQLAlchemyError as e:
                await session.rollback()
                sqlstate = transient_sqlstate(e)
                if sqlstate is not None:
                    raise TransactionAbortedError(sqlstate)
                logger.error(
                    "[%s] Storage error during sync from %s: %s",
                    request_id_var.get(""), request.client_id, str(e), exc_info=True,
                )
                raise StorageError(
                    message="The sync could not be stored. Please try again.",
                    context={"error_type": type(e).__name__},
                )
            except Exception:
                await session.rollback()
                raise

    @staticmethod
    async def _commit(session: AsyncSession) -> None:
        """Commit, finishing even if the request task is cancelled meanwhile."""
        commit = asyncio.ensure_future(session.commit())
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            logger.warning("[%s] Client went away during commit; finishing it", request_id_var.get(""))
            await commit
            raise

    async def _compute_delta(self, cursor: int) -> SyncResponse:
        """DeltaComputing stage: everything journaled after `cursor`."""
        try:
            async with self.session_factory() as session:
                store = RecordStore(session)
                changes = []
                new_watermark = cursor
                async for sequence, record in store.list_since(cursor):
                    changes.append(record)
                    new_watermark = max(new_watermark, sequence)
                return SyncResponse(new_watermark=new_watermark, changes=changes)
        except SQLAlchemyError as e:
            logger.error("Storage error computing delta after %d: %s", cursor, str(e), exc_info=True)
            raise StorageError(
                message="Could not compute the changes since your last sync. Please try again.",
                context={"error_type": type(e).__name__},
            )
