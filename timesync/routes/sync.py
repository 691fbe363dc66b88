"""
TimeSync Backend — Sync Route Handlers
========================================

What:  Handles POST /sync (push local changes, receive delta) and GET /sync
       (pull-only delta).
How:   FastAPI parses the body into SyncRequest; the handler delegates to
       SyncCoordinator and returns its SyncResponse.
Who:   Called by every client device on startup, on reconnect and after
       local edits.

Client protocol:
    1. First sync: last_synced_at=0, all local records as creates
    2. Apply every record in `changes` locally (replace by kind+id)
    3. Store `new_watermark`; send it as last_synced_at next time
    4. On 409 with resync_from=0: drop the watermark and sync from 0
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from timesync.database import get_session_factory
from timesync.schemas.sync import ErrorResponse, SyncRequest, SyncResponse
from timesync.services.sync_coordinator import SyncCoordinator

router = APIRouter(tags=["Sync"])


def get_sync_coordinator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SyncCoordinator:
    return SyncCoordinator(session_factory)


@router.post(
    "/sync",
    response_model=SyncResponse,
    responses={
        200: {"description": "Changes merged; delta since the watermark", "model": SyncResponse},
        400: {"description": "Malformed request", "model": ErrorResponse},
        409: {"description": "Stale client or watermark ahead of server; resync from 0", "model": ErrorResponse},
        503: {"description": "Too much contention on the same records; retry", "model": ErrorResponse},
    },
    summary="Push local changes and pull the server delta",
    description=(
        "Merges the client's pending changes into the server store (last-writer-wins on "
        "conflicts) and returns every record changed since `last_synced_at`, including "
        "the client's own changes with their server revisions, plus a new watermark."
    ),
)
async def post_sync(
    request: SyncRequest,
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> SyncResponse:
    return await coordinator.sync(request)


@router.get(
    "/sync",
    response_model=SyncResponse,
    responses={
        200: {"description": "Delta since the watermark", "model": SyncResponse},
        400: {"description": "Malformed query", "model": ErrorResponse},
        409: {"description": "Watermark ahead of server; resync from 0", "model": ErrorResponse},
    },
    summary="Pull the server delta without pushing changes",
)
async def get_sync(
    last_synced_at: int = Query(default=0, ge=0, description="Watermark from the previous sync"),
    client_id: str = Query(default="anonymous", min_length=1, max_length=128),
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> SyncResponse:
    return await coordinator.pull(client_id=client_id, last_synced_at=last_synced_at)
