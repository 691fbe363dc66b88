"""
TimeSync Backend — Record Route Handlers
==========================================

What:  Handles GET /api/records/{kind}/{record_id}.
How:   Reads the current state of one record (tombstones included) through
       RecordStore. Read-only; all writes go through /sync.
Who:   Support tooling and clients recovering a single record.
"""

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from timesync.database import get_db_session
from timesync.schemas.sync import ErrorResponse, RecordKind, RecordOut
from timesync.services.record_store import RecordStore, to_record_out

router = APIRouter(prefix="/api", tags=["Records"])


@router.get(
    "/records/{kind}/{record_id}",
    response_model=RecordOut,
    responses={
        200: {"description": "Current record state", "model": RecordOut},
        404: {"description": "Record not found", "model": ErrorResponse},
    },
    summary="Get the current state of a record",
)
async def get_record(
    kind: RecordKind,
    record_id: str,
    response: Response,
    db: AsyncSession = Depends(get_db_session),
) -> RecordOut:
    """
    Return the stored record, including its revision and tombstone flag.

    Records change with every sync, so responses must not be cached.
    """
    record = await RecordStore(db).get(kind.value, record_id)
    response.headers["Cache-Control"] = "no-store"
    return to_record_out(record)
