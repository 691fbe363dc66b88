"""
TimeSync Backend — Pydantic Request/Response Schemas
======================================================

What:  Pydantic models defining the sync API contract between clients and backend.
How:   FastAPI uses these models to validate request bodies, serialize responses,
       and generate OpenAPI documentation.
Who:   Used by route handlers and by the Sync Coordinator.

Wire format:
    POST /sync
        {
            "client_id": "laptop-1",
            "last_synced_at": 12,
            "changes": [
                {"kind": "time_entry", "id": "t1", "base_revision": 0,
                 "operation": "create", "client_timestamp": 1718000000000,
                 "fields": {"description": "Standup", "start_time": 1718000000000}}
            ]
        }
    → 200
        {
            "new_watermark": 13,
            "changes": [{"kind": "time_entry", "id": "t1", "revision": 1,
                         "operation": "create", "deleted": false, ...}],
            "conflicts": []
        }
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RecordKind(str, Enum):
    TIME_ENTRY = "time_entry"
    PROJECT = "project"
    CATEGORY = "category"


class Operation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class ClientChange(BaseModel):
    """
    One locally mutated record in a client's change set.

    `base_revision` is the revision the client last saw for this record
    (0 for a record it created locally). `client_timestamp` is the client's
    wall-clock time of the edit, in epoch milliseconds.
    """
    kind: RecordKind = Field(description="Record kind")
    id: str = Field(min_length=1, max_length=64, description="Record id (client generated)")
    base_revision: int = Field(ge=0, description="Revision the client based this change on")
    operation: Operation = Field(description="create, update or delete")
    fields: Dict[str, Any] = Field(
        default_factory=dict,
        description="Domain field values; partial for updates, ignored for deletes",
    )
    client_timestamp: int = Field(ge=0, description="Client wall-clock time of the edit (epoch ms)")


class SyncRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=128, description="Stable id of the syncing device")
    last_synced_at: int = Field(ge=0, description="Watermark returned by the previous sync (0 for first sync)")
    changes: List[ClientChange] = Field(default_factory=list, description="Pending local changes, in order")


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class RecordOut(BaseModel):
    """Current state of a record as delivered to clients."""
    kind: RecordKind
    id: str
    revision: int
    deleted: bool
    modified_at: int = Field(description="Client timestamp of the write that produced this state")
    modified_by: str = Field(description="Client id of the write that produced this state")
    server_updated_at: datetime
    fields: Dict[str, Any]


class DeltaRecord(RecordOut):
    """A record in a sync delta, flagged with how the client should apply it."""
    operation: Operation


class ConflictNotice(BaseModel):
    """A submitted change that lost conflict resolution and was not applied."""
    kind: RecordKind
    id: str
    client_timestamp: int
    base_revision: int
    current_revision: int
    resolution: str = Field(default="overridden")


class SyncResponse(BaseModel):
    new_watermark: int = Field(description="Cursor to send as last_synced_at on the next sync")
    changes: List[DeltaRecord] = Field(default_factory=list)
    conflicts: List[ConflictNotice] = Field(default_factory=list)


# ══════════════════════════════════════════════════════════════════════════
# Shared Models
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    Standardized error response format for all API errors.

    Example:
        {
            "error": "stale_client",
            "message": "time_entry 't1' was submitted with base_revision 5, ...",
            "details": {"kind": "time_entry", "record_id": "t1", "resync_from": 0},
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    status: str = Field(description="Overall service status: healthy, unhealthy")
    version: str = Field(description="Application version")
    server_time: datetime = Field(description="Current server time (UTC)")
    uptime_seconds: float = Field(description="Seconds since service started")
    load_average: Optional[List[float]] = Field(
        default=None, description="1, 5 and 15 minute system load averages"
    )
    database: str = Field(description="Database connectivity: connected, disconnected")
