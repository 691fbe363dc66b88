"""
TimeSync Backend — Custom Exception Hierarchy
===============================================

What:  Defines application-specific exceptions for the sync error taxonomy.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses with correct HTTP status codes.
Who:   Raised by services; caught by global handlers.

Exception Hierarchy:
    TimeSyncError (base)
    ├── ValidationError          → 400 Bad Request (malformed request, no side effects)
    ├── NotFoundError            → 404 Not Found
    ├── InvalidWatermarkError    → 409 Conflict (client cursor ahead of server)
    ├── StaleClientError         → 409 Conflict (impossible base_revision)
    ├── ConcurrentConflictError  → 503 Service Unavailable (retry budget exhausted)
    ├── StorageError             → 500 Internal Server Error
    ├── RateLimitExceededError   → 429 Too Many Requests
    └── RevisionConflictError    → internal only, drives the compare-and-set retry loop
        └── TransactionAbortedError  → internal only, deadlock or serialization failure

Every error aborts the current sync call wholesale. None of them is ever
partially applied: the merge and the journal append share one transaction.
"""

from typing import Any, Dict, Optional


class TimeSyncError(Exception):
    """
    Base exception for all TimeSync application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Structured details (kind, record_id, resync_from, ...)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(TimeSyncError):
    """
    Raised when a sync request is malformed.

    When:    Negative watermark, unknown kind or operation, missing required
             fields on create, unknown field names, oversize change sets.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class NotFoundError(TimeSyncError):
    """
    Raised when a requested record does not exist.

    HTTP:    404 Not Found
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class InvalidWatermarkError(TimeSyncError):
    """
    Raised when a client's watermark is ahead of the journal.

    What:    The client claims to have seen journal entries that do not exist,
             typically after a server-side store reset.
    HTTP:    409 Conflict. The client must resynchronize from watermark 0.
    """

    def __init__(
        self,
        watermark: int,
        current_position: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Watermark {watermark} is ahead of the server journal (at {current_position}). "
            f"Resynchronize from 0."
        )
        ctx = context or {}
        ctx.update(
            {
                "watermark": watermark,
                "current_position": current_position,
                "resync_from": 0,
            }
        )
        super().__init__(message=message, context=ctx)
        self.watermark = watermark
        self.current_position = current_position


class StaleClientError(TimeSyncError):
    """
    Raised when a change's base_revision is newer than the stored revision.

    What:    The client saw a revision that never existed on this server:
             possible data corruption or a store reset.
    HTTP:    409 Conflict. Nothing from the change set is committed and the
             client is told to resynchronize from watermark 0.
    """

    def __init__(
        self,
        kind: str,
        record_id: str,
        base_revision: int,
        stored_revision: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"{kind} '{record_id}' was submitted with base_revision {base_revision}, "
            f"but the server only has revision {stored_revision}. Resynchronize from 0."
        )
        ctx = context or {}
        ctx.update(
            {
                "kind": kind,
                "record_id": record_id,
                "base_revision": base_revision,
                "stored_revision": stored_revision,
                "resync_from": 0,
            }
        )
        super().__init__(message=message, context=ctx)
        self.kind = kind
        self.record_id = record_id


class RevisionConflictError(TimeSyncError):
    """
    Raised by the store when a compare-and-set on a revision fails.

    What:    Another transaction changed the record (or the journal position)
             between our read and our write.
    HTTP:    Never surfaced directly; the coordinator retries the whole merge
             and converts exhaustion into ConcurrentConflictError.
    """

    def __init__(
        self,
        kind: str,
        record_id: str,
        expected_revision: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"{kind} '{record_id}' no longer has revision {expected_revision}"
        )
        ctx = context or {}
        ctx.update(
            {"kind": kind, "record_id": record_id, "expected_revision": expected_revision}
        )
        super().__init__(message=message, context=ctx)
        self.kind = kind
        self.record_id = record_id
        self.expected_revision = expected_revision


class TransactionAbortedError(RevisionConflictError):
    """
    Raised when the database aborts a sync transaction to break a deadlock or
    a serialization failure (SQLSTATE 40P01 / 40001).

    HTTP:    Never surfaced directly; retried like a lost compare-and-set.
    """

    def __init__(self, sqlstate: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            kind="transaction", record_id=sqlstate, expected_revision=0, context=context
        )
        self.message = f"The database aborted the transaction (SQLSTATE {sqlstate})"
        self.args = (self.message,)
        self.sqlstate = sqlstate


class ConcurrentConflictError(TimeSyncError):
    """
    Raised when the merge retry budget is exhausted under contention.

    HTTP:    503 Service Unavailable with Retry-After. The client should retry
             the whole sync call.
    """

    def __init__(
        self,
        attempts: int,
        retry_after: int = 1,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"The sync could not be applied after {attempts} attempts because the same "
            f"records were being changed concurrently. Please retry."
        )
        ctx = context or {}
        ctx["attempts"] = attempts
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.attempts = attempts
        self.retry_after = retry_after


class StorageError(TimeSyncError):
    """
    Raised when database operations fail unexpectedly.

    HTTP:    500 Internal Server Error

    The message returned to the client is always generic; the context is
    logged server-side only. The call is aborted and, since store and journal
    share a transaction, no partial state exists.
    """

    def __init__(
        self,
        message: str = "A storage error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(TimeSyncError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    HTTP:    429 Too Many Requests
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
