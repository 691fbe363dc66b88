"""
TimeSync Backend — Synced Record Models
=========================================

What:  ORM models for the three synchronized record kinds: time entries,
       projects and categories.
How:   Every kind shares the `SyncedRecordMixin` capability set (id, revision,
       tombstone flag, last-write stamp) and adds its own domain columns.
Who:   Used by RecordStore for reads and compare-and-set writes, and by
       Alembic for schema management.

Lifecycle:
    1. Created at revision 1 by an accepted client `create`
    2. Every accepted mutation increments `revision` by exactly one
    3. Deletion sets `deleted = True` (tombstone); rows are never removed

References between kinds (time entry → project/category) are plain ids, not
foreign keys: changes from different clients arrive in any order, and a
tombstoned project must not cascade into its time entries.
"""

from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Optional, Tuple, Type

from sqlalchemy import BigInteger, Boolean, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from timesync.database import Base


class SyncedRecordMixin:
    """
    Columns every synchronized record carries.

    `modified_at`/`modified_by` are the client timestamp and client id of the
    write that produced the current state; conflict resolution compares
    incoming changes against them.
    """

    KIND: ClassVar[str] = ""
    DOMAIN_FIELDS: ClassVar[Tuple[str, ...]] = ()

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Epoch milliseconds, as sent by the client
    modified_at: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    modified_by: Mapped[str] = mapped_column(String(128), nullable=False, default="")

    server_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    def domain_values(self) -> Dict[str, Any]:
        """Current domain field values, keyed by field name."""
        return {name: getattr(self, name) for name in self.DOMAIN_FIELDS}

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(id='{self.id}', revision={self.revision}, "
            f"deleted={self.deleted})>"
        )


class TimeEntry(SyncedRecordMixin, Base):
    """A tracked span of time. `end_time` is NULL while the entry is running."""

    __tablename__ = "time_entries"

    KIND = "time_entry"
    DOMAIN_FIELDS = ("description", "start_time", "end_time", "project_id", "category_id")

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    start_time: Mapped[int] = mapped_column(BigInteger, nullable=False)
    end_time: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    project_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    category_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)


class Project(SyncedRecordMixin, Base):
    __tablename__ = "projects"

    KIND = "project"
    DOMAIN_FIELDS = ("name", "color")

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False, default="#808080")


class Category(SyncedRecordMixin, Base):
    __tablename__ = "categories"

    KIND = "category"
    DOMAIN_FIELDS = ("name", "color", "weekly_target_hours")

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    color: Mapped[str] = mapped_column(String(32), nullable=False, default="#808080")
    weekly_target_hours: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


# Kind name → ORM class
RECORD_MODELS: Dict[str, Type[SyncedRecordMixin]] = {
    model.KIND: model for model in (TimeEntry, Project, Category)
}
