"""
TimeSync Backend — Change Journal Models
==========================================

What:  ORM models for the append-only change journal and its position counter.
How:   `journal_entries` holds one immutable row per journaled change, keyed by
       a gapless sequence number. `journal_position` is a single-row table
       holding the last assigned sequence; it is advanced by compare-and-set
       inside the same transaction that writes the record and the entry.

Sequence numbers, not timestamps, order the journal: SQL timestamps are not
unique and are not written in commit order, so a timestamp cursor can skip or
repeat changes under clock skew.
"""

from datetime import datetime, timezone

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from timesync.database import Base


class JournalEntry(Base):
    """
    One journaled change.

    `applied` is False for a change that lost conflict resolution: it is
    recorded so the delta carries the record's current state back to the
    losing client, and it keeps the record's unchanged revision.
    """

    __tablename__ = "journal_entries"

    sequence: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)

    record_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    record_id: Mapped[str] = mapped_column(String(64), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False)

    # create | update | delete
    operation: Mapped[str] = mapped_column(String(16), nullable=False)

    client_id: Mapped[str] = mapped_column(String(128), nullable=False)
    client_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("idx_journal_entries_record", "record_kind", "record_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<JournalEntry(sequence={self.sequence}, {self.record_kind}:{self.record_id} "
            f"rev={self.revision} op={self.operation})>"
        )


class JournalPosition(Base):
    """Single row (id=1) holding the last assigned journal sequence."""

    __tablename__ = "journal_position"

    ROW_ID = 1

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    position: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
