"""Create synced record and change journal tables

Revision ID: 001
Revises: None
Create Date: 2026-10-16 00:00:00.000000+00:00

What:  Creates the three record tables (time_entries, projects, categories),
       the append-only journal_entries table and the single-row
       journal_position counter.

Rollback: downgrade() drops every table (destructive, all sync state lost;
clients must then resynchronize from watermark 0).
"""

from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _sync_columns() -> list:
    """Columns shared by every synced record table."""
    return [
        sa.Column("id", sa.String(64), nullable=False, comment="Client-generated record id"),
        sa.Column(
            "revision",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("1"),
            comment="Incremented by exactly one on every accepted mutation",
        ),
        sa.Column(
            "deleted",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
            comment="Tombstone flag; rows are never removed",
        ),
        sa.Column(
            "modified_at",
            sa.BigInteger(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Client timestamp (epoch ms) of the write that produced this state",
        ),
        sa.Column(
            "modified_by",
            sa.String(128),
            nullable=False,
            server_default=sa.text("''"),
            comment="Client id of the write that produced this state",
        ),
        sa.Column(
            "server_updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "time_entries",
        *_sync_columns(),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("start_time", sa.BigInteger(), nullable=False, comment="epoch ms"),
        sa.Column("end_time", sa.BigInteger(), nullable=True, comment="epoch ms; NULL while running"),
        sa.Column("project_id", sa.String(64), nullable=True),
        sa.Column("category_id", sa.String(64), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "projects",
        *_sync_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("color", sa.String(32), nullable=False, server_default=sa.text("'#808080'")),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "categories",
        *_sync_columns(),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("color", sa.String(32), nullable=False, server_default=sa.text("'#808080'")),
        sa.Column("weekly_target_hours", sa.Float(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "journal_entries",
        sa.Column("sequence", sa.BigInteger(), autoincrement=False, nullable=False,
                  comment="Gapless, strictly increasing; the client watermark"),
        sa.Column("record_kind", sa.String(32), nullable=False),
        sa.Column("record_id", sa.String(64), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False),
        sa.Column("operation", sa.String(16), nullable=False, comment="create, update or delete"),
        sa.Column("client_id", sa.String(128), nullable=False),
        sa.Column("client_timestamp", sa.BigInteger(), nullable=False),
        sa.Column(
            "applied",
            sa.Boolean(),
            nullable=False,
            server_default=sa.true(),
            comment="False when the change lost conflict resolution",
        ),
        sa.Column(
            "recorded_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("sequence"),
    )

    # Lookups of a record's history
    op.create_index(
        "idx_journal_entries_record",
        "journal_entries",
        ["record_kind", "record_id"],
    )

    op.create_table(
        "journal_position",
        sa.Column("id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("position", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.execute("INSERT INTO journal_position (id, position) VALUES (1, 0)")


def downgrade() -> None:
    op.drop_table("journal_position")
    op.drop_index("idx_journal_entries_record", table_name="journal_entries")
    op.drop_table("journal_entries")
    op.drop_table("categories")
    op.drop_table("projects")
    op.drop_table("time_entries")
