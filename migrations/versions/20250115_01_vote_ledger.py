"""Polls, poll options, hash-chained vote records and audit logs."""
from __future__ import annotations

from collections.abc import Iterable

import sqlalchemy as sa
from alembic import op

revision = "20250115_01"
down_revision = None
branch_labels = None
depends_on: Iterable[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _drop_enum(name: str) -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute(sa.text(f"DROP TYPE IF EXISTS {name}"))


def upgrade() -> None:  # noqa: D401
    """Create the poll directory and vote ledger tables."""

    poll_type = sa.Enum("INFORMAL", "BINDING", "STRAW_POLL", name="poll_type")
    poll_type.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "polls",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("type", poll_type, nullable=False, server_default="INFORMAL"),
        sa.Column("is_anonymous", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(length=320), nullable=False),
        *_timestamps(),
    )

    op.create_table(
        "poll_options",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("poll_id", sa.Integer(), nullable=False),
        sa.Column("text", sa.String(length=255), nullable=False),
        sa.Column("order_index", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["poll_id"], ["polls.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("poll_id", "order_index", name="uq_poll_options_poll_order"),
    )
    op.create_index("ix_poll_options_poll_id", "poll_options", ["poll_id"])

    op.create_table(
        "vote_records",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("poll_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("option_id", sa.Integer(), nullable=False),
        sa.Column("voter_token", sa.String(length=128), nullable=False),
        sa.Column("cast_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=False),
        sa.Column("link_hash", sa.String(length=64), nullable=False),
        sa.Column("receipt_code", sa.String(length=32), nullable=False),
        sa.ForeignKeyConstraint(["poll_id"], ["polls.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["option_id"], ["poll_options.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("poll_id", "sequence", name="uq_vote_records_poll_sequence"),
        sa.UniqueConstraint("poll_id", "voter_token", name="uq_vote_records_poll_voter"),
    )
    op.create_index("ix_vote_records_receipt_code", "vote_records", ["receipt_code"], unique=True)
    op.create_index("ix_vote_records_option_id", "vote_records", ["option_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("actor", sa.String(length=320)),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("resource_type", sa.String(length=128), nullable=False),
        sa.Column("resource_id", sa.String(length=128)),
        sa.Column("payload", sa.JSON()),
        sa.Column("ip_address", sa.String(length=64)),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])
    op.create_index("ix_audit_logs_resource", "audit_logs", ["resource_type", "resource_id"])


def downgrade() -> None:  # noqa: D401
    """Drop the vote ledger schema."""

    op.drop_index("ix_audit_logs_resource", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_vote_records_option_id", table_name="vote_records")
    op.drop_index("ix_vote_records_receipt_code", table_name="vote_records")
    op.drop_table("vote_records")

    op.drop_index("ix_poll_options_poll_id", table_name="poll_options")
    op.drop_table("poll_options")

    op.drop_table("polls")

    _drop_enum("poll_type")
