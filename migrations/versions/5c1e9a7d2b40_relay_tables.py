"""relay tables

Revision ID: 5c1e9a7d2b40
Revises:
Create Date: 2026-10-18 09:12:44.310522

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5c1e9a7d2b40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create operator, receipt and bridge job tables."""
    op.create_table(
        "operator",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("wallet_address", sa.String(length=42), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_address"),
    )
    op.create_table(
        "receipt",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("subject_id", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(length=66), nullable=False),
        sa.Column("proof_blob", sa.JSON(), nullable=False),
        sa.Column("immutable_seq", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_by", sa.String(length=36), nullable=False),
        sa.ForeignKeyConstraint(["created_by"], ["operator.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("subject_id", "immutable_seq", name="uq_receipt_subject_seq"),
    )
    op.create_index("ix_receipt_subject_id", "receipt", ["subject_id"])
    op.create_index("ix_receipt_content_hash", "receipt", ["content_hash"])

    op.create_table(
        "bridge_job",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("receipt_id", sa.String(length=36), nullable=False),
        sa.Column("doc_hash", sa.String(length=66), nullable=False),
        sa.Column("source_chain", sa.String(length=32), nullable=False),
        sa.Column("target_chain", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("block_number", sa.Integer(), nullable=True),
        sa.Column("confirmations", sa.Integer(), nullable=False),
        sa.Column("required_confirmations", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("failure_stage", sa.String(length=16), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["receipt_id"], ["receipt.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_bridge_job_receipt_id", "bridge_job", ["receipt_id"])
    op.create_index("ix_bridge_job_doc_hash", "bridge_job", ["doc_hash"])
    op.create_index("ix_bridge_job_status", "bridge_job", ["status"])


def downgrade() -> None:
    """Drop relay tables."""
    op.drop_index("ix_bridge_job_status", table_name="bridge_job")
    op.drop_index("ix_bridge_job_doc_hash", table_name="bridge_job")
    op.drop_index("ix_bridge_job_receipt_id", table_name="bridge_job")
    op.drop_table("bridge_job")
    op.drop_index("ix_receipt_content_hash", table_name="receipt")
    op.drop_index("ix_receipt_subject_id", table_name="receipt")
    op.drop_table("receipt")
    op.drop_table("operator")
