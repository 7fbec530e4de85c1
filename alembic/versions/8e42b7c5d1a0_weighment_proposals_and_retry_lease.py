"""weighment proposals and retry processing lease

Revision ID: 8e42b7c5d1a0
Revises: 3c1f0a9d7b21
Create Date: 2026-10-19 16:40:05.532918

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '8e42b7c5d1a0'
down_revision: Union[str, Sequence[str], None] = '3c1f0a9d7b21'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    with op.batch_alter_table("pending_state_updates") as batch:
        batch.add_column(sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True))

    op.create_table(
        "weighment_proposals",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("shipment_id", sa.String(length=128),
                  sa.ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("proposed_weight_kg", sa.BigInteger(), nullable=False),
        sa.Column("proposer_id", sa.String(length=128), nullable=False),
        sa.Column("proposer_wallet", sa.String(length=42), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("propose_tx", sa.String(length=66), nullable=False),
        sa.Column("confirmed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("reviewed_by", sa.String(length=128), nullable=True),
        sa.Column("review_note", sa.Text(), nullable=True),
        sa.Column("weighment_tx", sa.String(length=66), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_weighment_proposals_shipment", "weighment_proposals", ["shipment_id", "status"])


def downgrade():
    op.drop_index("ix_weighment_proposals_shipment", table_name="weighment_proposals")
    op.drop_table("weighment_proposals")
    with op.batch_alter_table("pending_state_updates") as batch:
        batch.drop_column("processing_started_at")
