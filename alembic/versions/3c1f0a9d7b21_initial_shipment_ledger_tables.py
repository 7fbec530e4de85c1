"""initial shipment ledger projection tables

Revision ID: 3c1f0a9d7b21
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3c1f0a9d7b21'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at():
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def _updated_at():
    return sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade():
    op.create_table(
        "participants",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("display_name", sa.String(length=256), nullable=False),
        sa.Column("wallet_address", sa.String(length=42), nullable=False),
        sa.Column("kyc_verified", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("kyc_metadata_hash", sa.String(length=256), nullable=True),
        sa.Column("profile_json", postgresql.JSONB(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("wallet_address", name="uq_participant_wallet"),
    )
    op.create_index("ix_participants_role", "participants", ["role"])

    op.create_table(
        "shipments",
        sa.Column("id", sa.String(length=128), primary_key=True),
        sa.Column("chain_id_hex", sa.String(length=66), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("ask_price", sa.Numeric(36, 6), nullable=False),
        sa.Column("metadata_hash", sa.String(length=256), nullable=False),
        sa.Column("farmer_id", sa.String(length=128), nullable=False),
        sa.Column("farmer_wallet", sa.String(length=42), nullable=False),
        sa.Column("industry_id", sa.String(length=128), nullable=True),
        sa.Column("industry_wallet", sa.String(length=42), nullable=True),
        sa.Column("transporter_ref", sa.String(length=42), nullable=True),
        sa.Column("farmer_nominee", sa.String(length=128), nullable=True),
        sa.Column("industry_nominee", sa.String(length=128), nullable=True),
        sa.Column("ledger_seq", sa.BigInteger(), nullable=False),
        sa.Column("pending_tx", sa.String(length=66), nullable=True),
        sa.Column("revision", sa.Integer(), nullable=False),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("chain_id_hex", name="uq_shipment_chain_id"),
    )
    op.create_index("ix_shipments_status", "shipments", ["status"])
    op.create_index("ix_shipments_farmer", "shipments", ["farmer_id"])
    op.create_index("ix_shipments_industry", "shipments", ["industry_id"])

    op.create_table(
        "shipment_timeline_entries",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("shipment_id", sa.String(length=128),
                  sa.ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("details", postgresql.JSONB(), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("tentative", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("event_key", sa.String(length=96), nullable=True),
        sa.UniqueConstraint("shipment_id", "position", name="uq_timeline_position"),
        sa.UniqueConstraint("event_key", name="uq_timeline_event_key"),
    )
    op.create_index("ix_timeline_tx", "shipment_timeline_entries", ["tx_hash"])

    op.create_table(
        "shipment_weighments",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("shipment_id", sa.String(length=128),
                  sa.ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("weight_kg", sa.BigInteger(), nullable=False),
        sa.Column("weigh_hash", sa.String(length=256), nullable=False),
        sa.Column("attestor_ref", sa.String(length=42), nullable=False),
        sa.Column("nonce", sa.String(length=80), nullable=False),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("confirmed", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.UniqueConstraint("shipment_id", "nonce", name="uq_weighment_nonce"),
    )

    op.create_table(
        "escrows",
        sa.Column("chain_id_hex", sa.String(length=66), primary_key=True),
        sa.Column("shipment_id", sa.String(length=128),
                  sa.ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token", sa.String(length=42), nullable=False),
        sa.Column("amount", sa.String(length=80), nullable=False),
        sa.Column("payer", sa.String(length=42), nullable=False),
        sa.Column("farmer", sa.String(length=42), nullable=False),
        sa.Column("transporter", sa.String(length=42), nullable=False),
        sa.Column("farmer_bps", sa.Integer(), nullable=False),
        sa.Column("transporter_bps", sa.Integer(), nullable=False),
        sa.Column("platform_bps", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("deposit_tx", sa.String(length=66), nullable=True),
        sa.Column("settle_tx", sa.String(length=66), nullable=True),
        sa.Column("deposited_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
        _updated_at(),
    )
    op.create_index("ix_escrows_shipment", "escrows", ["shipment_id"])
    op.create_index("ix_escrows_status", "escrows", ["status"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column("shipment_id", sa.String(length=128),
                  sa.ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chain_id_hex", sa.String(length=66), nullable=False),
        sa.Column("raised_by", sa.String(length=128), nullable=False),
        sa.Column("raised_by_wallet", sa.String(length=42), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("prior_status", sa.String(length=32), nullable=False),
        sa.Column("resolution", sa.String(length=32), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raise_tx", sa.String(length=66), nullable=True),
        sa.Column("resolve_tx", sa.String(length=66), nullable=True),
        _created_at(),
    )
    op.create_index("ix_disputes_shipment", "disputes", ["shipment_id"])
    op.create_index("ix_disputes_status", "disputes", ["status"])

    op.create_table(
        "dispute_evidence",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("dispute_id", sa.BigInteger(),
                  sa.ForeignKey("disputes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("submitter_id", sa.String(length=128), nullable=False),
        sa.Column("evidence_hash", sa.String(length=256), nullable=False),
        sa.Column("oracle_address", sa.String(length=42), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
    )
    op.create_index("ix_evidence_dispute", "dispute_evidence", ["dispute_id", "position"])

    op.create_table(
        "pending_state_updates",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("shipment_id", sa.String(length=128),
                  sa.ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("chain_id_hex", sa.String(length=66), nullable=False),
        sa.Column("current_state", sa.Integer(), nullable=False),
        sa.Column("target_state", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        _created_at(),
        _updated_at(),
        sa.UniqueConstraint("shipment_id", "target_state", name="uq_pending_update_target"),
    )
    op.create_index("ix_pending_updates_due", "pending_state_updates", ["status", "next_attempt_at"])

    op.create_table(
        "ledger_transactions",
        sa.Column("tx_hash", sa.String(length=66), primary_key=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("shipment_id", sa.String(length=128), nullable=True),
        sa.Column("sender", sa.String(length=42), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("settled_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_ledger_tx_status", "ledger_transactions", ["status"])
    op.create_index("ix_ledger_tx_shipment", "ledger_transactions", ["shipment_id"])

    op.create_table(
        "processed_ledger_events",
        sa.Column("event_key", sa.String(length=96), primary_key=True),
        sa.Column("event_name", sa.String(length=64), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    )
    op.create_index("ix_processed_events_block", "processed_ledger_events", ["block_number"])

    op.create_table(
        "projector_cursors",
        sa.Column("name", sa.String(length=64), primary_key=True),
        sa.Column("last_block", sa.BigInteger(), nullable=False),
        _updated_at(),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("entity", sa.String(length=32), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("actor_participant_id", sa.String(length=128), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("request_id", sa.String(length=128), nullable=True),
        sa.Column("tx_hash", sa.String(length=66), nullable=True),
        sa.Column("payload_hash", sa.String(length=128), nullable=False),
        sa.Column("details_json", postgresql.JSONB(), nullable=False),
        _created_at(),
    )
    op.create_index("ix_audit_entity", "audit_logs", ["entity", "entity_id"])
    op.create_index("ix_audit_created_at", "audit_logs", ["created_at"])


def downgrade():
    for table in (
        "audit_logs",
        "projector_cursors",
        "processed_ledger_events",
        "ledger_transactions",
        "pending_state_updates",
        "dispute_evidence",
        "disputes",
        "escrows",
        "shipment_weighments",
        "shipment_timeline_entries",
        "shipments",
        "participants",
    ):
        op.drop_table(table)
