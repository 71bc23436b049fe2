"""create dunning sequence, attempt, note and retry policy tables

Revision ID: a1d2c3e4f5b6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision = "a1d2c3e4f5b6"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create dunning_sequences table
    op.create_table(
        "dunning_sequences",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("invoice_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_id", sa.String(length=36), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("attempts_made", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retry_offsets_days", sa.JSON(), nullable=False),
        sa.Column("escalation_threshold", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("amount_at_risk_cents", sa.Numeric(precision=12, scale=4), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("schedule_anchor_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notification_steps", sa.JSON(), nullable=False),
        sa.Column("next_notification_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("exhausted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_remaining_us", sa.BigInteger(), nullable=True),
        sa.Column("paused_from_status", sa.String(length=20), nullable=True),
        sa.Column("pause_reason", sa.Text(), nullable=True),
        sa.Column("assigned_csm_id", sa.String(length=36), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("last_failure_reason", sa.Text(), nullable=True),
        sa.Column("recovery_method", sa.String(length=50), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("notes_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_dunning_sequences_organization_id", "dunning_sequences", ["organization_id"]
    )
    op.create_index("ix_dunning_sequences_invoice_id", "dunning_sequences", ["invoice_id"])
    op.create_index(
        "ix_dunning_sequences_subscription_id", "dunning_sequences", ["subscription_id"]
    )
    op.create_index("ix_dunning_sequences_next_retry_at", "dunning_sequences", ["next_retry_at"])
    op.create_index(
        "ix_dunning_sequences_next_notification_at", "dunning_sequences", ["next_notification_at"]
    )
    op.create_index(
        "ix_dunning_sequences_assigned_csm_id", "dunning_sequences", ["assigned_csm_id"]
    )
    op.create_index(
        "ix_dunning_sequences_status_next_retry",
        "dunning_sequences",
        ["status", "next_retry_at"],
    )

    # Create dunning_attempts table
    op.create_table(
        "dunning_attempts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("dunning_sequence_id", sa.String(length=36), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("outcome", sa.String(length=20), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(length=100), nullable=True),
        sa.Column(
            "triggered_by",
            sa.String(length=20),
            nullable=False,
            server_default="orchestrator",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["dunning_sequence_id"],
            ["dunning_sequences.id"],
            name="fk_dunning_attempts_sequence_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_dunning_attempts_dunning_sequence_id",
        "dunning_attempts",
        ["dunning_sequence_id"],
    )

    # Create dunning_notes table
    op.create_table(
        "dunning_notes",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("dunning_sequence_id", sa.String(length=36), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("author", sa.String(length=255), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["dunning_sequence_id"],
            ["dunning_sequences.id"],
            name="fk_dunning_notes_sequence_id",
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_dunning_notes_dunning_sequence_id",
        "dunning_notes",
        ["dunning_sequence_id"],
    )

    # Create dunning_retry_policies table
    op.create_table(
        "dunning_retry_policies",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("plan_code", sa.String(length=255), nullable=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("offsets_days", sa.JSON(), nullable=False),
        sa.Column("escalation_threshold", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("(CURRENT_TIMESTAMP)"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "organization_id", "plan_code", name="uq_dunning_retry_policies_org_plan"
        ),
    )
    op.create_index(
        "ix_dunning_retry_policies_organization_id",
        "dunning_retry_policies",
        ["organization_id"],
    )


def downgrade() -> None:
    op.drop_index(
        "ix_dunning_retry_policies_organization_id", table_name="dunning_retry_policies"
    )
    op.drop_table("dunning_retry_policies")

    op.drop_index("ix_dunning_notes_dunning_sequence_id", table_name="dunning_notes")
    op.drop_table("dunning_notes")

    op.drop_index("ix_dunning_attempts_dunning_sequence_id", table_name="dunning_attempts")
    op.drop_table("dunning_attempts")

    op.drop_index("ix_dunning_sequences_status_next_retry", table_name="dunning_sequences")
    op.drop_index("ix_dunning_sequences_assigned_csm_id", table_name="dunning_sequences")
    op.drop_index("ix_dunning_sequences_next_notification_at", table_name="dunning_sequences")
    op.drop_index("ix_dunning_sequences_next_retry_at", table_name="dunning_sequences")
    op.drop_index("ix_dunning_sequences_subscription_id", table_name="dunning_sequences")
    op.drop_index("ix_dunning_sequences_invoice_id", table_name="dunning_sequences")
    op.drop_index("ix_dunning_sequences_organization_id", table_name="dunning_sequences")
    op.drop_table("dunning_sequences")
