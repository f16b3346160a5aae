"""initial escrow schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(18, 2)

USER_ROLE = sa.Enum("COMPANY", "PROVIDER", "ADMIN", name="userrole")
API_SCOPE = sa.Enum("company", "provider", "admin", name="apiscope")
PROJECT_STATUS = sa.Enum("IN_PROGRESS", "COMPLETED", "DISPUTED", "CANCELLED", name="projectstatus")
MILESTONE_STATUS = sa.Enum(
    "DRAFT",
    "PENDING",
    "LOCKED",
    "IN_PROGRESS",
    "SUBMITTED",
    "APPROVED",
    "PAID",
    "CANCELLED",
    "REJECTED",
    "DISPUTED",
    name="milestonestatus",
)
PAYMENT_STATUS = sa.Enum(
    "PENDING",
    "IN_PROGRESS",
    "ESCROWED",
    "RELEASED",
    "TRANSFERRED",
    "REFUNDED",
    "FAILED",
    "DISPUTED",
    name="paymentstatus",
)
BANK_TRANSFER_STATUS = sa.Enum("PENDING", "COMPLETED", name="banktransferstatus")
DISPUTE_STATUS = sa.Enum("OPEN", "UNDER_REVIEW", "RESOLVED", "CLOSED", "REJECTED", name="disputestatus")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("role", USER_ROLE, nullable=False),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("bank_name", sa.String(length=120), nullable=True),
        sa.Column("bank_account_number", sa.String(length=64), nullable=True),
        sa.Column("bank_account_name", sa.String(length=120), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "api_keys",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("prefix", sa.String(length=32), nullable=False, index=True),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("scope", API_SCOPE, nullable=False),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True, index=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "projects",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("customer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("provider_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("approved_price", MONEY, nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="MYR"),
        sa.Column("status", PROJECT_STATUS, nullable=False),
        sa.Column("milestones_locked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("company_approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("provider_approved", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("milestones_approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("approved_price > 0", name="ck_project_positive_price"),
        sa.CheckConstraint(
            "NOT milestones_locked OR (company_approved AND provider_approved)",
            name="ck_project_lock_requires_both_approvals",
        ),
    )

    op.create_table(
        "milestones",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id"), nullable=False, index=True),
        sa.Column("sequence", sa.Integer, nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("due_date", sa.Date, nullable=False),
        sa.Column("status", MILESTONE_STATUS, nullable=False),
        sa.Column("is_paid", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_deliverables", sa.JSON, nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submit_deliverables", sa.JSON, nullable=True),
        sa.Column("submission_note", sa.Text, nullable=True),
        sa.Column("submission_attachment_url", sa.String(length=500), nullable=True),
        sa.Column("revision_number", sa.Integer, nullable=False, server_default="0"),
        sa.Column("submission_history", sa.JSON, nullable=False),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.UniqueConstraint("project_id", "sequence", name="uq_milestone_project_sequence"),
        sa.CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        sa.CheckConstraint("sequence > 0", name="ck_milestone_positive_sequence"),
        sa.CheckConstraint("revision_number >= 0", name="ck_milestone_revision_non_negative"),
    )

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("milestone_id", sa.Integer, sa.ForeignKey("milestones.id"), nullable=False, index=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id"), nullable=False, index=True),
        sa.Column("customer_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("provider_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("platform_fee_amount", MONEY, nullable=False),
        sa.Column("provider_amount", MONEY, nullable=False),
        sa.Column("original_amount", MONEY, nullable=False),
        sa.Column("refunded_amount", MONEY, nullable=False, server_default="0"),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="MYR"),
        sa.Column("status", PAYMENT_STATUS, nullable=False),
        sa.Column("gateway_intent_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("gateway_charge_id", sa.String(length=128), nullable=True, index=True),
        sa.Column("gateway_refund_id", sa.String(length=128), nullable=True),
        sa.Column("failure_reason", sa.Text, nullable=True),
        sa.Column("escrowed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("bank_transfer_status", BANK_TRANSFER_STATUS, nullable=True),
        sa.Column("bank_transfer_ref", sa.String(length=255), nullable=True),
        sa.Column("bank_transfer_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_by", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("redo_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
        sa.CheckConstraint("amount >= 0", name="ck_payment_non_negative_amount"),
        sa.CheckConstraint("refunded_amount >= 0", name="ck_payment_non_negative_refund"),
    )
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_milestone_status", "payments", ["milestone_id", "status"])

    op.create_table(
        "disputes",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("project_id", sa.Integer, sa.ForeignKey("projects.id"), nullable=False, index=True),
        sa.Column("milestone_id", sa.Integer, sa.ForeignKey("milestones.id"), nullable=True, index=True),
        sa.Column("payment_id", sa.Integer, sa.ForeignKey("payments.id"), nullable=True, index=True),
        sa.Column("raised_by", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("contested_amount", MONEY, nullable=True),
        sa.Column("status", DISPUTE_STATUS, nullable=False),
        sa.Column("gateway_dispute_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        *_timestamps(),
    )

    op.create_table(
        "dispute_resolution_notes",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("dispute_id", sa.Integer, sa.ForeignKey("disputes.id"), nullable=False, index=True),
        sa.Column("note", sa.Text, nullable=False),
        sa.Column("admin_id", sa.Integer, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("admin_name", sa.String(length=100), nullable=False, server_default="Admin"),
        *_timestamps(),
    )

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("metadata_json", sa.JSON, nullable=False),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("data_json", sa.JSON, nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "psp_webhook_events",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("provider", sa.String(length=50), nullable=False, server_default="stripe"),
        sa.Column("event_id", sa.String(length=100), nullable=False),
        sa.Column("kind", sa.String(length=80), nullable=False),
        sa.Column("psp_ref", sa.String(length=128), nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("raw_json", sa.JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("provider", "event_id", name="uq_psp_webhook_events_provider_event_id"),
    )
    op.create_index("ix_psp_webhook_events_received", "psp_webhook_events", ["received_at"])
    op.create_index("ix_psp_webhook_events_kind", "psp_webhook_events", ["kind"])

    op.create_table(
        "scheduler_locks",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )


def downgrade() -> None:
    op.drop_table("scheduler_locks")
    op.drop_index("ix_psp_webhook_events_kind", table_name="psp_webhook_events")
    op.drop_index("ix_psp_webhook_events_received", table_name="psp_webhook_events")
    op.drop_table("psp_webhook_events")
    op.drop_index("ix_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("notifications")
    op.drop_table("dispute_resolution_notes")
    op.drop_table("disputes")
    op.drop_index("ix_payments_milestone_status", table_name="payments")
    op.drop_index("ix_payments_status", table_name="payments")
    op.drop_table("payments")
    op.drop_table("milestones")
    op.drop_table("projects")
    op.drop_table("api_keys")
    op.drop_table("users")
    for enum in (
        DISPUTE_STATUS,
        BANK_TRANSFER_STATUS,
        PAYMENT_STATUS,
        MILESTONE_STATUS,
        PROJECT_STATUS,
        API_SCOPE,
        USER_ROLE,
    ):
        enum.drop(op.get_bind(), checkfirst=True)
