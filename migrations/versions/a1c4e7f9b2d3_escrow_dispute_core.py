"""escrow accounts, partial payments, disputes, ledger and outbox

Revision ID: a1c4e7f9b2d3
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "a1c4e7f9b2d3"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(bind, table_name: str) -> bool:
    try:
        return sa.inspect(bind).has_table(table_name)
    except Exception:
        return False


def _money(name: str, nullable: bool = False):
    return sa.Column(name, sa.Numeric(14, 2), nullable=nullable)


def upgrade():
    bind = op.get_bind()

    if not _table_exists(bind, "escrow_accounts"):
        op.create_table(
            "escrow_accounts",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("customer_id", sa.String(length=64), nullable=False),
            sa.Column("store_id", sa.String(length=64), nullable=False),
            _money("amount"),
            sa.Column("payment_method", sa.String(length=32), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="held"),
            sa.Column("transaction_id", sa.String(length=64), nullable=False),
            sa.Column("release_conditions", sa.Text(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=False),
            sa.Column("dispute_deadline", sa.DateTime(), nullable=False),
            sa.Column("disputed_at", sa.DateTime(), nullable=True),
            sa.Column("released_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("released_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("resolved_decision_id", sa.Integer(), nullable=True),
            sa.Column("frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("transaction_id"),
        )
        op.create_index("ix_escrow_accounts_order_id", "escrow_accounts", ["order_id"], unique=True)
        op.create_index("ix_escrow_accounts_customer_id", "escrow_accounts", ["customer_id"])
        op.create_index("ix_escrow_accounts_store_id", "escrow_accounts", ["store_id"])
        op.create_index("ix_escrow_accounts_status", "escrow_accounts", ["status"])
        op.create_index("ix_escrow_accounts_dispute_deadline", "escrow_accounts", ["dispute_deadline"])

    if not _table_exists(bind, "partial_payments"):
        op.create_table(
            "partial_payments",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("customer_id", sa.String(length=64), nullable=False),
            sa.Column("store_id", sa.String(length=64), nullable=False),
            _money("total_amount"),
            sa.Column("paid_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("remaining_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("percentage", sa.Numeric(5, 2), nullable=False),
            sa.Column("payment_method", sa.String(length=32), nullable=True),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("transaction_id", sa.String(length=64), nullable=False),
            sa.Column("due_date", sa.DateTime(), nullable=True),
            sa.Column("paid_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("transaction_id"),
        )
        op.create_index("ix_partial_payments_order_id", "partial_payments", ["order_id"], unique=True)
        op.create_index("ix_partial_payments_customer_id", "partial_payments", ["customer_id"])
        op.create_index("ix_partial_payments_store_id", "partial_payments", ["store_id"])
        op.create_index("ix_partial_payments_status", "partial_payments", ["status"])

    if not _table_exists(bind, "disputes"):
        op.create_table(
            "disputes",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("escrow_id", sa.Integer(), sa.ForeignKey("escrow_accounts.id"), nullable=True),
            sa.Column("active_escrow_key", sa.Integer(), nullable=True),
            sa.Column("conversation_id", sa.String(length=64), nullable=True),
            sa.Column("customer_id", sa.String(length=64), nullable=False),
            sa.Column("store_id", sa.String(length=64), nullable=False),
            sa.Column("opened_by", sa.String(length=64), nullable=False),
            sa.Column("opened_by_role", sa.String(length=16), nullable=False),
            sa.Column("dispute_type", sa.String(length=16), nullable=False, server_default="other"),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="open"),
            sa.Column("priority", sa.String(length=16), nullable=False, server_default="medium"),
            sa.Column("subject", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=False),
            sa.Column("admin_notes", sa.Text(), nullable=True),
            sa.Column("resolution", sa.Text(), nullable=True),
            sa.Column("resolution_type", sa.String(length=24), nullable=True),
            sa.Column("refund_amount", sa.Numeric(14, 2), nullable=True),
            sa.Column("assigned_admin_id", sa.String(length=64), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.Column("resolved_at", sa.DateTime(), nullable=True),
            sa.Column("closed_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("active_escrow_key"),
        )
        for col in ("order_id", "escrow_id", "conversation_id", "customer_id", "store_id", "status", "priority", "assigned_admin_id", "created_at"):
            op.create_index(f"ix_disputes_{col}", "disputes", [col])

    if not _table_exists(bind, "dispute_evidence"):
        op.create_table(
            "dispute_evidence",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=False),
            sa.Column("uploaded_by", sa.String(length=64), nullable=False),
            sa.Column("uploaded_by_role", sa.String(length=16), nullable=False),
            sa.Column("evidence_type", sa.String(length=16), nullable=False),
            sa.Column("file_url", sa.String(length=1024), nullable=False),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("file_size", sa.BigInteger(), nullable=False),
            sa.Column("file_type", sa.String(length=120), nullable=True),
            sa.Column("checksum", sa.String(length=128), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("verified_by", sa.String(length=64), nullable=True),
            sa.Column("verified_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_dispute_evidence_dispute_id", "dispute_evidence", ["dispute_id"])

    if not _table_exists(bind, "dispute_actions"):
        op.create_table(
            "dispute_actions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=False),
            sa.Column("action_type", sa.String(length=24), nullable=False),
            sa.Column("performed_by", sa.String(length=64), nullable=False),
            sa.Column("performed_by_role", sa.String(length=16), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=False, server_default=""),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_dispute_actions_dispute_id", "dispute_actions", ["dispute_id"])
        op.create_index("ix_dispute_actions_action_type", "dispute_actions", ["action_type"])

    if not _table_exists(bind, "dispute_decisions"):
        op.create_table(
            "dispute_decisions",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("dispute_id", sa.Integer(), sa.ForeignKey("disputes.id"), nullable=False),
            sa.Column("admin_id", sa.String(length=64), nullable=False),
            sa.Column("decision_type", sa.String(length=24), nullable=False),
            sa.Column("decision_reason", sa.Text(), nullable=False),
            sa.Column("customer_penalty", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("store_penalty", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("refund_amount", sa.Numeric(14, 2), nullable=False, server_default="0"),
            sa.Column("additional_notes", sa.Text(), nullable=True),
            sa.Column("is_final", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("finalized_at", sa.DateTime(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("dispute_id"),
        )

    if not _table_exists(bind, "ledger_entries"):
        op.create_table(
            "ledger_entries",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("order_id", sa.String(length=64), nullable=False),
            sa.Column("account_type", sa.String(length=16), nullable=False),
            sa.Column("account_id", sa.Integer(), nullable=False),
            sa.Column("sequence", sa.Integer(), nullable=False),
            sa.Column("payment_type", sa.String(length=16), nullable=False),
            _money("amount"),
            sa.Column("action", sa.String(length=16), nullable=False),
            sa.Column("resulting_status", sa.String(length=16), nullable=False),
            sa.Column("transaction_id", sa.String(length=64), nullable=True),
            sa.Column("decision_id", sa.Integer(), nullable=True),
            sa.Column("notes", sa.String(length=500), nullable=True),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("actor_role", sa.String(length=16), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("account_type", "account_id", "sequence", name="uq_ledger_account_sequence"),
        )
        op.create_index("ix_ledger_entries_order_id", "ledger_entries", ["order_id"])
        op.create_index("ix_ledger_entries_created_at", "ledger_entries", ["created_at"])

    if not _table_exists(bind, "domain_events"):
        op.create_table(
            "domain_events",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("event_type", sa.String(length=80), nullable=False),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("subject_type", sa.String(length=40), nullable=True),
            sa.Column("subject_id", sa.String(length=64), nullable=True),
            sa.Column("recipients_json", sa.Text(), nullable=True),
            sa.Column("request_id", sa.String(length=80), nullable=True),
            sa.Column("idempotency_key", sa.String(length=180), nullable=True),
            sa.Column("severity", sa.String(length=16), nullable=False, server_default="INFO"),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("delivery_status", sa.String(length=16), nullable=False, server_default="queued"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.String(length=500), nullable=True),
            sa.Column("dispatched_at", sa.DateTime(), nullable=True),
            sa.UniqueConstraint("idempotency_key"),
        )
        for col in ("created_at", "event_type", "subject_type", "subject_id", "delivery_status"):
            op.create_index(f"ix_domain_events_{col}", "domain_events", [col])

    if not _table_exists(bind, "job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("stats_json", sa.Text(), nullable=True),
        )
        op.create_index("ix_job_runs_job_name", "job_runs", ["job_name"])
        op.create_index("ix_job_runs_ran_at", "job_runs", ["ran_at"])
        op.create_index("ix_job_runs_ok", "job_runs", ["ok"])

    if not _table_exists(bind, "idempotency_keys"):
        op.create_table(
            "idempotency_keys",
            sa.Column("id", sa.Integer(), primary_key=True),
            sa.Column("key", sa.String(length=128), nullable=False),
            sa.Column("scope", sa.String(length=128), nullable=False, server_default=""),
            sa.Column("actor_id", sa.String(length=64), nullable=True),
            sa.Column("request_hash", sa.String(length=64), nullable=False, server_default=""),
            sa.Column("response_json", sa.Text(), nullable=True),
            sa.Column("status_code", sa.Integer(), nullable=False, server_default="200"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        )
        op.create_index("ix_idempotency_keys_key", "idempotency_keys", ["key"])


def downgrade():
    for table in (
        "idempotency_keys",
        "job_runs",
        "domain_events",
        "ledger_entries",
        "dispute_decisions",
        "dispute_actions",
        "dispute_evidence",
        "disputes",
        "partial_payments",
        "escrow_accounts",
    ):
        op.drop_table(table)
