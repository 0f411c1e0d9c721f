"""Initial marketpay schema

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_PAYMENT = sa.text("status IN ('PENDING', 'PROCESSING', 'COMPLETED')")


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def _money(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.Numeric(18, 2), **kwargs)


def upgrade() -> None:
    op.create_table(
        "users",
        *_base_columns(),
        sa.Column("username", sa.String(length=100), nullable=False, unique=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("role", sa.Enum("CLIENT", "FREELANCER", "ADMIN", name="userrole"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column("external_customer_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("rating_average", sa.Numeric(3, 2), nullable=False),
        sa.Column("rating_count", sa.Integer(), nullable=False),
    )

    op.create_table(
        "projects",
        *_base_columns(),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column(
            "status",
            sa.Enum("OPEN", "IN_PROGRESS", "COMPLETED", "CANCELLED", name="projectstatus"),
            nullable=False,
        ),
    )
    op.create_index("ix_projects_client_id", "projects", ["client_id"])

    op.create_table(
        "proposals",
        *_base_columns(),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("freelancer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        _money("amount", nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "ACCEPTED", "REJECTED", "WITHDRAWN", name="proposalstatus"),
            nullable=False,
        ),
    )
    op.create_index("ix_proposals_project_id", "proposals", ["project_id"])
    op.create_index("ix_proposals_freelancer_id", "proposals", ["freelancer_id"])

    op.create_table(
        "contracts",
        *_base_columns(),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("freelancer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("project_id", sa.Integer(), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("proposal_id", sa.Integer(), sa.ForeignKey("proposals.id"), nullable=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        _money("total_amount", nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "COMPLETED", "CANCELLED", "DISPUTED", name="contractstatus"),
            nullable=False,
        ),
        sa.CheckConstraint("total_amount > 0", name="ck_contract_positive_total"),
    )
    op.create_index("ix_contracts_client_id", "contracts", ["client_id"])
    op.create_index("ix_contracts_freelancer_id", "contracts", ["freelancer_id"])
    op.create_index("ix_contracts_project_id", "contracts", ["project_id"])
    op.create_index("ix_contracts_status", "contracts", ["status"])

    op.create_table(
        "milestones",
        *_base_columns(),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id"), nullable=False),
        sa.Column("idx", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        _money("amount", nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "PENDING",
                "SUBMITTED",
                "APPROVED",
                "PAYMENT_PENDING",
                "PAID",
                "REFUNDED",
                "REJECTED",
                name="milestonestatus",
            ),
            nullable=False,
        ),
        sa.UniqueConstraint("contract_id", "idx", name="uq_milestone_idx"),
        sa.CheckConstraint("amount > 0", name="ck_milestone_positive_amount"),
        sa.CheckConstraint("idx > 0", name="ck_milestone_positive_idx"),
    )
    op.create_index("ix_milestones_contract_id", "milestones", ["contract_id"])

    op.create_table(
        "reviews",
        *_base_columns(),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id"), nullable=False),
        sa.Column("reviewer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("reviewee_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("status", sa.Enum("DRAFT", "PUBLISHED", "HIDDEN", name="reviewstatus"), nullable=False),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        sa.UniqueConstraint("contract_id", "reviewer_id", name="uq_review_contract_reviewer"),
    )
    op.create_index("ix_reviews_contract_id", "reviews", ["contract_id"])
    op.create_index("ix_reviews_reviewee_id", "reviews", ["reviewee_id"])

    op.create_table(
        "escrow_accounts",
        *_base_columns(),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("external_account_id", sa.String(length=128), nullable=False, unique=True),
        sa.Column("account_type", sa.Enum("CLIENT", "FREELANCER", name="escrowaccounttype"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("PENDING", "ACTIVE", "RESTRICTED", "SUSPENDED", name="escrowaccountstatus"),
            nullable=False,
        ),
        _money("balance", nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.CheckConstraint("balance >= 0", name="ck_escrow_account_balance_non_negative"),
    )
    op.create_index("ix_escrow_accounts_status", "escrow_accounts", ["status"])

    op.create_table(
        "payout_methods",
        *_base_columns(),
        sa.Column("escrow_account_id", sa.Integer(), sa.ForeignKey("escrow_accounts.id"), nullable=False),
        sa.Column("type", sa.Enum("BANK_ACCOUNT", "DEBIT_CARD", name="payoutmethodtype"), nullable=False),
        sa.Column("external_method_id", sa.String(length=128), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False),
        sa.Column("last4", sa.String(length=4), nullable=True),
        sa.Column("brand", sa.String(length=50), nullable=True),
        sa.Column("bank_name", sa.String(length=100), nullable=True),
        sa.Column("country", sa.String(length=2), nullable=True),
        sa.Column(
            "status",
            sa.Enum("ACTIVE", "INACTIVE", "VERIFICATION_REQUIRED", name="payoutmethodstatus"),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "escrow_account_id", "external_method_id", name="uq_payout_method_account_external"
        ),
    )
    op.create_index("ix_payout_methods_escrow_account_id", "payout_methods", ["escrow_account_id"])
    op.create_index(
        "uq_payout_methods_one_default",
        "payout_methods",
        ["escrow_account_id"],
        unique=True,
        sqlite_where=sa.text("is_default = 1"),
        postgresql_where=sa.text("is_default"),
    )

    op.create_table(
        "payments",
        *_base_columns(),
        sa.Column("contract_id", sa.Integer(), sa.ForeignKey("contracts.id"), nullable=True),
        sa.Column("milestone_id", sa.Integer(), sa.ForeignKey("milestones.id"), nullable=True),
        sa.Column("client_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("freelancer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("payout_method_id", sa.Integer(), sa.ForeignKey("payout_methods.id"), nullable=True),
        _money("amount", nullable=False),
        _money("platform_fee", nullable=False),
        _money("freelancer_amount", nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "type",
            sa.Enum("MILESTONE_PAYMENT", "WITHDRAWAL", "BONUS", name="paymenttype"),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("PENDING", "PROCESSING", "COMPLETED", "FAILED", "REFUNDED", name="paymentstatus"),
            nullable=False,
        ),
        sa.Column("external_intent_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("external_transfer_id", sa.String(length=128), nullable=True, unique=True),
        sa.Column("failure_reason", sa.String(length=255), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("escrow_release_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_payment_positive_amount"),
        sa.CheckConstraint("platform_fee >= 0", name="ck_payment_fee_non_negative"),
        sa.CheckConstraint("freelancer_amount >= 0", name="ck_payment_freelancer_amount_non_negative"),
    )
    op.create_index("ix_payments_created_at", "payments", ["created_at"])
    op.create_index("ix_payments_status", "payments", ["status"])
    op.create_index("ix_payments_client_id", "payments", ["client_id"])
    op.create_index("ix_payments_freelancer_id", "payments", ["freelancer_id"])
    op.create_index(
        "uq_payments_active_milestone",
        "payments",
        ["contract_id", "milestone_id"],
        unique=True,
        sqlite_where=ACTIVE_PAYMENT,
        postgresql_where=ACTIVE_PAYMENT,
    )

    op.create_table(
        "transactions",
        *_base_columns(),
        sa.Column("payment_id", sa.Integer(), sa.ForeignKey("payments.id"), nullable=False),
        sa.Column(
            "type",
            sa.Enum("CHARGE", "TRANSFER", "PAYOUT", "REFUND", name="transactiontype"),
            nullable=False,
        ),
        _money("amount", nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.Enum("SUCCEEDED", "FAILED", name="transactionstatus"), nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=True),
        sa.Column("description", sa.String(length=255), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=False),
        sa.CheckConstraint("amount > 0", name="ck_transaction_positive_amount"),
        sa.UniqueConstraint("payment_id", "type", name="uq_transactions_payment_type"),
    )
    op.create_index("ix_transactions_payment_id", "transactions", ["payment_id"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])
    op.create_index("ix_transactions_type", "transactions", ["type"])

    op.create_table(
        "api_keys",
        *_base_columns(),
        sa.Column("name", sa.String(length=120), nullable=False, unique=True),
        sa.Column("prefix", sa.String(length=32), nullable=False),
        sa.Column("key_hash", sa.String(length=128), nullable=False, unique=True),
        sa.Column("scope", sa.Enum("client", "freelancer", "admin", name="apiscope"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_api_keys_prefix", "api_keys", ["prefix"])
    op.create_index("ix_api_keys_user_id", "api_keys", ["user_id"])

    op.create_table(
        "audit_logs",
        *_base_columns(),
        sa.Column("actor", sa.String(length=100), nullable=False),
        sa.Column("action", sa.String(length=100), nullable=False),
        sa.Column("entity", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=False),
        sa.Column("at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_entity", "audit_logs", ["entity", "entity_id"])

    op.create_table(
        "alerts",
        *_base_columns(),
        sa.Column("type", sa.String(length=100), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("message", sa.String(length=255), nullable=False),
        sa.Column("actor_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
    )
    op.create_index("ix_alerts_type", "alerts", ["type"])
    op.create_index("ix_alerts_created_at", "alerts", ["created_at"])

    op.create_table(
        "scheduler_locks",
        *_base_columns(),
        sa.Column("name", sa.String(length=64), nullable=False, unique=True),
        sa.Column("owner", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    for table in (
        "scheduler_locks",
        "alerts",
        "audit_logs",
        "api_keys",
        "transactions",
        "payments",
        "payout_methods",
        "escrow_accounts",
        "reviews",
        "milestones",
        "contracts",
        "proposals",
        "projects",
        "users",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in (
            "apiscope",
            "transactionstatus",
            "transactiontype",
            "paymentstatus",
            "paymenttype",
            "payoutmethodstatus",
            "payoutmethodtype",
            "escrowaccountstatus",
            "escrowaccounttype",
            "reviewstatus",
            "milestonestatus",
            "contractstatus",
            "proposalstatus",
            "projectstatus",
            "userrole",
        ):
            sa.Enum(name=enum_name).drop(bind, checkfirst=True)
