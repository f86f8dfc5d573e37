"""Create credit ledger tables: users, credit_ledger, credit_grants.

Revision ID: 001_credit_ledger
Revises:
Create Date: 2026-10-18

Column types are dialect-neutral (Uuid, JSON with a JSONB variant) so the
same revision runs on PostgreSQL and on SQLite in tests.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_credit_ledger"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    # Balance owners. credit_balance_version guards every balance write.
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("external_id", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column(
            "is_active", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "credit_balance", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "credit_balance_version",
            sa.Integer(),
            nullable=False,
            server_default="0",
        ),
        sa.Column(
            "low_balance_threshold",
            sa.Integer(),
            nullable=False,
            server_default="5",
        ),
        sa.Column(
            "auto_top_up_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.false(),
        ),
        sa.Column(
            "auto_top_up_amount", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "credit_balance >= 0", name="ck_users_credit_balance_nonneg"
        ),
        sa.CheckConstraint(
            "low_balance_threshold >= 0",
            name="ck_users_low_balance_threshold_nonneg",
        ),
        sa.CheckConstraint(
            "auto_top_up_amount >= 0", name="ck_users_auto_top_up_amount_nonneg"
        ),
    )
    op.create_index("ix_users_external_id", "users", ["external_id"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    # Append-only ledger. Rows are never updated or deleted.
    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column("entry_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(500), nullable=True),
        sa.Column("idempotency_key", sa.String(255), nullable=False),
        sa.Column("breakdown", _JSON, nullable=True),
        sa.Column("metadata", _JSON, nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.String(100), nullable=True),
        sa.Column("environment", sa.String(20), nullable=True),
        sa.Column("external_job_id", sa.String(255), nullable=True),
        sa.Column(
            "original_entry_id",
            sa.Uuid(),
            sa.ForeignKey("credit_ledger.id"),
            nullable=True,
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "entry_type IN ('grant', 'deduction', 'refund', 'expiry')",
            name="ck_credit_ledger_entry_type_valid",
        ),
        sa.CheckConstraint("amount <> 0", name="ck_credit_ledger_amount_nonzero"),
        sa.CheckConstraint(
            "balance_after >= 0", name="ck_credit_ledger_balance_after_nonneg"
        ),
        sa.UniqueConstraint(
            "idempotency_key", name="uq_credit_ledger_idempotency_key"
        ),
    )
    op.create_index(
        "ix_credit_ledger_user_created", "credit_ledger", ["user_id", "created_at"]
    )
    op.create_index(
        "ix_credit_ledger_original_entry", "credit_ledger", ["original_entry_id"]
    )

    # Time-boxed grants consumed FIFO by expires_at.
    op.create_table(
        "credit_grants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Uuid(),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column("source_type", sa.String(20), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("used_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "ledger_entry_id",
            sa.Uuid(),
            sa.ForeignKey("credit_ledger.id"),
            nullable=True,
        ),
        sa.Column("source_reference", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint("amount > 0", name="ck_credit_grants_amount_positive"),
        sa.CheckConstraint("used_amount >= 0", name="ck_credit_grants_used_nonneg"),
        sa.CheckConstraint(
            "used_amount <= amount", name="ck_credit_grants_used_within_amount"
        ),
        sa.CheckConstraint(
            "source_type IN ('subscription', 'topup', 'manual')",
            name="ck_credit_grants_source_type_valid",
        ),
    )
    op.create_index(
        "ix_credit_grants_user_expires", "credit_grants", ["user_id", "expires_at"]
    )
    # Sweep lookup: unswept grants ordered by expiry
    op.create_index(
        "ix_credit_grants_unswept",
        "credit_grants",
        ["expires_at"],
        postgresql_where=sa.text("expired_at IS NULL"),
        sqlite_where=sa.text("expired_at IS NULL"),
    )


def downgrade() -> None:
    op.drop_index("ix_credit_grants_unswept", table_name="credit_grants")
    op.drop_index("ix_credit_grants_user_expires", table_name="credit_grants")
    op.drop_table("credit_grants")
    op.drop_index("ix_credit_ledger_original_entry", table_name="credit_ledger")
    op.drop_index("ix_credit_ledger_user_created", table_name="credit_ledger")
    op.drop_table("credit_ledger")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_external_id", table_name="users")
    op.drop_table("users")
