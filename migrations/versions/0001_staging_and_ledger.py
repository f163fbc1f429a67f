"""Bank statements, staged transactions and ledger transactions."""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_staging_and_ledger"
down_revision = None
branch_labels = None
depends_on = None

ENUM_NAMES = (
    "transaction_direction_enum",
    "transaction_source_enum",
    "staged_transaction_status_enum",
    "user_decision_enum",
)


def upgrade() -> None:
    direction_enum = sa.Enum("INCOME", "EXPENSE", "TRANSFER", name="transaction_direction_enum")
    source_enum = sa.Enum("PDF", "MANUAL", "CSV", "HYBRID", name="transaction_source_enum")
    status_enum = sa.Enum(
        "PENDING",
        "MATCHED",
        "UNIQUE",
        "COMMITTED",
        "DISCARDED",
        name="staged_transaction_status_enum",
    )
    decision_enum = sa.Enum("KEEP", "DISCARD", name="user_decision_enum")
    # Types already created with staged_transactions
    ledger_direction_enum = postgresql.ENUM(name="transaction_direction_enum", create_type=False)
    ledger_source_enum = postgresql.ENUM(name="transaction_source_enum", create_type=False)

    op.create_table(
        "bank_statements",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("institution", sa.String(length=100), nullable=True),
        sa.Column("account_last4", sa.String(length=4), nullable=True),
        sa.Column("period_start", sa.Date(), nullable=True),
        sa.Column("period_end", sa.Date(), nullable=True),
        sa.Column("opening_balance", sa.Numeric(18, 2), nullable=True),
        sa.Column("closing_balance", sa.Numeric(18, 2), nullable=True),
        sa.Column("transaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "staged_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("bank_statement_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("txn_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("direction", direction_enum, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("merchant", sa.String(length=255), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=True),
        sa.Column("reference", sa.String(length=100), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("source", source_enum, nullable=False),
        sa.Column("raw_text", sa.Text(), nullable=True),
        sa.Column("dedup_hash", sa.String(length=64), nullable=False),
        sa.Column("status", status_enum, nullable=False),
        sa.Column("match_group_id", sa.String(length=64), nullable=True),
        sa.Column("match_score", sa.Float(), nullable=True),
        sa.Column("matched_with_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("user_decision", decision_enum, nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["bank_statement_id"], ["bank_statements.id"], ondelete="SET NULL"),
    )
    op.create_index("ix_staged_transactions_session_id", "staged_transactions", ["session_id"])
    op.create_index("ix_staged_transactions_bank_statement_id", "staged_transactions", ["bank_statement_id"])
    op.create_index("ix_staged_transactions_dedup_hash", "staged_transactions", ["dedup_hash"])
    op.create_index("ix_staged_transactions_match_group_id", "staged_transactions", ["match_group_id"])
    op.create_index(
        "ix_staged_transactions_session_status",
        "staged_transactions",
        ["session_id", "status"],
    )

    op.create_table(
        "ledger_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.String(length=64), nullable=False),
        sa.Column("bank_statement_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("source_key", sa.String(length=80), nullable=False),
        sa.Column("txn_date", sa.Date(), nullable=False),
        sa.Column("amount", sa.Numeric(18, 2), nullable=False),
        sa.Column("direction", ledger_direction_enum, nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("merchant", sa.String(length=255), nullable=True),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("reference", sa.String(length=100), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("source", ledger_source_enum, nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["bank_statement_id"], ["bank_statements.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("source_key", name="uq_ledger_transactions_source_key"),
    )
    op.create_index("ix_ledger_transactions_session_id", "ledger_transactions", ["session_id"])
    op.create_index("ix_ledger_transactions_bank_statement_id", "ledger_transactions", ["bank_statement_id"])


def downgrade() -> None:
    op.drop_table("ledger_transactions")
    op.drop_table("staged_transactions")
    op.drop_table("bank_statements")
    bind = op.get_bind()
    for name in ENUM_NAMES:
        sa.Enum(name=name).drop(bind, checkfirst=True)
