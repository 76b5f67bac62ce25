"""Initial schema -- credit ledger, billing mirror, indexes and protective triggers.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op

from postora.schema_sql import (
    indexes,
    tables_billing,
    tables_credits,
    triggers,
)

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _execute_all(statements: list[str]) -> None:
    """Execute a list of SQL statements sequentially."""
    for stmt in statements:
        op.execute(stmt)


def upgrade() -> None:
    _execute_all(tables_credits.ALL)
    _execute_all(tables_billing.ALL)
    _execute_all(indexes.ALL)
    _execute_all(triggers.FUNCTIONS_ALL)
    _execute_all(triggers.TRIGGERS_ALL)


def downgrade() -> None:
    _drop_triggers()
    _drop_functions()
    _drop_tables()


def _drop_triggers() -> None:
    op.execute(
        "DROP TRIGGER IF EXISTS trg_subscription_canceled_terminal ON subscriptions;"
    )
    op.execute(
        "DROP TRIGGER IF EXISTS trg_idempotency_keys_immutable "
        "ON ledger_idempotency_keys;"
    )
    op.execute(
        "DROP TRIGGER IF EXISTS trg_credit_transactions_immutable "
        "ON credit_transactions;"
    )


def _drop_functions() -> None:
    op.execute("DROP FUNCTION IF EXISTS keep_subscription_canceled();")
    op.execute("DROP FUNCTION IF EXISTS raise_immutable_error();")


def _drop_tables() -> None:
    tables = [
        "purchases",
        "subscriptions",
        "ledger_idempotency_keys",
        "credit_transactions",
        "user_credits",
    ]
    for table in tables:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
