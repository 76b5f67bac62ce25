"""All CREATE INDEX statements for the initial schema."""

ALL = [
    # credit_transactions
    "CREATE INDEX idx_credit_txn_user_created "
    "ON credit_transactions(user_id, created_at DESC);",
    "CREATE INDEX idx_credit_txn_idempotency ON credit_transactions(idempotency_key) "
    "WHERE idempotency_key IS NOT NULL;",
    # subscriptions
    "CREATE INDEX idx_subscriptions_user ON subscriptions(user_id, created_at DESC);",
    "CREATE INDEX idx_subscriptions_live ON subscriptions(user_id) "
    "WHERE status <> 'canceled';",
    # purchases
    "CREATE INDEX idx_purchases_user ON purchases(user_id, created_at DESC);",
]
