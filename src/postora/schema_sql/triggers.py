"""Trigger functions and trigger DDL for the initial schema."""

# ---- Trigger functions ----

FN_RAISE_IMMUTABLE = """
CREATE OR REPLACE FUNCTION raise_immutable_error()
RETURNS TRIGGER AS $$
BEGIN
    RAISE EXCEPTION 'Rows in table % are immutable', TG_TABLE_NAME;
END;
$$ LANGUAGE plpgsql;
"""

FN_KEEP_SUBSCRIPTION_CANCELED = """
CREATE OR REPLACE FUNCTION keep_subscription_canceled()
RETURNS TRIGGER AS $$
BEGIN
    IF OLD.status = 'canceled' AND NEW.status <> 'canceled' THEN
        RAISE EXCEPTION 'Subscription % is canceled', OLD.stripe_subscription_id;
    END IF;
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

FUNCTIONS_ALL = [
    FN_RAISE_IMMUTABLE,
    FN_KEEP_SUBSCRIPTION_CANCELED,
]

# ---- Triggers ----

TRIGGERS_ALL = [
    "CREATE TRIGGER trg_credit_transactions_immutable "
    "BEFORE UPDATE OR DELETE ON credit_transactions "
    "FOR EACH ROW EXECUTE FUNCTION raise_immutable_error();",

    "CREATE TRIGGER trg_idempotency_keys_immutable "
    "BEFORE UPDATE OR DELETE ON ledger_idempotency_keys "
    "FOR EACH ROW EXECUTE FUNCTION raise_immutable_error();",

    "CREATE TRIGGER trg_subscription_canceled_terminal "
    "BEFORE UPDATE ON subscriptions "
    "FOR EACH ROW EXECUTE FUNCTION keep_subscription_canceled();",
]
