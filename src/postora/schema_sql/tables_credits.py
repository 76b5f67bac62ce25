"""CREATE TABLE statements for credit accounts and the ledger."""

USER_CREDITS = """
CREATE TABLE user_credits (
    user_id                VARCHAR(64) PRIMARY KEY,
    available_credits      INTEGER NOT NULL DEFAULT 0
                           CONSTRAINT ck_available_nonneg CHECK (available_credits >= 0),
    total_credits_received INTEGER NOT NULL DEFAULT 0
                           CONSTRAINT ck_total_nonneg CHECK (total_credits_received >= 0),
    credits_used           INTEGER NOT NULL DEFAULT 0
                           CONSTRAINT ck_used_nonneg CHECK (credits_used >= 0),
    created_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at             TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT ck_balance_reconciled
        CHECK (available_credits = total_credits_received - credits_used)
);
"""

CREDIT_TRANSACTIONS = """
CREATE TABLE credit_transactions (
    txn_id           BIGSERIAL PRIMARY KEY,
    transaction_uuid UUID NOT NULL UNIQUE DEFAULT gen_random_uuid(),
    user_id          VARCHAR(64) NOT NULL REFERENCES user_credits(user_id),
    amount           INTEGER NOT NULL
                     CONSTRAINT ck_credit_txn_nonzero CHECK (amount <> 0),
    transaction_type VARCHAR(40) NOT NULL
                     CONSTRAINT ck_credit_txn_type
                     CHECK (transaction_type IN (
                         'initial_credits','free_trial','purchase',
                         'subscription_renewal','image_generation',
                         'social_post_generation','manual_addition','refund'
                     )),
    metadata         JSONB NOT NULL DEFAULT '{}'::jsonb,
    idempotency_key  VARCHAR(255),
    created_at       TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

LEDGER_IDEMPOTENCY_KEYS = """
CREATE TABLE ledger_idempotency_keys (
    idempotency_key VARCHAR(255) PRIMARY KEY,
    user_id         VARCHAR(64),
    created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    USER_CREDITS,
    CREDIT_TRANSACTIONS,
    LEDGER_IDEMPOTENCY_KEYS,
]
