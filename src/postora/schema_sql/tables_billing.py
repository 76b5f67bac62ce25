"""CREATE TABLE statements for the subscription mirror and purchases."""

SUBSCRIPTIONS = """
CREATE TABLE subscriptions (
    stripe_subscription_id VARCHAR(255) PRIMARY KEY,
    user_id              VARCHAR(64) NOT NULL,
    plan_id              VARCHAR(50) NOT NULL,
    status               VARCHAR(20) NOT NULL
                         CONSTRAINT ck_subscription_status
                         CHECK (status IN ('active','cancel_pending','canceled')),
    provider_status      VARCHAR(30),
    current_period_start TIMESTAMPTZ,
    current_period_end   TIMESTAMPTZ,
    cancel_at_period_end BOOLEAN NOT NULL DEFAULT FALSE,
    cancel_at            TIMESTAMPTZ,
    canceled_at          TIMESTAMPTZ,
    created_at           TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at           TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

PURCHASES = """
CREATE TABLE purchases (
    purchase_id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id                  VARCHAR(64) NOT NULL,
    plan_id                  VARCHAR(50) NOT NULL,
    credits                  INTEGER NOT NULL
                             CONSTRAINT ck_purchase_credits_nonneg CHECK (credits >= 0),
    stripe_payment_intent_id VARCHAR(255) NOT NULL UNIQUE,
    amount_cents             INTEGER,
    currency                 VARCHAR(3),
    created_at               TIMESTAMPTZ NOT NULL DEFAULT now()
);
"""

ALL = [
    SUBSCRIPTIONS,
    PURCHASES,
]
