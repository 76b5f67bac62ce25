"""PostoraAI credit ledger and entitlement service."""
