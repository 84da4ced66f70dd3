"""
Credit Wallet Module
Credit-based access control for thumbnail generation

This module provides:
- Per-account credit balances (atomic, concurrency-safe deductions)
- Immutable credit transaction ledger
- Static plan / credit pack catalog
- Stripe integration for subscriptions and credit pack purchases
- Idempotent webhook -> ledger reconciliation

Collections used:
- accounts: User plan state and credit balance
- credit_transactions: Immutable transaction log
- billing_events: Webhook idempotency store
- billing_anomalies: Post-generation debit failures
"""

__version__ = "1.0.0"
