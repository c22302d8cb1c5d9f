"""
Idempotency ledger: at-most-once processing of externally retried events.
"""
