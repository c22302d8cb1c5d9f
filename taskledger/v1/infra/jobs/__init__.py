"""
Job queue infrastructure.

This package provides a database-backed job queue with:
- Priority scheduling with FIFO order inside a priority band
- Atomic claiming (SKIP LOCKED reads plus compare-and-swap updates)
- Retry budgets, exponential backoff and lease-based timeout reclamation
- Registry-based pluggable handlers and a polling worker
"""
