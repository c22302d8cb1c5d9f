"""
Tenant-scoped result cache keyed by content fingerprint and context.
"""
