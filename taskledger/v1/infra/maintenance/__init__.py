"""
Maintenance sweeps that bound the growth of the job, ledger and cache tables.
"""
