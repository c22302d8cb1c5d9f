"""TaskLedger CLI"""

__version__ = "1.0.0"
