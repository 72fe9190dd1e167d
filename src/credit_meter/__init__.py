"""Credit-metered task execution with a consistent ledger."""

__version__ = "0.1.0"
