"""Credit ledger: task charging, detached completion, and periodic auto-grants.

Every balance change goes through ``LedgerRepository`` and is paired with one
``credit_transactions`` row written in the same SQLite transaction. Task status
moves forward only through compare-and-swap updates, so the single debit for a
task happens in the transaction that moves it out of ``created``.
"""
