"""
Storage layer for AI Credit Gate.

SQLite persistence for accounts, ledger transactions, artifacts and conversations.
"""
