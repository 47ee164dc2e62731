"""
Banking Backend

REST backend for users, accounts, transactions and notifications. Balance
changes go through an atomic mutation engine that keeps every account equal
to the net of its append-only ledger.
"""

__version__ = "1.0.0"
