"""
Storage layer: the SQLite request ledger and its records.
"""
