"""SQLite-backed record stores.

Each store owns one table family and exposes async methods that take the
connection of the caller's transaction.
"""
