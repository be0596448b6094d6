"""
Runtime module.

Explicit scopes (``Scope``), the transaction carrier on top of them, the
collaborator protocols and the psycopg-backed pool and transaction.
"""
