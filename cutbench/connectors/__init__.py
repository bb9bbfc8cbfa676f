"""Database connectors."""

from cutbench.connectors.postgres_pool import PostgresConnectionPool

__all__ = ["PostgresConnectionPool"]
