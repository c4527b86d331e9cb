"""Utility helpers for database connection strings.

These helpers normalize PostgreSQL DSNs coming from different drivers so that
they can be reused by `asyncpg` (for the crawl queue) and Tortoise ORM
(`asyncpg://` scheme, for the persistence models).
"""

from __future__ import annotations

import os


def to_postgres_dsn(url: str) -> str:
    """Normalize a SQLAlchemy-style URL into a plain PostgreSQL DSN.

    The ingestion service writes ``postgresql+psycopg2://`` URLs while
    ``asyncpg`` expects ``postgresql://`` (or ``postgres://``). This helper
    strips the driver part if present and also converts ``asyncpg://`` back to
    ``postgresql://`` when needed.
    """

    if url.startswith("postgresql+"):
        return "postgresql://" + url.split("://", 1)[1]
    if url.startswith("asyncpg://"):
        return "postgresql://" + url[len("asyncpg://") :]
    return url


def to_asyncpg_dsn(url: str) -> str:
    """Convert a PostgreSQL DSN to the ``asyncpg://`` scheme for Tortoise."""

    if url.startswith("postgresql+"):
        url = "postgresql://" + url.split("://", 1)[1]
    if url.startswith("postgresql://"):
        return "asyncpg://" + url[len("postgresql://") :]
    if url.startswith("postgres://"):
        return "asyncpg://" + url[len("postgres://") :]
    return url


def database_url_from_env() -> str:
    """Resolve the shared database URL.

    ``JOBCRAWLER_DATABASE_URL`` and ``DATABASE_URL`` take precedence; otherwise
    the URL is assembled from the ``POSTGRES_*`` variables.
    """

    url = os.getenv("JOBCRAWLER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url:
        return to_postgres_dsn(url)

    user = os.getenv("POSTGRES_USER", "jobcrawler")
    password = os.getenv("POSTGRES_PASSWORD", "postgres")
    host = os.getenv("POSTGRES_HOST", "postgres")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("POSTGRES_DB", "jobcrawlerdb")
    return f"postgresql://{user}:{password}@{host}:{port}/{db}"
