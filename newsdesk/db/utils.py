from __future__ import annotations

_PSYCOPG_SCHEME = "postgresql+psycopg"
_POSTGRES_ALIASES = ("postgresql+asyncpg", "postgresql", "postgres")


def normalize_database_url(url: str) -> str:
    """Point any Postgres URL at the async psycopg driver; other URLs pass through."""
    cleaned = url.strip()
    scheme, sep, rest = cleaned.partition("://")
    if not sep or scheme == _PSYCOPG_SCHEME:
        return cleaned
    if scheme in _POSTGRES_ALIASES:
        return f"{_PSYCOPG_SCHEME}://{rest}"
    return cleaned
