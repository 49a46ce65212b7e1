"""Prepare the configured database before migrations run.

SQLite needs nothing; for Postgres the target database is created through the
maintenance database when it does not exist yet.
"""
from __future__ import annotations

import argparse
import sys
from urllib.parse import urlsplit, urlunsplit

import psycopg
from psycopg import sql

from anchor_relay.core.settings import settings


def to_libpq_url(uri: str) -> str:
    """Return ``uri`` with any SQLAlchemy driver suffix removed."""
    uri = (uri or "").strip().strip("'\"")
    if not uri:
        raise ValueError("DATABASE_URL is empty")
    parts = urlsplit(uri)
    scheme = parts.scheme.split("+", 1)[0]
    if scheme not in ("postgresql", "postgres"):
        raise ValueError(f"Not a Postgres URL: {uri!r}")
    return urlunsplit(("postgresql", parts.netloc, parts.path, parts.query, parts.fragment))


def ensure_database_exists(db_url: str) -> bool:
    """Create the database named in ``db_url`` if missing; return True if created."""
    parts = urlsplit(db_url)
    target_db = parts.path.lstrip("/") or "postgres"
    admin_url = urlunsplit(("postgresql", parts.netloc, "/postgres", parts.query, ""))

    with psycopg.connect(admin_url, autocommit=True) as conn, conn.cursor() as cur:
        cur.execute("SELECT 1 FROM pg_database WHERE datname = %s", (target_db,))
        if cur.fetchone() is not None:
            print(f"[ensure_db] database {target_db} already exists")
            return False
        cur.execute(sql.SQL("CREATE DATABASE {}").format(sql.Identifier(target_db)))
    print(f"[ensure_db] created database {target_db}")
    return True


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Ensure the configured database exists")
    parser.add_argument(
        "--url",
        default=None,
        help="Override database URL (defaults to effective settings URL)",
    )
    args = parser.parse_args(argv)

    raw_url = args.url or settings.effective_database_url
    if raw_url.startswith("sqlite"):
        print("[ensure_db] sqlite database is created on first connect")
        return 0
    try:
        ensure_database_exists(to_libpq_url(raw_url))
    except (ValueError, psycopg.Error) as exc:
        print(f"[ensure_db] ERROR: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
