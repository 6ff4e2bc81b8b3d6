#!/usr/bin/env python3
"""Apply db/schema.sql to the configured Postgres database."""

from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path

import asyncpg  # type: ignore[import-untyped]

DEFAULT_SCHEMA_PATH = Path(__file__).resolve().parent.parent / "db" / "schema.sql"


def load_schema(path: Path) -> str:
    sql = path.read_text(encoding="utf-8")
    if not sql.strip():
        raise ValueError(f"schema file is empty: {path}")
    return sql


async def apply_schema(dsn: str, sql: str) -> None:
    conn = await asyncpg.connect(dsn=dsn)
    try:
        async with conn.transaction():
            await conn.execute(sql)
    finally:
        await conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Apply the review bot schema to Postgres.")
    parser.add_argument(
        "--database-url",
        default=os.getenv("PRR_DATABASE_URL"),
        help="Postgres DSN (defaults to PRR_DATABASE_URL)",
    )
    parser.add_argument(
        "--schema",
        type=Path,
        default=DEFAULT_SCHEMA_PATH,
        help="Path to the schema SQL file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the SQL instead of executing it",
    )
    args = parser.parse_args()

    sql = load_schema(args.schema)
    if args.dry_run:
        print(sql)
        return
    if not args.database_url:
        parser.error("--database-url or PRR_DATABASE_URL is required")

    asyncio.run(apply_schema(args.database_url, sql))
    print(f"applied {args.schema}")


if __name__ == "__main__":
    main()
