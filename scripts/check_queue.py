#!/usr/bin/env python3
"""Print review queue counts and, optionally, one entry."""

from __future__ import annotations

import argparse
import asyncio
import json
import os

from review_bot.services.database import Database
from review_bot.services.queue import DurableQueue, PostgresQueue


async def collect(queue: DurableQueue, job_key: str | None = None) -> dict:
    report: dict = {"queue": queue.name, "stats": (await queue.stats()).to_dict()}
    if job_key:
        entry = await queue.get_entry(job_key)
        report["entry"] = None
        if entry is not None:
            report["entry"] = {
                "job_key": entry.job_key,
                "state": entry.state,
                "attempts_made": entry.attempts_made,
                "deliveries": entry.deliveries,
                "stalls": entry.stalls,
                "last_error": entry.last_error,
                "available_at": entry.available_at.isoformat(),
            }
    return report


async def _run(dsn: str, queue_name: str, job_key: str | None) -> dict:
    queue = PostgresQueue(Database(dsn, min_pool_size=1, max_pool_size=1), name=queue_name)
    try:
        return await collect(queue, job_key)
    finally:
        await queue.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Show review queue statistics.")
    parser.add_argument(
        "--database-url",
        default=os.getenv("PRR_QUEUE_DATABASE_URL") or os.getenv("PRR_DATABASE_URL"),
        help="Postgres DSN (defaults to PRR_QUEUE_DATABASE_URL, then PRR_DATABASE_URL)",
    )
    parser.add_argument("--queue", default=os.getenv("PRR_QUEUE_NAME", "pr-reviews"), help="Queue name")
    parser.add_argument("--job-key", default=None, help="Also show this entry, e.g. review:42:7")
    args = parser.parse_args()
    if not args.database_url:
        parser.error("--database-url or PRR_DATABASE_URL is required")

    print(json.dumps(asyncio.run(_run(args.database_url, args.queue, args.job_key)), indent=2))


if __name__ == "__main__":
    main()
