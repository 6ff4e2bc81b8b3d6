from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
import json
from typing import Any, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from review_bot.schemas.reviews import ReviewAnalysis
from review_bot.services.database import Database, DatabaseUnavailableError


class RecordStoreError(Exception):
    """Base record store error."""


class RecordStoreUnavailableError(RecordStoreError):
    """Raised when the database is unavailable or not configured."""


class RecordStoreNotFoundError(RecordStoreError):
    """Raised when the requested entity does not exist."""


class RecordStoreConflictError(RecordStoreError):
    """Raised when an upsert could not resolve the existing row."""


JOB_STATUSES = ("pending", "processing", "completed", "failed")
CHANGE_REQUEST_STATUSES = ("open", "closed", "merged")
REARMABLE_JOB_STATUSES = ("completed", "failed")
MAX_ERROR_LENGTH = 2000

_JOB_COLUMNS = """
  id,
  job_key,
  pr_id,
  status,
  attempts,
  error_message,
  completed_at,
  created_at,
  updated_at
"""


@dataclass(slots=True)
class Job:
    id: int
    job_key: str
    change_request_id: int
    status: str
    attempts: int
    error: str | None
    completed_at: datetime | None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_key": self.job_key,
            "change_request_id": self.change_request_id,
            "status": self.status,
            "attempts": self.attempts,
            "error": self.error,
            "completed_at": self.completed_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class RecordStore(Protocol):
    async def upsert_repository(
        self,
        *,
        external_id: int,
        owner: str,
        name: str,
        installation_id: int | None,
    ) -> int: ...

    async def upsert_change_request(
        self,
        *,
        repository_id: int,
        number: int,
        title: str,
        author: str,
        status: str,
    ) -> int: ...

    async def upsert_job_pending(self, *, change_request_id: int, job_key: str) -> Job: ...

    async def transition_job(
        self,
        job_id: int,
        *,
        status: str,
        attempts: int,
        error: str | None = None,
        completed_at: datetime | None = None,
    ) -> Job: ...

    async def get_job(self, job_id: int) -> Job | None: ...

    async def get_job_by_key(self, job_key: str) -> Job | None: ...

    async def list_jobs(self, *, status: str | None, limit: int, offset: int) -> list[Job]: ...

    async def save_review(
        self,
        *,
        job_id: int,
        change_request_id: int,
        analysis: ReviewAnalysis,
        model: str,
    ) -> int: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class PostgresRecordStore:
    def __init__(self, database: Database) -> None:
        self.database = database

    async def close(self) -> None:
        await self.database.close()

    async def ping(self) -> None:
        async with self._connection() as conn:
            await conn.fetchval("select 1")

    async def upsert_repository(
        self,
        *,
        external_id: int,
        owner: str,
        name: str,
        installation_id: int | None,
    ) -> int:
        async with self._connection() as conn:
            repository_id = await conn.fetchval(
                """
                insert into repositories (github_repo_id, owner, name, installation_id)
                values ($1, $2, $3, $4)
                on conflict (github_repo_id) do update
                set
                  owner = excluded.owner,
                  name = excluded.name,
                  installation_id = coalesce(excluded.installation_id, repositories.installation_id),
                  updated_at = now()
                returning id
                """,
                external_id,
                owner,
                name,
                installation_id,
            )
        if repository_id is None:
            raise RecordStoreConflictError("failed to resolve repository after upsert")
        return int(repository_id)

    async def upsert_change_request(
        self,
        *,
        repository_id: int,
        number: int,
        title: str,
        author: str,
        status: str,
    ) -> int:
        if status not in CHANGE_REQUEST_STATUSES:
            raise ValueError(f"invalid change request status: {status}")

        async with self._connection() as conn:
            change_request_id = await conn.fetchval(
                """
                insert into pull_requests (repo_id, pr_number, title, author, status)
                values ($1, $2, $3, $4, $5)
                on conflict (repo_id, pr_number) do update
                set
                  title = excluded.title,
                  author = excluded.author,
                  status = excluded.status,
                  updated_at = now()
                returning id
                """,
                repository_id,
                number,
                title,
                author,
                status,
            )
        if change_request_id is None:
            raise RecordStoreConflictError("failed to resolve pull request after upsert")
        return int(change_request_id)

    async def upsert_job_pending(self, *, change_request_id: int, job_key: str) -> Job:
        async with self._connection() as conn:
            # Pending and processing jobs keep their state; finished ones are re-armed.
            row = await conn.fetchrow(
                f"""
                insert into review_jobs (pr_id, job_key, status, attempts)
                values ($1, $2, 'pending', 0)
                on conflict (job_key) do update
                set
                  status = 'pending',
                  updated_at = now()
                where review_jobs.status in ('completed', 'failed')
                returning {_JOB_COLUMNS}
                """,
                change_request_id,
                job_key,
            )
            if row is None:
                row = await conn.fetchrow(
                    f"select {_JOB_COLUMNS} from review_jobs where job_key = $1",
                    job_key,
                )
        if row is None:
            raise RecordStoreConflictError("failed to resolve existing job after conflict")
        return self._job_row_to_record(row)

    async def transition_job(
        self,
        job_id: int,
        *,
        status: str,
        attempts: int,
        error: str | None = None,
        completed_at: datetime | None = None,
    ) -> Job:
        if status not in JOB_STATUSES:
            raise ValueError(f"invalid job status: {status}")

        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                update review_jobs
                set
                  status = $2,
                  attempts = greatest(attempts, $3::int),
                  error_message = $4,
                  completed_at = coalesce(completed_at, $5::timestamptz),
                  updated_at = now()
                where id = $1
                returning {_JOB_COLUMNS}
                """,
                job_id,
                status,
                attempts,
                truncate_error(error),
                completed_at,
            )
        if row is None:
            raise RecordStoreNotFoundError("job not found")
        return self._job_row_to_record(row)

    async def get_job(self, job_id: int) -> Job | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(f"select {_JOB_COLUMNS} from review_jobs where id = $1", job_id)
        return self._job_row_to_record(row) if row else None

    async def get_job_by_key(self, job_key: str) -> Job | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(f"select {_JOB_COLUMNS} from review_jobs where job_key = $1", job_key)
        return self._job_row_to_record(row) if row else None

    async def list_jobs(self, *, status: str | None, limit: int, offset: int) -> list[Job]:
        bounded_limit = max(1, min(limit, 500))
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"""
                select {_JOB_COLUMNS}
                from review_jobs
                where ($1::text is null or status = $1)
                order by updated_at desc, id desc
                limit $2
                offset $3
                """,
                status,
                bounded_limit,
                max(0, offset),
            )
        return [self._job_row_to_record(row) for row in rows]

    async def save_review(
        self,
        *,
        job_id: int,
        change_request_id: int,
        analysis: ReviewAnalysis,
        model: str,
    ) -> int:
        async with self._connection() as conn:
            async with conn.transaction():
                review_id = await conn.fetchval(
                    """
                    insert into reviews (pr_id, job_id, review_content, ai_model)
                    values ($1, $2, $3::jsonb, $4)
                    returning id
                    """,
                    change_request_id,
                    job_id,
                    json.dumps(analysis.model_dump(mode="json")),
                    model,
                )
                if analysis.issues:
                    await conn.executemany(
                        """
                        insert into review_comments (review_id, file_path, line_number, category, severity, comment)
                        values ($1, $2, $3, $4, $5, $6)
                        """,
                        [
                            (
                                review_id,
                                issue.file or "(general)",
                                issue.line,
                                issue.type,
                                issue.severity,
                                issue_comment(issue.title, issue.description, issue.suggestion),
                            )
                            for issue in analysis.issues
                        ],
                    )
        return int(review_id)

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            async with self.database.connection() as conn:
                yield conn
        except DatabaseUnavailableError as exc:
            raise RecordStoreUnavailableError(str(exc)) from exc
        except pg_exc.OperatorInterventionError as exc:
            raise RecordStoreUnavailableError(f"database unavailable: {exc}") from exc
        except pg_exc.UniqueViolationError as exc:
            raise RecordStoreConflictError(str(exc)) from exc
        except asyncpg.PostgresError as exc:
            raise RecordStoreError(f"database error: {exc}") from exc

    @staticmethod
    def _job_row_to_record(row: asyncpg.Record) -> Job:
        return Job(
            id=int(row["id"]),
            job_key=row["job_key"],
            change_request_id=int(row["pr_id"]),
            status=row["status"],
            attempts=int(row["attempts"] or 0),
            error=row["error_message"],
            completed_at=row["completed_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def truncate_error(error: str | None) -> str | None:
    if error is None:
        return None
    if len(error) <= MAX_ERROR_LENGTH:
        return error
    return error[: MAX_ERROR_LENGTH - 3] + "..."


def issue_comment(title: str, description: str, suggestion: str | None) -> str:
    parts = [part for part in (title.strip(), description.strip()) if part]
    if suggestion and suggestion.strip():
        parts.append(f"Suggestion: {suggestion.strip()}")
    return "\n\n".join(parts) or "(no detail provided)"
