from datetime import datetime

from pydantic import BaseModel


class ReviewPayload(BaseModel):
    """Queue payload for one review of one pull request."""

    job_id: int
    job_key: str
    change_request_id: int
    repository_id: int
    repository_external_id: int
    repo_full_name: str
    number: int
    installation_id: int | None = None
    head_sha: str | None = None
    delivery_id: str | None = None


class JobOut(BaseModel):
    id: int
    job_key: str
    change_request_id: int
    status: str
    attempts: int
    error: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class QueueStatsOut(BaseModel):
    waiting: int
    active: int
    retrying: int
    completed: int
    failed: int


class QueueRetryOut(BaseModel):
    job_key: str
    retried: bool
