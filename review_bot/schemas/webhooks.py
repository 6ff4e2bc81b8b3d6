from typing import Literal

from pydantic import BaseModel, Field


class GitHubAccount(BaseModel):
    login: str = Field(min_length=1)


class GitRef(BaseModel):
    ref: str
    sha: str


class RepositoryPayload(BaseModel):
    id: int
    name: str = Field(min_length=1)
    full_name: str = Field(min_length=1)
    owner: GitHubAccount


class PullRequestPayload(BaseModel):
    number: int = Field(gt=0)
    title: str
    state: Literal["open", "closed"]
    merged: bool = False
    user: GitHubAccount
    head: GitRef | None = None
    base: GitRef | None = None

    @property
    def record_status(self) -> str:
        if self.merged:
            return "merged"
        return self.state


class InstallationPayload(BaseModel):
    id: int


class PullRequestEvent(BaseModel):
    """The subset of a ``pull_request`` webhook body the pipeline relies on."""

    action: str
    pull_request: PullRequestPayload
    repository: RepositoryPayload
    installation: InstallationPayload | None = None


class WebhookAccepted(BaseModel):
    ok: bool = True
    event: str
    delivery: str
    queued: bool
    outcome: str
    job_id: int
    job_key: str


class WebhookIgnored(BaseModel):
    ok: bool = True
    event: str
    delivery: str
    ignored: bool = True
    reason: str
