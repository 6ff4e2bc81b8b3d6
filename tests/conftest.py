from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from review_bot.schemas.changes import ChangedFile, ChangeMetadata, ChangeSet, RepoRef
from review_bot.schemas.reviews import ReviewAnalysis, ReviewIssue
from review_bot.services.github import GitHubAPIError, PublishedComment


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeGitHub:
    """Fetcher and publisher that fails the first ``failures`` fetches."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.fetch_calls = 0
        self.published: list[tuple[str, int, str]] = []

    async def fetch_change(self, repo: RepoRef, number: int) -> ChangeSet:
        self.fetch_calls += 1
        if self.fetch_calls <= self.failures:
            raise GitHubAPIError("GitHub API error 502 for GET /pulls", status_code=502)
        return make_change_set(number)

    async def publish_result(self, repo: RepoRef, number: int, rendered_text: str) -> PublishedComment:
        self.published.append((repo.full_name, number, rendered_text))
        return PublishedComment(id=len(self.published), html_url=None)


class FakeAnalyzer:
    model = "fake-model"

    def __init__(self) -> None:
        self.calls = 0

    async def analyze(self, metadata: ChangeMetadata, files: list[ChangedFile]) -> ReviewAnalysis:
        self.calls += 1
        return ReviewAnalysis(
            summary="Small, focused change.",
            issues=[
                ReviewIssue(
                    type="bug",
                    severity="high",
                    file="app/service.py",
                    line=12,
                    title="Off-by-one in loop bound",
                    description="The loop skips the last element.",
                    suggestion="Use range(len(items)).",
                )
            ],
            positives=["Clear naming"],
        )


def make_change_set(number: int = 7) -> ChangeSet:
    return ChangeSet(
        metadata=ChangeMetadata(
            number=number,
            title="Fix pagination",
            body="Fixes the last page.",
            author="octocat",
            state="open",
            head_branch="fix-pagination",
            base_branch="main",
            head_sha="a1b2c3d4e5f6",
            base_sha="0f9e8d7c6b5a",
        ),
        files=[
            ChangedFile(
                filename="app/service.py",
                status="modified",
                additions=3,
                deletions=1,
                changes=4,
                patch="@@ -10,4 +10,6 @@\n-for i in range(len(items) - 1):\n+for i in range(len(items)):",
            )
        ],
    )


def make_pull_request_body(
    *,
    action: str = "opened",
    repo_id: int = 42,
    number: int = 7,
    state: str = "open",
    merged: bool = False,
) -> dict[str, Any]:
    return {
        "action": action,
        "number": number,
        "pull_request": {
            "number": number,
            "title": "Fix pagination",
            "state": state,
            "merged": merged,
            "user": {"login": "octocat"},
            "head": {"ref": "fix-pagination", "sha": "a1b2c3d4e5f6"},
            "base": {"ref": "main", "sha": "0f9e8d7c6b5a"},
        },
        "repository": {
            "id": repo_id,
            "name": "widgets",
            "full_name": "acme/widgets",
            "owner": {"login": "acme"},
        },
        "installation": {"id": 99},
    }


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def pull_request_body():
    return make_pull_request_body


@pytest.fixture
def change_set():
    return make_change_set


@pytest.fixture
def fake_github():
    return FakeGitHub


@pytest.fixture
def fake_analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()
