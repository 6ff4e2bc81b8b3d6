from __future__ import annotations

from typing import Protocol

from review_bot.schemas.changes import ChangedFile, ChangeMetadata, ChangeSet, RepoRef
from review_bot.schemas.reviews import ReviewAnalysis


class CollaboratorError(Exception):
    """Raised by an external collaborator (GitHub, analyzer) during processing."""


class ChangeFetcher(Protocol):
    async def fetch_change(self, repo: RepoRef, number: int) -> ChangeSet: ...


class ResultPublisher(Protocol):
    async def publish_result(self, repo: RepoRef, number: int, rendered_text: str) -> object: ...


class ChangeAnalyzer(Protocol):
    model: str

    async def analyze(self, metadata: ChangeMetadata, files: list[ChangedFile]) -> ReviewAnalysis: ...
