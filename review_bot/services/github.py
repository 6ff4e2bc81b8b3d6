"""GitHub REST client for fetching pull request changes and posting results."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from review_bot.schemas.changes import ChangedFile, ChangeMetadata, ChangeSet, RepoRef
from review_bot.services.collaborators import CollaboratorError

logger = logging.getLogger(__name__)

FILES_PER_PAGE = 100
MAX_FILE_PAGES = 30
USER_AGENT = "pr-review-bot/1.0"


class GitHubAPIError(CollaboratorError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True, slots=True)
class PublishedComment:
    id: int
    html_url: str | None


class GitHubClient:
    def __init__(
        self,
        *,
        base_url: str = "https://api.github.com",
        token: str | None = None,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def fetch_change(self, repo: RepoRef, number: int) -> ChangeSet:
        async with self._session() as client:
            pr = await self._request(client, "GET", f"/repos/{repo.full_name}/pulls/{number}", not_found=repo)
            files: list[dict[str, Any]] = []
            for page in range(1, MAX_FILE_PAGES + 1):
                batch = await self._request(
                    client,
                    "GET",
                    f"/repos/{repo.full_name}/pulls/{number}/files",
                    params={"per_page": FILES_PER_PAGE, "page": page},
                    not_found=repo,
                )
                if not isinstance(batch, list):
                    raise GitHubAPIError("unexpected pull request files response")
                files.extend(batch)
                if len(batch) < FILES_PER_PAGE:
                    break

        try:
            change = ChangeSet(
                metadata=ChangeMetadata(
                    number=pr["number"],
                    title=pr["title"],
                    body=pr.get("body") or "",
                    author=pr["user"]["login"],
                    state=pr["state"],
                    head_branch=pr["head"]["ref"],
                    base_branch=pr["base"]["ref"],
                    head_sha=pr["head"]["sha"],
                    base_sha=pr["base"]["sha"],
                    created_at=pr.get("created_at"),
                    updated_at=pr.get("updated_at"),
                ),
                files=[ChangedFile.model_validate(item) for item in files],
            )
        except (KeyError, TypeError, ValidationError) as exc:
            raise GitHubAPIError(f"unexpected pull request response for {repo.full_name}#{number}") from exc

        logger.info(
            "fetched pull request repo=%s pr=%s files=%s head=%s",
            repo.full_name,
            number,
            len(change.files),
            change.metadata.head_sha,
        )
        return change

    async def publish_result(self, repo: RepoRef, number: int, rendered_text: str) -> PublishedComment:
        async with self._session() as client:
            payload = await self._request(
                client,
                "POST",
                f"/repos/{repo.full_name}/issues/{number}/comments",
                json={"body": rendered_text},
                not_found=repo,
            )
        if not isinstance(payload, dict) or "id" not in payload:
            raise GitHubAPIError("unexpected create comment response")
        comment = PublishedComment(id=int(payload["id"]), html_url=payload.get("html_url"))
        logger.info("posted review comment repo=%s pr=%s comment_id=%s", repo.full_name, number, comment.id)
        return comment

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            yield client

    async def _request(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        not_found: RepoRef,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> Any:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = await client.request(method, f"{self.base_url}{path}", params=params, json=json, headers=headers)
        except httpx.HTTPError as exc:
            raise GitHubAPIError(f"GitHub request failed: {method} {path}: {exc}") from exc

        if response.status_code == 404:
            raise GitHubAPIError(f"{path} not found in {not_found.full_name}", status_code=404)
        if response.status_code >= 400:
            raise GitHubAPIError(
                f"GitHub API error {response.status_code} for {method} {path}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise GitHubAPIError(f"GitHub returned invalid JSON for {method} {path}") from exc
