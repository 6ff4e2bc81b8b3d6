from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from review_bot.schemas.changes import ChangeSet, RepoRef
from review_bot.services.github import GitHubAPIError, GitHubClient, PublishedComment

REPO = RepoRef(owner="acme", name="widgets")

PULL = {
    "number": 7,
    "title": "Fix pagination",
    "body": None,
    "user": {"login": "octocat"},
    "state": "open",
    "head": {"ref": "fix-pagination", "sha": "a1b2c3d"},
    "base": {"ref": "main", "sha": "0f9e8d7"},
    "created_at": "2024-05-01T12:00:00Z",
    "updated_at": "2024-05-01T12:30:00Z",
}


def _file(index: int) -> dict:
    return {
        "filename": f"src/module_{index}.py",
        "status": "modified",
        "additions": 1,
        "deletions": 0,
        "changes": 1,
        "patch": "@@ -1 +1,2 @@\n+pass",
    }


def test_fetch_change_reads_pull_and_paginates_files() -> None:
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/repos/acme/widgets/pulls/7":
            return httpx.Response(200, json=PULL, request=request)
        if request.url.path == "/repos/acme/widgets/pulls/7/files":
            page = int(request.url.params["page"])
            files = [_file(n) for n in range(100)] if page == 1 else [_file(100)]
            return httpx.Response(200, json=files, request=request)
        return httpx.Response(404, request=request)

    async def run() -> ChangeSet:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            github = GitHubClient(base_url="https://api.github.test", token="ghs_token", client=client)
            return await github.fetch_change(REPO, 7)

    change = asyncio.run(run())
    assert change.metadata.title == "Fix pagination"
    assert change.metadata.body == ""
    assert change.metadata.head_sha == "a1b2c3d"
    assert len(change.files) == 101
    assert change.files[0].has_meaningful_changes
    assert [request.url.params.get("page") for request in seen[1:]] == ["1", "2"]
    assert seen[0].headers["Authorization"] == "Bearer ghs_token"
    assert seen[0].headers["Accept"] == "application/vnd.github+json"


def test_fetch_change_maps_not_found() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"message": "Not Found"}, request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await GitHubClient(base_url="https://api.github.test", client=client).fetch_change(REPO, 7)

    with pytest.raises(GitHubAPIError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.status_code == 404
    assert "acme/widgets" in str(excinfo.value)


def test_transport_errors_become_github_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await GitHubClient(base_url="https://api.github.test", client=client).fetch_change(REPO, 7)

    with pytest.raises(GitHubAPIError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.status_code is None


def test_malformed_pull_response_is_rejected() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/files"):
            return httpx.Response(200, json=[], request=request)
        return httpx.Response(200, json={"number": 7}, request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await GitHubClient(base_url="https://api.github.test", client=client).fetch_change(REPO, 7)

    with pytest.raises(GitHubAPIError):
        asyncio.run(run())


def test_publish_result_posts_issue_comment() -> None:
    captured: dict = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        captured["method"] = request.method
        captured["path"] = request.url.path
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={"id": 555, "html_url": "https://github.test/acme/widgets/pull/7#issuecomment-555"},
            request=request,
        )

    async def run() -> PublishedComment:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            github = GitHubClient(base_url="https://api.github.test", client=client)
            return await github.publish_result(REPO, 7, "## Review")

    comment = asyncio.run(run())
    assert comment.id == 555
    assert captured == {
        "method": "POST",
        "path": "/repos/acme/widgets/issues/7/comments",
        "body": {"body": "## Review"},
    }


def test_publish_result_raises_on_server_error() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, request=request)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await GitHubClient(base_url="https://api.github.test", client=client).publish_result(REPO, 7, "x")

    with pytest.raises(GitHubAPIError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.status_code == 502
