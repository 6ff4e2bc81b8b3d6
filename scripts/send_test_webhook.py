#!/usr/bin/env python3
"""Send a signed sample pull_request webhook to a running review bot API."""

from __future__ import annotations

import argparse
import json
import os
from uuid import uuid4

import httpx

from review_bot.core.security import compute_signature

DEFAULT_URL = "http://localhost:8000/webhook/github"


def sample_payload(*, action: str, repo: str, number: int, repo_id: int) -> dict:
    owner, _, name = repo.partition("/")
    return {
        "action": action,
        "number": number,
        "pull_request": {
            "number": number,
            "title": "Sample pull request",
            "state": "open",
            "merged": False,
            "user": {"login": "octocat"},
            "head": {"ref": "feature", "sha": "a1b2c3d4e5f6"},
            "base": {"ref": "main", "sha": "0f9e8d7c6b5a"},
        },
        "repository": {
            "id": repo_id,
            "name": name,
            "full_name": repo,
            "owner": {"login": owner},
        },
    }


def build_request(
    payload: dict,
    *,
    secret: str | None,
    event: str = "pull_request",
    delivery: str | None = None,
    invalid_signature: bool = False,
) -> tuple[dict[str, str], bytes]:
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery or str(uuid4()),
    }
    if invalid_signature:
        headers["X-Hub-Signature-256"] = "sha256=invalid"
    elif secret:
        headers["X-Hub-Signature-256"] = compute_signature(body, secret)
    return headers, body


def main() -> None:
    parser = argparse.ArgumentParser(description="Send a signed sample webhook to the review bot.")
    parser.add_argument("--url", default=DEFAULT_URL, help=f"Webhook endpoint (default {DEFAULT_URL})")
    parser.add_argument(
        "--secret",
        default=os.getenv("PRR_GITHUB_WEBHOOK_SECRET"),
        help="Webhook secret (defaults to PRR_GITHUB_WEBHOOK_SECRET)",
    )
    parser.add_argument("--event", default="pull_request", help="X-GitHub-Event value")
    parser.add_argument("--action", default="opened", help="pull_request action")
    parser.add_argument("--repo", default="acme/widgets", help="Repository full name owner/name")
    parser.add_argument("--repo-id", type=int, default=42)
    parser.add_argument("--number", type=int, default=1, help="Pull request number")
    parser.add_argument("--delivery", default=None, help="X-GitHub-Delivery value (random by default)")
    parser.add_argument("--invalid-signature", action="store_true", help="Send a bad signature")
    parser.add_argument("--dry-run", action="store_true", help="Print the request instead of sending it")
    args = parser.parse_args()

    if "/" not in args.repo:
        parser.error("--repo must look like owner/name")
    if not args.secret and not args.invalid_signature:
        parser.error("--secret or PRR_GITHUB_WEBHOOK_SECRET is required")

    payload = sample_payload(action=args.action, repo=args.repo, number=args.number, repo_id=args.repo_id)
    headers, body = build_request(
        payload,
        secret=args.secret,
        event=args.event,
        delivery=args.delivery,
        invalid_signature=args.invalid_signature,
    )
    if args.dry_run:
        print(json.dumps({"url": args.url, "headers": headers, "body": payload}, indent=2))
        return

    response = httpx.post(args.url, content=body, headers=headers, timeout=10.0)
    print(f"{response.status_code} {response.text}")
    if response.is_error:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
