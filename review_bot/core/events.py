from __future__ import annotations

from dataclasses import dataclass

PULL_REQUEST_EVENT = "pull_request"
REVIEWABLE_ACTIONS = frozenset({"opened", "synchronize", "reopened"})


@dataclass(frozen=True, slots=True)
class Classification:
    in_scope: bool
    reason: str


def classify(event_kind: str | None, action: str | None) -> Classification:
    """Decide whether a webhook delivery should produce review work."""
    if event_kind != PULL_REQUEST_EVENT:
        return Classification(in_scope=False, reason="event_ignored")
    if action not in REVIEWABLE_ACTIONS:
        return Classification(in_scope=False, reason="action_ignored")
    return Classification(in_scope=True, reason="in_scope")
