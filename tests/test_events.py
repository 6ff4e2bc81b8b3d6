import pytest

from review_bot.core.events import classify


@pytest.mark.parametrize("action", ["opened", "synchronize", "reopened"])
def test_reviewable_pull_request_actions_are_in_scope(action: str) -> None:
    result = classify("pull_request", action)
    assert result.in_scope
    assert result.reason == "in_scope"


@pytest.mark.parametrize("action", ["closed", "edited", "labeled", None])
def test_other_pull_request_actions_are_ignored(action: str | None) -> None:
    result = classify("pull_request", action)
    assert not result.in_scope
    assert result.reason == "action_ignored"


@pytest.mark.parametrize("event_kind", ["push", "issues", "ping", None])
def test_other_events_are_ignored(event_kind: str | None) -> None:
    result = classify(event_kind, "opened")
    assert not result.in_scope
    assert result.reason == "event_ignored"
