from __future__ import annotations

from dataclasses import dataclass

from review_bot.schemas.webhooks import PullRequestEvent
from review_bot.services.record_store import RecordStore


@dataclass(frozen=True, slots=True)
class RecordedSubject:
    repository_id: int
    change_request_id: int


class IdempotentRecorder:
    """Upserts the repository and pull request named by a webhook event.

    Both writes are single atomic upserts keyed by natural key, so concurrent
    deliveries of the same event converge on the same rows. Mutable fields take
    the value from whichever delivery arrives last.
    """

    def __init__(self, record_store: RecordStore) -> None:
        self.record_store = record_store

    async def record(self, event: PullRequestEvent) -> RecordedSubject:
        repository = event.repository
        pull_request = event.pull_request
        repository_id = await self.record_store.upsert_repository(
            external_id=repository.id,
            owner=repository.owner.login,
            name=repository.name,
            installation_id=event.installation.id if event.installation else None,
        )
        change_request_id = await self.record_store.upsert_change_request(
            repository_id=repository_id,
            number=pull_request.number,
            title=pull_request.title,
            author=pull_request.user.login,
            status=pull_request.record_status,
        )
        return RecordedSubject(repository_id=repository_id, change_request_id=change_request_id)
