from datetime import datetime

from pydantic import BaseModel, Field


class RepoRef(BaseModel):
    owner: str = Field(min_length=1)
    name: str = Field(min_length=1)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> "RepoRef":
        owner, separator, name = full_name.partition("/")
        if not separator:
            raise ValueError(f"repository full name must be owner/name: {full_name!r}")
        return cls(owner=owner, name=name)


class ChangeMetadata(BaseModel):
    number: int
    title: str
    body: str = ""
    author: str
    state: str
    head_branch: str
    base_branch: str
    head_sha: str
    base_sha: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ChangedFile(BaseModel):
    filename: str
    status: str
    additions: int = 0
    deletions: int = 0
    changes: int = 0
    patch: str | None = None

    @property
    def has_meaningful_changes(self) -> bool:
        return bool(self.patch) and (self.additions > 0 or self.deletions > 0)


class ChangeSet(BaseModel):
    metadata: ChangeMetadata
    files: list[ChangedFile] = Field(default_factory=list)
