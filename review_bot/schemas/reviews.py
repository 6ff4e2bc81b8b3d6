from typing import Any

from pydantic import BaseModel, Field, field_validator

ISSUE_TYPES = ("bug", "security", "performance", "style", "best_practice")
ISSUE_SEVERITIES = ("critical", "high", "medium", "low")


class ReviewIssue(BaseModel):
    type: str = "best_practice"
    severity: str = "low"
    file: str | None = None
    line: int | None = None
    title: str = ""
    description: str = ""
    suggestion: str | None = None

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
        return normalized if normalized in ISSUE_TYPES else "best_practice"

    @field_validator("severity", mode="before")
    @classmethod
    def _coerce_severity(cls, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        return normalized if normalized in ISSUE_SEVERITIES else "low"

    @field_validator("line", mode="before")
    @classmethod
    def _coerce_line(cls, value: Any) -> int | None:
        try:
            line = int(value)
        except (TypeError, ValueError):
            return None
        return line if line > 0 else None


class ReviewAnalysis(BaseModel):
    summary: str
    issues: list[ReviewIssue] = Field(default_factory=list)
    positives: list[str] = Field(default_factory=list)
    raw_response: str | None = None
