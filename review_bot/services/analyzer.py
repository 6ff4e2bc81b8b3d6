"""Code review analysis through an OpenAI-compatible chat completions endpoint."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import httpx
from pydantic import ValidationError

from review_bot.schemas.changes import ChangedFile, ChangeMetadata
from review_bot.schemas.reviews import ReviewAnalysis
from review_bot.services.collaborators import CollaboratorError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an expert code reviewer. Analyze the pull request changes and report:
1. Bugs and logic errors
2. Security vulnerabilities
3. Performance issues
4. Code style and readability problems
5. Missing best practices

Respond ONLY with a JSON object of this shape:
{
  "summary": "Brief overall assessment",
  "issues": [
    {
      "type": "bug|security|performance|style|best_practice",
      "severity": "critical|high|medium|low",
      "file": "path/to/file",
      "line": 42,
      "title": "Short issue title",
      "description": "What is wrong",
      "suggestion": "How to fix it"
    }
  ],
  "positives": ["Things done well"]
}"""

NO_CHANGES_SUMMARY = "No reviewable code changes found in this pull request."
FALLBACK_SUMMARY = "The analyzer response could not be parsed as a structured review."
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class AnalyzerError(CollaboratorError):
    pass


def build_review_prompt(metadata: ChangeMetadata, files: list[ChangedFile]) -> str:
    sections = [
        f"Pull request #{metadata.number}: {metadata.title}",
        f"Author: {metadata.author}",
        f"Branch: {metadata.head_branch} -> {metadata.base_branch}",
    ]
    if metadata.body:
        sections.append(f"Description:\n{metadata.body}")
    for changed in files:
        sections.append(
            f"File: {changed.filename} ({changed.status}, +{changed.additions}/-{changed.deletions})\n"
            f"```diff\n{changed.patch}\n```"
        )
    return "\n\n".join(sections)


def parse_analysis(text: str) -> ReviewAnalysis:
    """Extract the first JSON object from a model reply.

    Models frequently wrap JSON in prose or code fences. When nothing usable
    can be extracted, the raw text is kept as the summary instead of failing
    the review.
    """
    match = _JSON_OBJECT.search(text or "")
    if match is not None:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            data.setdefault("summary", "")
            try:
                analysis = ReviewAnalysis.model_validate(data)
            except ValidationError:
                analysis = None
            if analysis is not None:
                return analysis.model_copy(update={"raw_response": text})

    logger.warning("analyzer reply was not valid JSON; using fallback summary")
    summary = text.strip() if text and text.strip() else FALLBACK_SUMMARY
    return ReviewAnalysis(summary=summary, raw_response=text)


class ChatCompletionsAnalyzer:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        temperature: float = 0.3,
        max_tokens: int = 2000,
        timeout_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def analyze(self, metadata: ChangeMetadata, files: list[ChangedFile]) -> ReviewAnalysis:
        reviewable = [changed for changed in files if changed.has_meaningful_changes]
        if not reviewable:
            logger.info("no reviewable changes pr=%s files=%s", metadata.number, len(files))
            return ReviewAnalysis(summary=NO_CHANGES_SUMMARY)
        if not self.api_key:
            raise AnalyzerError("analyzer API key is not configured")

        request_body = {
            "model": self.model,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_review_prompt(metadata, reviewable)},
            ],
        }
        if self._client is not None:
            payload = await self._post(self._client, request_body)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                payload = await self._post(temp_client, request_body)

        try:
            content = payload["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as exc:
            raise AnalyzerError("analyzer response did not contain a completion") from exc

        analysis = parse_analysis(content or "")
        logger.info(
            "analysis complete pr=%s files=%s issues=%s model=%s",
            metadata.number,
            len(reviewable),
            len(analysis.issues),
            self.model,
        )
        return analysis

    async def _post(self, client: httpx.AsyncClient, request_body: dict[str, Any]) -> Any:
        try:
            response = await client.post(
                f"{self.base_url}/chat/completions",
                json=request_body,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        except httpx.HTTPError as exc:
            raise AnalyzerError(f"analyzer request failed: {exc}") from exc
        if response.status_code >= 400:
            raise AnalyzerError(f"analyzer returned HTTP {response.status_code}")
        try:
            return response.json()
        except ValueError as exc:
            raise AnalyzerError("analyzer returned invalid JSON") from exc
