from __future__ import annotations

from review_bot.schemas.changes import ChangeSet
from review_bot.schemas.reviews import ISSUE_SEVERITIES, ReviewAnalysis

COMMENT_HEADER = "## Automated Code Review"

_SEVERITY_RANK = {severity: rank for rank, severity in enumerate(ISSUE_SEVERITIES)}


def render_review_comment(analysis: ReviewAnalysis, change: ChangeSet) -> str:
    """Render an analysis as a markdown pull request comment.

    Issues are ordered most severe first; ties keep the analyzer's order.
    """
    lines = [COMMENT_HEADER, "", f"**Summary:** {analysis.summary}", ""]

    if analysis.issues:
        issues = sorted(analysis.issues, key=lambda issue: _SEVERITY_RANK.get(issue.severity, len(_SEVERITY_RANK)))
        lines.append(f"### Issues ({len(issues)})")
        lines.append("")
        for index, issue in enumerate(issues, start=1):
            location = ""
            if issue.file:
                location = f" `{issue.file}:{issue.line}`" if issue.line else f" `{issue.file}`"
            title = issue.title or issue.type.replace("_", " ")
            lines.append(f"{index}. **[{issue.severity.upper()}] {title}** ({issue.type}){location}")
            if issue.description:
                lines.append(f"   {issue.description}")
            if issue.suggestion:
                lines.append(f"   _Suggestion:_ {issue.suggestion}")
        lines.append("")
    else:
        lines.append("No issues found.")
        lines.append("")

    if analysis.positives:
        lines.append("### What looks good")
        lines.append("")
        lines.extend(f"- {positive}" for positive in analysis.positives)
        lines.append("")

    head_sha = change.metadata.head_sha[:7]
    lines.append("---")
    lines.append(f"_Reviewed {len(change.files)} changed file(s) at `{head_sha}`._")
    return "\n".join(lines)
