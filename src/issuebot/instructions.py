"""Natural-language instructions handed to the change agent.

Issue instructions are built from the issue title, body and labels, plus
two optional structured hints an author may put in the body:

    Files to modify: src/app.py, README.md
    Changes: Add a --verbose flag

Review instructions group line-anchored review comments under a
``File: <path>`` heading per file and list path-less feedback in a
separate general section.
"""

import re
from typing import Dict, List

from src.issuebot.models import IssueRequest, ReviewComment, ReviewRequest

FILES_HINT_PATTERN = re.compile(r"files to modify:([^\n]+)", re.IGNORECASE)
CHANGES_HINT_PATTERN = re.compile(r"changes:([^\n]+)", re.IGNORECASE)


def parse_issue_hints(body: str) -> Dict[str, str]:
    """Extract structured hints from an issue body.

    Args:
        body: Issue body text (may be empty).

    Returns:
        Dict with optional "files" and "changes" keys.

    Example:
        >>> parse_issue_hints("Files to modify: a.py, b.py\\nChanges: add x")
        {'files': 'a.py, b.py', 'changes': 'add x'}
    """
    hints: Dict[str, str] = {}
    if not body:
        return hints

    files_match = FILES_HINT_PATTERN.search(body)
    if files_match and files_match.group(1).strip():
        hints["files"] = files_match.group(1).strip()

    changes_match = CHANGES_HINT_PATTERN.search(body)
    if changes_match and changes_match.group(1).strip():
        hints["changes"] = changes_match.group(1).strip()

    return hints


def hinted_files(hints: Dict[str, str]) -> List[str]:
    """Split the comma-separated files hint into paths."""
    return [f.strip() for f in hints.get("files", "").split(",") if f.strip()]


def build_issue_instruction(issue: IssueRequest) -> str:
    """Build the agent instruction for an opened issue."""
    lines = [
        f"Implement the changes requested in issue #{issue.number}: {issue.title}",
        "",
        "## Issue Description",
        issue.body.strip() or "No description provided.",
    ]

    if issue.labels:
        lines.extend(["", "## Labels", ", ".join(issue.labels)])

    hints = parse_issue_hints(issue.body)
    files = hinted_files(hints)
    if files:
        lines.extend(["", "## Files to Modify"])
        lines.extend(f"- {path}" for path in files)
    if "changes" in hints:
        lines.extend(["", "## Requested Changes", hints["changes"]])

    return "\n".join(lines) + "\n"


def group_review_comments(
    comments: List[ReviewComment],
) -> Dict[str, List[ReviewComment]]:
    """Group file-anchored comments by path, preserving first-seen order.

    General comments (no path) and comments with an empty body are left out.
    """
    grouped: Dict[str, List[ReviewComment]] = {}
    for comment in comments:
        if comment.is_general or not comment.body.strip():
            continue
        grouped.setdefault(comment.path, []).append(comment)
    return grouped


def build_review_instruction(review: ReviewRequest) -> str:
    """Build the agent instruction for review feedback on a pull request.

    Example:
        Two comments on ``a.py`` (lines 10 and 20) and one general comment
        produce::

            File: a.py
            - Line 10: ...
            - Line 20: ...

            ## General comments
            - ...
    """
    heading = f"Address the review feedback on pull request #{review.pr_number}"
    if review.title:
        heading = f"{heading}: {review.title}"
    lines = [heading]

    if review.body.strip():
        lines.extend(["", "## Pull Request Description", review.body.strip()])

    grouped = group_review_comments(review.comments)
    if grouped:
        lines.extend(["", "## Review comments"])
        for path, path_comments in grouped.items():
            lines.extend(["", f"File: {path}"])
            for comment in path_comments:
                lines.append(_review_line(comment))

    general = [
        c.body.strip() for c in review.comments if c.is_general and c.body.strip()
    ]
    if general:
        lines.extend(["", "## General comments"])
        lines.extend(f"- {body}" for body in general)

    return "\n".join(lines) + "\n"


def _review_line(comment: ReviewComment) -> str:
    body = comment.body.strip()
    if comment.line is not None:
        return f"- Line {comment.line}: {body}"
    return f"- {body}"
