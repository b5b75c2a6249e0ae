"""Comment formatting for issue and pull request narration.

All user-visible comments posted by the orchestrator are built here as
GitHub-flavored markdown. Long logs are wrapped in collapsible
``<details>`` blocks so the conversation thread stays readable.
"""

from typing import Iterable, Optional

from src.issuebot.runner.models import CommandOutput

DEFAULT_SNIPPET_LENGTH = 300


def format_progress_update(
    number: int,
    stdout: str,
    stderr: str,
    snippet_length: int = DEFAULT_SNIPPET_LENGTH,
) -> str:
    """Format a live progress update for a running agent.

    Each non-blank stream gets the full log in a collapsible block followed
    by a short snippet of its most recent output.

    Args:
        number: Issue or pull request number being narrated.
        stdout: Accumulated standard output.
        stderr: Accumulated standard error.
        snippet_length: Number of trailing characters shown as the snippet.

    Returns:
        Markdown comment body.
    """
    body = f"🔄 **AI Agent Progress Update (Issue/PR #{number})**\n\n"

    if stdout.strip():
        body += _log_section(
            "Standard Output Log (click to expand)", stdout
        )
        body += _snippet_section("Recent output", stdout, snippet_length)

    if stderr.strip():
        body += _log_section(
            "⚠️ Error Output Log (click to expand)", stderr
        )
        body += _snippet_section("Recent error output", stderr, snippet_length)

    return body


def format_started_comment() -> str:
    return "🤖 I've started working on this issue. 🛠️"


def format_review_started_comment() -> str:
    return "🤖 I'm implementing the requested changes from the review. 🛠️"


def format_agent_output_comment(output: CommandOutput) -> str:
    """Format the agent's complete output after a successful run."""
    return _output_comment("### 🤖 AI Agent Output", output)


def format_agent_failure_comment(
    error_message: str,
    output: CommandOutput,
    cause: Optional[BaseException] = None,
) -> str:
    """Format a single comment describing a failed agent step.

    The comment always carries the error message and, when any output was
    captured before the failure, the agent logs.

    Args:
        error_message: Human-readable failure description.
        output: Output captured before the failure.
        cause: Optional underlying exception.

    Returns:
        Markdown comment body.
    """
    body = (
        "### ❌ Error implementing changes\n\n"
        "There was an error while trying to implement the requested changes:\n\n"
        f"```\n{error_message}\n```\n"
    )

    if cause is not None:
        body += f"\nCaused by: {cause}\n"

    if not output.is_empty:
        body += "\n" + _output_comment("#### 🤖 AI Agent Output (before error)", output)

    return body


def format_no_changes_comment(is_review: bool = False) -> str:
    if is_review:
        return "🤖 No changes were made based on the review comments."
    return "🤖 No changes were made based on this issue, skipping PR creation."


def format_pr_created_comment(pr_number: int) -> str:
    return (
        f"🤖 I've created a pull request #{pr_number} with proposed changes "
        "for this issue."
    )


def format_pr_updated_comment(changed_files: Iterable[str]) -> str:
    """Format the comment posted after pushing review changes to a PR."""
    files = sorted(changed_files)
    body = "🤖 I've updated the PR with changes based on the review comments."
    if files:
        listing = "\n".join(f"- `{path}`" for path in files)
        body += f"\n\nModified files:\n{listing}"
    return body


def format_error_comment(error_message: str, is_review: bool = False) -> str:
    """Format the best-effort comment for failures that end a run by raising."""
    subject = "the review comments" if is_review else "this issue"
    return (
        f"🤖❌ Error: I encountered a problem while processing {subject}:\n\n"
        f"```\n{error_message}\n```\n\n"
        "Please check the logs for more details."
    )


def _log_section(summary: str, text: str) -> str:
    return (
        "<details>\n"
        f"<summary>{summary}</summary>\n\n"
        f"```\n{text}\n```\n"
        "</details>\n\n"
    )


def _snippet_section(title: str, text: str, snippet_length: int) -> str:
    snippet = text[-snippet_length:].strip() if snippet_length > 0 else ""
    return f"**{title}:**\n```\n{snippet}\n```\n\n"


def _output_comment(heading: str, output: CommandOutput) -> str:
    body = (
        f"{heading}\n\n"
        "<details>\n"
        "<summary>Click to view detailed output</summary>\n\n"
        f"```\n{output.stdout}\n```\n"
    )
    if output.stderr:
        body += f"\n**Error output:**\n```\n{output.stderr}\n```\n"
    body += "</details>\n"
    return body
