"""Core data models for change orchestration.

RepoRef identifies the target repository for one run. ChangeRequest is a
union of the two event kinds the orchestrator reacts to: an opened issue
(IssueRequest) and review feedback on a pull request (ReviewRequest).
Webhook payloads are parsed into these models once, at the boundary, and
consumed as typed values from then on.

The models use Pydantic for validation, consistent with the settings and
event models.
"""

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from src.issuebot.runner.models import CommandOutput


class RepoRef(BaseModel):
    """Identity of the repository a run operates on.

    Attributes:
        owner: Repository owner (user or organization).
        name: Repository name without the owner prefix.
        default_branch: Branch new work is based on.
        clone_url: HTTPS clone URL.
        installation_id: GitHub App installation that delivered the event,
            when the service authenticates as an App.
    """

    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    default_branch: str = Field(default="main", min_length=1)
    clone_url: str = Field(..., min_length=1)
    installation_id: Optional[int] = None

    @property
    def full_name(self) -> str:
        """Repository path in format "{owner}/{name}"."""
        return f"{self.owner}/{self.name}"


class IssueRequest(BaseModel):
    """An opened issue asking for a change.

    Attributes:
        number: Issue number within the repository.
        title: Issue title.
        body: Issue description (may be empty).
        labels: Label names attached to the issue.
    """

    model_config = ConfigDict(frozen=True)

    number: int = Field(..., gt=0)
    title: str = Field(..., min_length=1)
    body: str = Field(default="")
    labels: List[str] = Field(default_factory=list)


class ReviewComment(BaseModel):
    """A single review comment, optionally anchored to a file and line.

    Comments without a path are general review feedback.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    body: str = ""
    path: Optional[str] = None
    line: Optional[int] = None

    @property
    def is_general(self) -> bool:
        return not self.path


class ReviewRequest(BaseModel):
    """Review feedback on a pull request asking for a revision.

    Attributes:
        pr_number: Pull request number.
        title: Pull request title.
        body: Pull request description (may be empty).
        comments: Review comments to address.
        branch: Head branch of the pull request.
        base: Base branch of the pull request.
    """

    model_config = ConfigDict(frozen=True)

    pr_number: int = Field(..., gt=0)
    title: str = Field(default="")
    body: str = Field(default="")
    comments: List[ReviewComment] = Field(default_factory=list)
    branch: str = Field(..., min_length=1)
    base: str = Field(..., min_length=1)

    @property
    def number(self) -> int:
        return self.pr_number


ChangeRequest = Union[IssueRequest, ReviewRequest]


class Flow(str, Enum):
    """Which state machine handled a run."""

    ISSUE = "issue"
    REVIEW = "review"


class RunStatus(str, Enum):
    """Terminal status of an orchestration run.

    Attributes:
        PR_CREATED: Issue flow published a branch and opened a pull request.
        PR_UPDATED: Review flow pushed new commits to the pull request branch.
        NO_CHANGES: The agent succeeded but touched no files.
        AGENT_FAILED: The agent exited non-zero or could not be started.
        DETECTION_FAILED: Git state could not be inspected after the agent ran.
        SKIPPED: The event was not addressed to this bot.
    """

    PR_CREATED = "pr_created"
    PR_UPDATED = "pr_updated"
    NO_CHANGES = "no_changes"
    AGENT_FAILED = "agent_failed"
    DETECTION_FAILED = "detection_failed"
    SKIPPED = "skipped"


class RunResult(BaseModel):
    """Outcome of one orchestration run.

    Attributes:
        flow: Issue or review flow.
        status: Terminal status.
        changed_files: Sorted paths in the detected change set.
        output: Agent stdout/stderr, when the agent ran.
        pr_number: Pull request created or updated by the run.
        branch: Branch the run worked on.
        error: Error message for failure statuses.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    flow: Flow
    status: RunStatus
    changed_files: List[str] = Field(default_factory=list)
    output: Optional[CommandOutput] = None
    pr_number: Optional[int] = None
    branch: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (
            RunStatus.PR_CREATED,
            RunStatus.PR_UPDATED,
            RunStatus.NO_CHANGES,
            RunStatus.SKIPPED,
        )
