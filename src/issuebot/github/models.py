"""Request and response models for pull request operations."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PRCreateRequest(BaseModel):
    """Parameters for opening a pull request.

    Attributes:
        title: Pull request title.
        body: Markdown description.
        head_branch: Branch containing the changes.
        base_branch: Branch the changes are merged into.
        draft: Open the pull request as a draft.
        maintainer_can_modify: Allow maintainers to push to the head branch.
    """

    title: str = Field(..., min_length=1)
    body: str = ""
    head_branch: str = Field(..., min_length=1)
    base_branch: str = Field(..., min_length=1)
    draft: bool = False
    maintainer_can_modify: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "head": self.head_branch,
            "base": self.base_branch,
            "draft": self.draft,
            "maintainer_can_modify": self.maintainer_can_modify,
        }


class PRCreateResult(BaseModel):
    """A pull request as returned by the API."""

    pr_number: int
    pr_url: str = ""
    title: str = ""
    head_branch: Optional[str] = None
    base_branch: Optional[str] = None

    @classmethod
    def from_github_response(cls, data: Dict[str, Any]) -> "PRCreateResult":
        """Build a result from a pull request JSON object."""
        return cls(
            pr_number=data["number"],
            pr_url=data.get("html_url", ""),
            title=data.get("title") or "",
            head_branch=(data.get("head") or {}).get("ref"),
            base_branch=(data.get("base") or {}).get("ref"),
        )
