"""GitHub REST API access for comments, branches and pull requests."""

from src.issuebot.github.auth import GitHubAppAuth
from src.issuebot.github.client import GitHubClient
from src.issuebot.github.errors import GitHubAPIError, RateLimitError
from src.issuebot.github.models import PRCreateRequest, PRCreateResult

__all__ = [
    "GitHubAPIError",
    "GitHubAppAuth",
    "GitHubClient",
    "PRCreateRequest",
    "PRCreateResult",
    "RateLimitError",
]
