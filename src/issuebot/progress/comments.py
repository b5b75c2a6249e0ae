"""Best-effort comment publishing.

Narration must never mask or replace the failure it reports on, so every
exception raised while posting a comment is logged and swallowed here.
"""

import logging

from src.issuebot.github.client import GitHubClient
from src.issuebot.models import RepoRef

logger = logging.getLogger(__name__)


class CommentPublisher:
    """Posts comments on issues and pull requests through the GitHub client."""

    def __init__(self, github_client: GitHubClient):
        self.github_client = github_client

    async def post(self, repo: RepoRef, number: int, body: str) -> bool:
        """Post a comment, returning False instead of raising on failure.

        Args:
            repo: Target repository.
            number: Issue or pull request number.
            body: Markdown comment body.

        Returns:
            True if the comment was created.
        """
        try:
            await self.github_client.create_comment(
                repo.owner,
                repo.name,
                number,
                body,
                installation_id=repo.installation_id,
            )
            return True
        except Exception:
            logger.exception(
                "Failed to post comment",
                extra={"repository": repo.full_name, "number": number},
            )
            return False

    def poster_for(self, repo: RepoRef, number: int):
        """Bind a repository and number into a single-argument post function."""

        async def _post(body: str) -> bool:
            return await self.post(repo, number, body)

        return _post
