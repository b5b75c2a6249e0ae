"""Workspace lifecycle for one orchestration run.

WorkspaceLifecycle owns clone → branch → (agent edit) → commit → push →
cleanup for a single, exclusively owned working copy. It is used as an
async context manager: the directory is removed on every exit path,
success or error, and the workspace always ends in the CLEANED state.
"""

import logging
import shutil
import time
import uuid
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

from src.issuebot.errors import PublishError, WorkspaceProvisionError
from src.issuebot.models import RepoRef
from src.issuebot.workspace.git import GitCommandError, GitRepository
from src.issuebot.workspace.models import (
    InvalidTransitionError,
    WorkspaceConfig,
    WorkspaceState,
    is_valid_transition,
)

logger = logging.getLogger(__name__)


def authenticated_clone_url(clone_url: str, token: Optional[str]) -> str:
    """Embed an installation token into an HTTPS clone URL.

    Args:
        clone_url: Plain HTTPS clone URL.
        token: GitHub token, or None to leave the URL unchanged.

    Returns:
        URL of the form ``https://x-access-token:<token>@host/owner/repo.git``.
    """
    prefix = "https://"
    if not token or not clone_url.startswith(prefix):
        return clone_url
    return f"{prefix}x-access-token:{token}@{clone_url[len(prefix):]}"


class WorkspaceLifecycle:
    """A disposable working copy with an explicit state machine.

    Attributes:
        repo: Repository being worked on.
        config: Workspace configuration.
        path: Unique local directory of the working copy.
        branch_name: Working branch, set once branched.
        state: Current lifecycle state.
        git: Git command wrapper bound to ``path``.
    """

    def __init__(
        self,
        repo: RepoRef,
        config: WorkspaceConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.repo = repo
        self.config = config
        self._clock = clock
        self.path = self._build_workspace_path()
        self.branch_name: Optional[str] = None
        self.state = WorkspaceState.CREATED
        self.history: List[WorkspaceState] = [WorkspaceState.CREATED]
        self.git = GitRepository(self.path, env=config.git_env())

    async def __aenter__(self) -> "WorkspaceLifecycle":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is not None:
            self.mark_failed()
        self.cleanup()

    @property
    def git_env(self) -> dict:
        return self.config.git_env()

    async def clone(self, token: Optional[str] = None) -> Path:
        """Clone the repository's default branch into the workspace directory.

        Args:
            token: Access token for the clone URL, such as a freshly minted
                installation token. Defaults to the configured token.

        Raises:
            WorkspaceProvisionError: If the clone fails.
        """
        self._require(WorkspaceState.CLONED)
        logger.info(
            "Cloning repository",
            extra={"repository": self.repo.full_name, "workspace": str(self.path)},
        )

        url = authenticated_clone_url(
            self.repo.clone_url, token or self.config.github_token
        )
        try:
            await self.git.clone(url)
        except (GitCommandError, OSError) as exc:
            self.mark_failed()
            raise WorkspaceProvisionError(
                f"Failed to clone {self.repo.full_name}: {exc}"
            ) from exc

        self._transition(WorkspaceState.CLONED)
        return self.path

    async def create_branch(self, issue_number: int) -> str:
        """Check out the default branch, then create a new working branch.

        Args:
            issue_number: Issue the branch is created for.

        Returns:
            The new branch name (``issue-<n>-<timestamp>``).

        Raises:
            WorkspaceProvisionError: If checkout or branch creation fails.
        """
        self._require(WorkspaceState.BRANCHED)
        branch_name = f"issue-{issue_number}-{int(self._clock() * 1000)}"
        logger.info("Creating branch %s", branch_name)

        try:
            await self.git.checkout(self.repo.default_branch)
            await self.git.create_branch(branch_name)
        except GitCommandError as exc:
            self.mark_failed()
            raise WorkspaceProvisionError(
                f"Failed to create branch {branch_name}: {exc}"
            ) from exc

        self.branch_name = branch_name
        self._transition(WorkspaceState.BRANCHED)
        return branch_name

    async def checkout_branch(self, branch_name: str) -> str:
        """Check out an existing remote branch, e.g. a pull request head.

        Raises:
            WorkspaceProvisionError: If the checkout fails.
        """
        self._require(WorkspaceState.BRANCHED)
        logger.info("Checking out branch %s", branch_name)

        try:
            await self.git.checkout(branch_name)
        except GitCommandError as exc:
            self.mark_failed()
            raise WorkspaceProvisionError(
                f"Failed to check out branch {branch_name}: {exc}"
            ) from exc

        self.branch_name = branch_name
        self._transition(WorkspaceState.BRANCHED)
        return branch_name

    def mark_dirty(self) -> None:
        """Record that the agent is about to edit the working copy."""
        self._transition(WorkspaceState.DIRTY)

    def mark_no_change(self) -> None:
        self._transition(WorkspaceState.NO_CHANGE)

    def mark_failed(self) -> None:
        """Move to FAILED when allowed; terminal states are left untouched."""
        if is_valid_transition(self.state, WorkspaceState.FAILED):
            self._transition(WorkspaceState.FAILED)

    def partition_change_set(
        self, change_set: Iterable[str]
    ) -> Tuple[List[str], List[str]]:
        """Split paths into those still on disk and those no longer present.

        Returns:
            Tuple of (existing_paths, missing_paths), each sorted.
        """
        existing: List[str] = []
        missing: List[str] = []
        for relative_path in sorted(set(change_set)):
            if (self.path / relative_path).exists():
                existing.append(relative_path)
            else:
                missing.append(relative_path)
        return existing, missing

    async def commit(self, change_set: Iterable[str], message: str) -> bool:
        """Stage the change set and commit it on the working branch.

        Existing paths are staged; paths that no longer exist are removed
        from tracking (a missing path is a deletion, never an error). When
        the agent already committed everything, nothing is staged and its
        commits are kept as they are.

        Args:
            change_set: Detected changed paths.
            message: Commit message.

        Returns:
            True if a new commit was created.

        Raises:
            PublishError: If staging or committing fails.
        """
        self._require(WorkspaceState.COMMITTED)
        existing, missing = self.partition_change_set(change_set)

        logger.info(
            "Committing changes",
            extra={
                "workspace": str(self.path),
                "staged": len(existing),
                "removed": len(missing),
            },
        )

        try:
            await self.git.add(existing)
            await self.git.remove(missing)
            created = await self.git.has_staged_changes()
            if created:
                await self.git.commit(message)
            else:
                logger.info("Nothing left to stage; keeping agent commits")
        except GitCommandError as exc:
            self.mark_failed()
            raise PublishError(f"Failed to commit changes: {exc}") from exc

        self._transition(WorkspaceState.COMMITTED)
        return created

    async def push(self) -> None:
        """Push the working branch with upstream tracking.

        Raises:
            PublishError: If the push fails.
        """
        self._require(WorkspaceState.PUSHED)
        logger.info("Pushing changes to remote branch %s", self.branch_name)

        try:
            await self.git.push(self.branch_name)
        except GitCommandError as exc:
            self.mark_failed()
            raise PublishError(
                f"Failed to push branch {self.branch_name}: {exc}"
            ) from exc

        self._transition(WorkspaceState.PUSHED)

    def cleanup(self) -> None:
        """Remove the workspace directory. Safe to call more than once."""
        if self.state == WorkspaceState.CLEANED:
            return

        logger.info("Cleaning up workspace", extra={"workspace": str(self.path)})
        try:
            if self.path.exists():
                shutil.rmtree(self.path)
        except OSError:
            logger.exception(
                "Failed to remove workspace",
                extra={"workspace": str(self.path)},
            )
        self._transition(WorkspaceState.CLEANED)

    def _build_workspace_path(self) -> Path:
        """Unique directory name from repository identity and a timestamp."""
        timestamp = int(self._clock() * 1000)
        suffix = uuid.uuid4().hex[:6]
        directory_name = f"{self.repo.owner}-{self.repo.name}-{timestamp}-{suffix}"
        return self.config.base_path / directory_name

    def _require(self, to_state: WorkspaceState) -> None:
        if not is_valid_transition(self.state, to_state):
            raise InvalidTransitionError(self.state, to_state)

    def _transition(self, to_state: WorkspaceState) -> None:
        self._require(to_state)
        logger.debug(
            "Workspace transition",
            extra={"from_state": self.state.value, "to_state": to_state.value},
        )
        self.state = to_state
        self.history.append(to_state)
