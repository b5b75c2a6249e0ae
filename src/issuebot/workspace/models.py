"""Workspace lifecycle states and configuration.

A workspace moves linearly through provisioning, then ends in exactly one
of three outcomes (published, no change, failed). CLEANED is reachable
from every state and is always the final state of a workspace.

Stage Flow:
    created → cloned → branched → dirty → committed → pushed
                                        ↘ no_change
    any non-terminal state → failed
    any state → cleaned
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional


class WorkspaceState(str, Enum):
    """States of one disposable working copy.

    Attributes:
        CREATED: Directory name reserved, nothing on disk yet.
        CLONED: Default branch materialized locally.
        BRANCHED: Working branch created or checked out.
        DIRTY: The agent has run against the working copy.
        COMMITTED: The change set is committed on the working branch.
        PUSHED: The working branch is published to the remote.
        NO_CHANGE: The agent touched no files; nothing to publish.
        FAILED: The run could not reach a published or no-change state.
        CLEANED: Directory removed from disk.
    """

    CREATED = "created"
    CLONED = "cloned"
    BRANCHED = "branched"
    DIRTY = "dirty"
    COMMITTED = "committed"
    PUSHED = "pushed"
    NO_CHANGE = "no_change"
    FAILED = "failed"
    CLEANED = "cleaned"


VALID_TRANSITIONS: Dict[WorkspaceState, List[WorkspaceState]] = {
    WorkspaceState.CREATED: [
        WorkspaceState.CLONED,
        WorkspaceState.FAILED,
        WorkspaceState.CLEANED,
    ],
    WorkspaceState.CLONED: [
        WorkspaceState.BRANCHED,
        WorkspaceState.FAILED,
        WorkspaceState.CLEANED,
    ],
    WorkspaceState.BRANCHED: [
        WorkspaceState.DIRTY,
        WorkspaceState.FAILED,
        WorkspaceState.CLEANED,
    ],
    WorkspaceState.DIRTY: [
        WorkspaceState.COMMITTED,
        WorkspaceState.NO_CHANGE,
        WorkspaceState.FAILED,
        WorkspaceState.CLEANED,
    ],
    WorkspaceState.COMMITTED: [
        WorkspaceState.PUSHED,
        WorkspaceState.FAILED,
        WorkspaceState.CLEANED,
    ],
    WorkspaceState.PUSHED: [WorkspaceState.CLEANED],
    WorkspaceState.NO_CHANGE: [WorkspaceState.CLEANED],
    WorkspaceState.FAILED: [WorkspaceState.CLEANED],
    WorkspaceState.CLEANED: [],
}


def is_valid_transition(from_state: WorkspaceState, to_state: WorkspaceState) -> bool:
    """Check a transition against VALID_TRANSITIONS.

    Example:
        >>> is_valid_transition(WorkspaceState.CLONED, WorkspaceState.BRANCHED)
        True
        >>> is_valid_transition(WorkspaceState.CLEANED, WorkspaceState.CLONED)
        False
    """
    return to_state in VALID_TRANSITIONS.get(from_state, [])


class InvalidTransitionError(Exception):
    """Raised when a workspace operation is attempted in the wrong state.

    Attributes:
        from_state: The current state.
        to_state: The attempted target state.
    """

    def __init__(
        self,
        from_state: WorkspaceState,
        to_state: WorkspaceState,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.message = message or (
            f"Invalid workspace transition from {from_state.value} to {to_state.value}"
        )
        super().__init__(self.message)


@dataclass
class WorkspaceConfig:
    """Configuration for workspace provisioning.

    Attributes:
        base_path: Root directory under which workspaces are created.
        github_token: Token embedded in the clone URL for push access.
        author_name: Git author/committer name.
        author_email: Git author/committer email.
    """

    base_path: Path
    github_token: Optional[str] = None
    author_name: str = "GitHub Issue Bot"
    author_email: str = "bot@example.com"

    def git_env(self) -> Dict[str, str]:
        """Author identity as git environment variables."""
        return {
            "GIT_AUTHOR_NAME": self.author_name,
            "GIT_AUTHOR_EMAIL": self.author_email,
            "GIT_COMMITTER_NAME": self.author_name,
            "GIT_COMMITTER_EMAIL": self.author_email,
        }
