"""Change-set detection after the agent has run.

The agent may leave its edits uncommitted, commit all of them, or commit
some and leave others dirty, so no single git signal is complete. The
detector therefore unions two signals:

- status delta: paths whose ``git status --porcelain`` presence changed
  between the pre-run and post-run snapshots (covers new, modified and
  deleted files even when nothing was committed);
- commit delta: paths touched by the commits the agent created.

A path present before but absent after is a deletion; a path absent before
but present after, or present in an agent commit, is a change. The result
is a deduplicated set of repository-relative paths.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional, Set, Union

from src.issuebot.errors import ChangeDetectionError
from src.issuebot.workspace.git import GitCommandError, GitRepository

logger = logging.getLogger(__name__)

STATUS_PREFIX_WIDTH = 3
RENAME_SEPARATOR = " -> "


@dataclass(frozen=True)
class StatusEntry:
    """One parsed ``git status --porcelain`` line.

    Attributes:
        code: Two-character XY status code (e.g. " M", "??", "D ").
        path: Repository-relative path (the new path for renames).
    """

    code: str
    path: str


@dataclass(frozen=True)
class StatusSnapshot:
    """Pre-run git state used as the detection baseline.

    Attributes:
        status_lines: Raw porcelain status lines.
        head: HEAD sha at snapshot time, None if unknown.
    """

    status_lines: List[str] = field(default_factory=list)
    head: Optional[str] = None


def parse_status_lines(status: Union[str, Iterable[str]]) -> List[StatusEntry]:
    """Parse porcelain status output into status entries.

    The path is obtained by stripping the fixed-width ``XY `` prefix.
    Rename entries yield the destination path and quoted paths are
    unquoted. Blank lines are ignored.

    Args:
        status: Raw porcelain output or an iterable of its lines.

    Returns:
        Parsed entries in input order.
    """
    lines = status.splitlines() if isinstance(status, str) else status

    entries: List[StatusEntry] = []
    for line in lines:
        if not line.strip() or len(line) <= STATUS_PREFIX_WIDTH:
            continue

        code = line[:2]
        path = line[STATUS_PREFIX_WIDTH:]
        if RENAME_SEPARATOR in path and code.strip()[:1] in ("R", "C"):
            path = path.split(RENAME_SEPARATOR, 1)[1].strip()
        path = _unquote(path)

        if path:
            entries.append(StatusEntry(code=code, path=path))

    return entries


def status_paths(status: Union[str, Iterable[str]]) -> Set[str]:
    return {entry.path for entry in parse_status_lines(status)}


def status_delta(
    before: Union[str, Iterable[str]],
    after: Union[str, Iterable[str]],
) -> Set[str]:
    """Paths present in exactly one of the two status snapshots."""
    return status_paths(before) ^ status_paths(after)


# C-style escapes git uses inside quoted paths, besides octal bytes
_QUOTE_ESCAPES = {
    "a": b"\a",
    "b": b"\b",
    "t": b"\t",
    "n": b"\n",
    "v": b"\v",
    "f": b"\f",
    "r": b"\r",
    '"': b'"',
    "\\": b"\\",
}
OCTAL_DIGITS = "01234567"


def _unquote(path: str) -> str:
    """Decode a path git quoted with C-style escapes.

    Octal escapes are raw bytes of the UTF-8 encoded name, e.g.
    ``"caf\\303\\251.txt"`` is ``café.txt``. Unquoted paths are returned
    as they are.
    """
    if len(path) < 2 or not (path.startswith('"') and path.endswith('"')):
        return path

    body = path[1:-1]
    raw = bytearray()
    index = 0
    while index < len(body):
        char = body[index]
        if char == "\\" and index + 1 < len(body):
            octal = body[index + 1:index + 4]
            if len(octal) == 3 and all(digit in OCTAL_DIGITS for digit in octal):
                raw.append(int(octal, 8) & 0xFF)
                index += 4
                continue
            escaped = _QUOTE_ESCAPES.get(body[index + 1])
            if escaped is not None:
                raw.extend(escaped)
                index += 2
                continue
        raw.extend(char.encode("utf-8"))
        index += 1
    return raw.decode("utf-8", errors="replace")


def _status_lines(status: Union[str, Iterable[str]]) -> List[str]:
    lines = status.splitlines() if isinstance(status, str) else status
    return [line for line in lines if line.strip()]


class ChangeSetDetector:
    """Computes the set of files changed by an agent run.

    Attributes:
        git_env: Environment passed to every git command.
    """

    def __init__(self, git_env: Optional[dict] = None):
        self.git_env = git_env or {}

    async def snapshot(self, workspace_path: Path) -> StatusSnapshot:
        """Capture the pre-run baseline.

        A failing status command yields an empty baseline instead of an
        error, so every post-run change is then treated as new.

        Args:
            workspace_path: Working copy to inspect.

        Returns:
            StatusSnapshot with status lines and HEAD sha.
        """
        repo = self._repository(workspace_path)

        try:
            status_lines = _status_lines(await repo.status_porcelain())
        except GitCommandError as exc:
            logger.warning(
                "Could not get initial git status, using empty baseline: %s",
                exc,
                extra={"workspace": str(workspace_path)},
            )
            status_lines = []

        head = await repo.head_sha()

        logger.info(
            "Captured pre-run git state",
            extra={
                "workspace": str(workspace_path),
                "status_entries": len(status_lines),
                "head": head,
            },
        )
        return StatusSnapshot(status_lines=status_lines, head=head)

    async def detect(
        self,
        workspace_path: Path,
        before_status_lines: Union[str, Iterable[str]],
        before_head: Optional[str] = None,
    ) -> frozenset:
        """Compute the definitive change set.

        Args:
            workspace_path: Working copy the agent ran in.
            before_status_lines: Porcelain status captured before the run.
            before_head: HEAD sha captured before the run. When given, the
                commit delta covers every commit made since; when omitted,
                it is the file list of the most recent commit.

        Returns:
            Frozen set of changed repository-relative paths.

        Raises:
            ChangeDetectionError: If the post-run status cannot be read.
        """
        repo = self._repository(workspace_path)

        try:
            after_status = await repo.status_porcelain()
        except GitCommandError as exc:
            raise ChangeDetectionError(
                f"Failed to detect changed files: {exc}"
            ) from exc

        from_status = status_delta(before_status_lines, after_status)
        from_commits = await self._commit_delta(repo, before_head)

        changed = frozenset(from_status | from_commits)

        logger.info(
            "Detected %d changed files",
            len(changed),
            extra={
                "workspace": str(workspace_path),
                "status_delta": len(from_status),
                "commit_delta": len(from_commits),
            },
        )
        return changed

    async def _commit_delta(
        self,
        repo: GitRepository,
        before_head: Optional[str],
    ) -> Set[str]:
        """Files touched by the agent's commits; empty when there are none.

        Any failure here is non-fatal: the agent may not have committed, or
        the repository may have no commits yet.
        """
        try:
            if before_head is None:
                return set(await repo.last_commit_files())

            current_head = await repo.head_sha()
            if current_head is None or current_head == before_head:
                return set()

            return set(await repo.diff_names(before_head, current_head))
        except GitCommandError as exc:
            logger.warning(
                "Could not get files from agent commits: %s",
                exc,
            )
            return set()

    def _repository(self, workspace_path: Path) -> GitRepository:
        return GitRepository(workspace_path, env=self.git_env)
