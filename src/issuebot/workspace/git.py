"""Thin async wrapper around the git command line.

Each method runs one git command in the workspace through an asyncio
subprocess, so the event loop stays free while the agent's output is being
narrated. Failures raise GitCommandError with the command, exit code and
stderr; callers translate them into the orchestration error taxonomy.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

GIT_COMMAND_TIMEOUT_SECONDS = 300

# Report paths as raw UTF-8 instead of octal-escaped quoted strings
UNQUOTED_PATHS = ("-c", "core.quotePath=false")


class GitCommandError(Exception):
    """Raised when a git command exits non-zero or cannot be run.

    Attributes:
        args_list: The git arguments that were run (credentials redacted).
        exit_code: Process exit code (-1 when git could not be started).
        stderr: Standard error of the command.
    """

    def __init__(self, args_list: Sequence[str], exit_code: int, stderr: str):
        self.args_list = list(args_list)
        self.exit_code = exit_code
        self.stderr = stderr
        command = " ".join(["git", *self.args_list])
        detail = stderr.strip() or f"exit code {exit_code}"
        super().__init__(f"`{command}` failed: {detail}")


class GitRepository:
    """Runs git commands against one working copy.

    Attributes:
        path: Working copy directory (the clone target for ``clone``).
        env: Extra environment variables for every git command, typically
            the author/committer identity.
        timeout_seconds: Per-command timeout.
    """

    def __init__(
        self,
        path: Path,
        env: Optional[Mapping[str, str]] = None,
        timeout_seconds: int = GIT_COMMAND_TIMEOUT_SECONDS,
    ):
        self.path = path
        self.env = dict(env or {})
        self.timeout_seconds = timeout_seconds

    async def clone(self, clone_url: str) -> None:
        """Clone ``clone_url`` into ``self.path``."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        await self._run(
            ["clone", clone_url, str(self.path)],
            cwd=self.path.parent,
            redact=clone_url,
        )

    async def checkout(self, branch: str) -> None:
        await self._run(["checkout", branch])

    async def create_branch(self, branch: str) -> None:
        """Create ``branch`` from the current HEAD and switch to it."""
        await self._run(["checkout", "-b", branch])

    async def status_porcelain(self) -> List[str]:
        """Return porcelain status records as ``XY path`` lines.

        Paths are read verbatim (``-z`` with ``core.quotePath=false``), so
        non-ASCII names and names with spaces or newlines arrive unescaped.
        """
        output = await self._run(
            [*UNQUOTED_PATHS, "status", "--porcelain", "-z", "--untracked-files=all"],
            strip=False,
        )
        return split_porcelain_z(output)

    async def head_sha(self) -> Optional[str]:
        """Return the HEAD commit sha, or None for a repository without commits."""
        try:
            return (await self._run(["rev-parse", "--verify", "HEAD"])).strip()
        except GitCommandError:
            return None

    async def last_commit_files(self) -> List[str]:
        output = await self._run(
            [
                *UNQUOTED_PATHS,
                "diff-tree",
                "--no-commit-id",
                "--name-only",
                "-r",
                "-z",
                "--root",
                "HEAD",
            ],
            strip=False,
        )
        return _nul_records(output)

    async def diff_names(self, from_ref: str, to_ref: str = "HEAD") -> List[str]:
        output = await self._run(
            [*UNQUOTED_PATHS, "diff", "--name-only", "-z", from_ref, to_ref],
            strip=False,
        )
        return _nul_records(output)

    async def add(self, paths: Sequence[str]) -> None:
        if paths:
            await self._run(["add", "--", *paths])

    async def remove(self, paths: Sequence[str]) -> None:
        """Stop tracking paths that no longer exist in the working tree."""
        if paths:
            await self._run(["rm", "--cached", "--ignore-unmatch", "-r", "--", *paths])

    async def has_staged_changes(self) -> bool:
        try:
            await self._run(["diff", "--cached", "--quiet"])
        except GitCommandError as exc:
            if exc.exit_code == 1:
                return True
            raise
        return False

    async def commit(self, message: str) -> None:
        await self._run(["commit", "-m", message])

    async def push(self, branch: str, remote: str = "origin") -> None:
        await self._run(["push", "--set-upstream", remote, branch])

    async def _run(
        self,
        args: Sequence[str],
        cwd: Optional[Path] = None,
        strip: bool = True,
        redact: Optional[str] = None,
    ) -> str:
        """Run ``git <args>`` and return its decoded stdout.

        Args:
            args: Arguments after ``git``.
            cwd: Working directory, defaults to the repository path.
            strip: Strip surrounding whitespace from stdout.
            redact: Secret-bearing argument to hide in logs and errors.

        Raises:
            GitCommandError: On a non-zero exit, timeout or spawn failure.
        """
        shown_args = [
            "<redacted>" if redact is not None and arg == redact else arg
            for arg in args
        ]
        env = dict(os.environ)
        env.update(self.env)
        env["GIT_TERMINAL_PROMPT"] = "0"

        logger.debug("Running git command", extra={"git_args": shown_args})

        try:
            process = await asyncio.create_subprocess_exec(
                "git",
                *args,
                cwd=str(cwd or self.path),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise GitCommandError(
                shown_args, -1, f"timed out after {self.timeout_seconds}s"
            ) from exc
        except OSError as exc:
            raise GitCommandError(
                shown_args, -1, f"Failed to execute git: {exc}"
            ) from exc

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")
        if redact:
            stderr_text = stderr_text.replace(redact, "<redacted>")

        if process.returncode != 0:
            raise GitCommandError(shown_args, process.returncode, stderr_text)

        return stdout_text.strip() if strip else stdout_text


def split_porcelain_z(output: str) -> List[str]:
    """Turn ``status --porcelain -z`` output into ``XY path`` records.

    Rename and copy entries are followed by an extra record holding the
    source path; it is dropped so every returned record names the path
    that exists after the change.
    """
    records = output.split("\0")
    lines: List[str] = []
    index = 0
    while index < len(records):
        record = records[index]
        index += 1
        if len(record) <= 3:
            continue
        lines.append(record)
        if record[0] in ("R", "C"):
            index += 1
    return lines


def _nul_records(output: str) -> List[str]:
    return [record for record in output.split("\0") if record]
