"""Aider change agent invocation.

Builds the aider command line, writes the natural-language instruction to
a temporary message file, and runs the agent under the ProcessSupervisor
with the workspace as working directory. The message file is deleted
afterwards regardless of outcome.

The agent distribution is bootstrapped into its home directory once per
process. That one-time setup is tracked by an explicit AgentEnvironment
object passed to the runner, not by hidden module state.
"""

import logging
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Mapping, Optional

from src.issuebot.errors import AgentInvocationError
from src.issuebot.runner.models import ProcessOutcome
from src.issuebot.runner.supervisor import ChunkCallback, ProcessSupervisor, ProgressSink

logger = logging.getLogger(__name__)

AGENT_BINARY = "aider"
MESSAGE_DIR_NAME = "aider-messages"


class AgentEnvironment:
    """One-time bootstrap of the agent installation directory.

    The first call to ``ensure_ready`` copies ``source_dir`` into
    ``home_dir`` when the home directory does not exist yet. The check and
    the flag update happen under a lock, so concurrent callers set up the
    environment exactly once.

    Attributes:
        home_dir: Agent HOME; the binary lives in ``<home_dir>/.local/bin``.
        source_dir: Read-only location of the packaged agent distribution.
    """

    def __init__(self, home_dir: Path, source_dir: Optional[Path] = None):
        self.home_dir = home_dir
        self.source_dir = source_dir
        self._lock = threading.Lock()
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def binary_path(self) -> Path:
        return self.home_dir / ".local" / "bin" / AGENT_BINARY

    def ensure_ready(self) -> None:
        """Prepare the agent home directory if that has not happened yet."""
        with self._lock:
            if self._ready:
                return

            if self.home_dir.exists():
                logger.info(
                    "Agent home directory already exists",
                    extra={"home_dir": str(self.home_dir)},
                )
            else:
                self._bootstrap()

            self._ready = True

    def _bootstrap(self) -> None:
        if self.source_dir is not None and self.source_dir.exists():
            shutil.copytree(self.source_dir, self.home_dir)
            logger.info(
                "Copied agent distribution",
                extra={
                    "source_dir": str(self.source_dir),
                    "home_dir": str(self.home_dir),
                },
            )
            return

        logger.warning(
            "Agent source directory not found, creating empty home",
            extra={"source_dir": str(self.source_dir)},
        )
        self.home_dir.mkdir(parents=True, exist_ok=True)


class AgentRunner:
    """Runs aider against a workspace with a message file.

    Attributes:
        environment: Shared agent bootstrap state.
        model: Model identifier passed to ``--model``.
        supervisor: Process supervisor used for execution.
        message_dir: Directory for temporary instruction files.
    """

    def __init__(
        self,
        environment: AgentEnvironment,
        model: str,
        supervisor: Optional[ProcessSupervisor] = None,
        message_dir: Optional[Path] = None,
    ):
        self.environment = environment
        self.model = model
        self.supervisor = supervisor or ProcessSupervisor(home_dir=environment.home_dir)
        self.message_dir = message_dir or Path(tempfile.gettempdir()) / MESSAGE_DIR_NAME

    def build_command(self, message_file: Path) -> List[str]:
        """Build the aider argv for a message file.

        Example:
            >>> runner.build_command(Path("/tmp/m.txt"))
            ['/tmp/aider/.local/bin/aider', '--model', 'gpt-4o', '--yes',
             '--auto-commits', '--dirty-commits', '--no-gitignore',
             '--message-file', '/tmp/m.txt']
        """
        return [
            str(self.environment.binary_path),
            "--model",
            self.model,
            "--yes",
            "--auto-commits",
            "--dirty-commits",
            "--no-gitignore",
            "--message-file",
            str(message_file),
        ]

    async def run(
        self,
        workspace_path: Path,
        instruction: str,
        label: str,
        env: Optional[Mapping[str, str]] = None,
        on_chunk: Optional[ChunkCallback] = None,
        progress: Optional[ProgressSink] = None,
    ) -> ProcessOutcome:
        """Run the agent on a workspace with the given instruction.

        Args:
            workspace_path: Working copy the agent edits.
            instruction: Natural-language change request.
            label: Identifier used in the message file name
                (e.g. "owner-repo-42").
            env: Extra environment variables, such as the git identity.
            on_chunk: Live output callback.
            progress: Throttled progress narrator.

        Returns:
            ProcessOutcome of a successful run.

        Raises:
            AgentInvocationError: If the agent fails; carries partial output.
                Bootstrap and message-file I/O failures are raised the same
                way, with exit code -1.
        """
        try:
            self.environment.ensure_ready()
            message_file = self._write_message_file(instruction, label)
        except OSError as exc:
            logger.exception("Failed to prepare agent run", extra={"label": label})
            raise AgentInvocationError(
                f"Failed to prepare agent: {exc}",
                ProcessOutcome(stdout="", stderr=str(exc), exit_code=-1, failed=True),
            ) from exc

        try:
            return await self.supervisor.run(
                self.build_command(message_file),
                working_dir=workspace_path,
                env=env,
                on_chunk=on_chunk,
                progress=progress,
            )
        finally:
            self._remove_message_file(message_file)

    def _write_message_file(self, instruction: str, label: str) -> Path:
        self.message_dir.mkdir(parents=True, exist_ok=True)
        message_file = (
            self.message_dir
            / f"aider-message-{label}-{int(time.time() * 1000)}.txt"
        )
        message_file.write_text(instruction, encoding="utf-8")
        logger.info(
            "Agent message written to temporary file",
            extra={"message_file": str(message_file)},
        )
        return message_file

    def _remove_message_file(self, message_file: Path) -> None:
        try:
            message_file.unlink(missing_ok=True)
        except OSError:
            logger.exception(
                "Error cleaning up temporary message file",
                extra={"message_file": str(message_file)},
            )
