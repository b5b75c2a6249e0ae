"""Result models for external process execution.

ProcessOutcome is produced once per agent invocation and is never mutated
afterwards. CommandOutput is the stdout/stderr payload shape that every
result and every error of the orchestration engine carries, so failure
handling never loses partial logs.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class CommandOutput:
    """Captured output of the change agent.

    Attributes:
        stdout: Accumulated standard output.
        stderr: Accumulated standard error.
    """

    stdout: str = ""
    stderr: str = ""

    @property
    def is_empty(self) -> bool:
        """True when neither stream produced any non-blank text."""
        return not self.stdout.strip() and not self.stderr.strip()


@dataclass(frozen=True)
class ProcessOutcome:
    """Result of a supervised process execution.

    Attributes:
        stdout: Everything the process wrote to standard output.
        stderr: Everything the process wrote to standard error.
        exit_code: Process exit code (-1 when the process never started).
        failed: True for a non-zero exit or a spawn error.
        duration_seconds: Wall-clock execution time.
    """

    stdout: str
    stderr: str
    exit_code: int
    failed: bool
    duration_seconds: float = 0.0

    @property
    def output(self) -> CommandOutput:
        """The stdout/stderr pair as a CommandOutput payload."""
        return CommandOutput(stdout=self.stdout, stderr=self.stderr)
