"""Error taxonomy for the change orchestration engine.

Every error raised by the engine carries a structured ``output`` payload
(CommandOutput) so callers can report partial agent logs on any failure
path without inspecting ad-hoc attributes.

Propagation policy:
- AgentInvocationError, ChangeDetectionError: reported on the thread, the
  run ends without a pull request.
- WorkspaceProvisionError, PublishError: reported on the thread, then
  re-raised to the caller.
"""

from typing import Optional

from src.issuebot.runner.models import CommandOutput, ProcessOutcome


class IssueBotError(Exception):
    """Base class for orchestration failures.

    Attributes:
        message: Human-readable error description.
        output: Agent output captured before the failure (may be empty).
    """

    stage = "unknown"

    def __init__(self, message: str, output: Optional[CommandOutput] = None):
        self.message = message
        self.output = output if output is not None else CommandOutput()
        super().__init__(message)

    def with_output(self, output: CommandOutput) -> "IssueBotError":
        """Attach agent output to an error raised before it was known."""
        self.output = output
        return self


class WorkspaceProvisionError(IssueBotError):
    """Raised when cloning or branching the workspace fails."""

    stage = "provisioning"


class AgentInvocationError(IssueBotError):
    """Raised when the change agent exits non-zero or cannot be spawned.

    Attributes:
        outcome: The full process outcome, including partial output.
    """

    stage = "agent"

    def __init__(self, message: str, outcome: ProcessOutcome):
        self.outcome = outcome
        super().__init__(message, output=outcome.output)

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


class ChangeDetectionError(IssueBotError):
    """Raised when git status or commit inspection fails after the agent ran."""

    stage = "change_detection"


class PublishError(IssueBotError):
    """Raised when commit, push or pull request creation fails."""

    stage = "publish"
