"""Unit tests for the ProcessSupervisor.

Covers output capture, exit code handling, spawn failures, chunk
callbacks, progress flushing and the stdin auto-responder lifetime, using
mocked subprocesses plus a few real ``sh`` invocations.
"""

import asyncio
import shutil
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.issuebot.errors import AgentInvocationError
from src.issuebot.runner.supervisor import ProcessSupervisor


def run_async(coro):
    return asyncio.run(coro)


requires_sh = pytest.mark.skipif(shutil.which("sh") is None, reason="sh not available")


def _make_mock_process(
    returncode: int = 0,
    stdout_chunks: Optional[List[bytes]] = None,
    stderr_chunks: Optional[List[bytes]] = None,
):
    """Build a mock subprocess with chunked stdout/stderr streams."""
    process = MagicMock()
    process.returncode = returncode

    process.stdin = MagicMock()
    process.stdin.is_closing = MagicMock(return_value=False)
    process.stdin.drain = AsyncMock()

    process.stdout = MagicMock()
    process.stdout.read = AsyncMock(side_effect=list(stdout_chunks or []) + [b""])
    process.stderr = MagicMock()
    process.stderr.read = AsyncMock(side_effect=list(stderr_chunks or []) + [b""])

    process.wait = AsyncMock(return_value=returncode)
    return process


class _RecordingSink:
    """Progress sink that records every flush request."""

    def __init__(self):
        self.calls = []

    async def maybe_flush(self, stdout: str, stderr: str) -> bool:
        self.calls.append((stdout, stderr))
        return False


@pytest.fixture
def supervisor():
    return ProcessSupervisor(auto_response_interval=0.01)


@pytest.fixture
def workspace_path(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


class TestOutputCapture:
    def test_zero_exit_returns_outcome_with_both_streams(self, supervisor, workspace_path):
        process = _make_mock_process(
            stdout_chunks=[b"Applying edit\n", b"Done.\n"],
            stderr_chunks=[b"warning: slow\n"],
        )
        with patch("asyncio.create_subprocess_exec", return_value=process):
            outcome = run_async(supervisor.run(["aider"], workspace_path))

        assert outcome.exit_code == 0
        assert outcome.failed is False
        assert outcome.stdout == "Applying edit\nDone.\n"
        assert outcome.stderr == "warning: slow\n"
        assert outcome.duration_seconds >= 0

    def test_multibyte_character_split_across_chunks(self, supervisor, workspace_path):
        check_mark = "✓".encode("utf-8")
        process = _make_mock_process(
            stdout_chunks=[check_mark[:2], check_mark[2:] + b" done\n"],
        )
        with patch("asyncio.create_subprocess_exec", return_value=process):
            outcome = run_async(supervisor.run(["aider"], workspace_path))

        assert outcome.stdout == "✓ done\n"

    def test_command_runs_in_working_dir_with_piped_stdin(self, supervisor, workspace_path):
        process = _make_mock_process()
        with patch("asyncio.create_subprocess_exec", return_value=process) as spawn:
            run_async(supervisor.run(["aider", "--yes"], workspace_path))

        args, kwargs = spawn.call_args
        assert args == ("aider", "--yes")
        assert kwargs["cwd"] == str(workspace_path)
        assert kwargs["stdin"] == asyncio.subprocess.PIPE


class TestFailures:
    def test_nonzero_exit_raises_with_partial_output(self, supervisor, workspace_path):
        process = _make_mock_process(
            returncode=1,
            stdout_chunks=[b"Thinking...\n"],
            stderr_chunks=[b"rate limited\n"],
        )
        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(AgentInvocationError) as exc_info:
                run_async(supervisor.run(["aider"], workspace_path))

        error = exc_info.value
        assert error.exit_code == 1
        assert "rate limited" in error.output.stderr
        assert error.output.stdout == "Thinking...\n"
        assert error.outcome.failed is True

    def test_spawn_failure_raises_with_exit_code_minus_one(self, supervisor, workspace_path):
        with patch(
            "asyncio.create_subprocess_exec",
            side_effect=FileNotFoundError("No such file: aider"),
        ):
            with pytest.raises(AgentInvocationError) as exc_info:
                run_async(supervisor.run(["aider"], workspace_path))

        assert exc_info.value.exit_code == -1
        assert "Failed to start aider" in exc_info.value.message


class TestCallbacks:
    def test_on_chunk_receives_chunks_in_order(self, supervisor, workspace_path):
        received = []
        process = _make_mock_process(stdout_chunks=[b"one\n", b"two\n"])
        with patch("asyncio.create_subprocess_exec", return_value=process):
            run_async(
                supervisor.run(
                    ["aider"],
                    workspace_path,
                    on_chunk=lambda stream, text: received.append((stream, text)),
                )
            )

        assert received == [("stdout", "one\n"), ("stdout", "two\n")]

    def test_failing_callback_does_not_abort_run(self, supervisor, workspace_path):
        def explode(stream, text):
            raise RuntimeError("callback bug")

        process = _make_mock_process(stdout_chunks=[b"output\n"])
        with patch("asyncio.create_subprocess_exec", return_value=process):
            outcome = run_async(
                supervisor.run(["aider"], workspace_path, on_chunk=explode)
            )

        assert outcome.stdout == "output\n"

    def test_progress_flushed_per_chunk_and_once_at_end(self, supervisor, workspace_path):
        sink = _RecordingSink()
        process = _make_mock_process(stdout_chunks=[b"a", b"b"])
        with patch("asyncio.create_subprocess_exec", return_value=process):
            run_async(supervisor.run(["aider"], workspace_path, progress=sink))

        assert len(sink.calls) == 3
        assert sink.calls[-1] == ("ab", "")

    def test_progress_flushed_before_failure_is_raised(self, supervisor, workspace_path):
        sink = _RecordingSink()
        process = _make_mock_process(returncode=2, stderr_chunks=[b"boom"])
        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(AgentInvocationError):
                run_async(supervisor.run(["aider"], workspace_path, progress=sink))

        assert sink.calls[-1] == ("", "boom")


class TestAutoResponder:
    @staticmethod
    def _slow_process(returncode: int):
        process = _make_mock_process(returncode=returncode)

        async def slow_read(size):
            await asyncio.sleep(0.05)
            return b""

        process.stdout.read = AsyncMock(side_effect=slow_read)
        return process

    @pytest.mark.parametrize("returncode", [0, 1])
    def test_responder_inactive_after_run(self, supervisor, workspace_path, returncode):
        process = self._slow_process(returncode)

        async def scenario():
            try:
                await supervisor.run(["aider"], workspace_path)
            except AgentInvocationError:
                pass
            writes_at_exit = process.stdin.write.call_count
            await asyncio.sleep(0.05)
            return writes_at_exit

        with patch("asyncio.create_subprocess_exec", return_value=process):
            writes_at_exit = run_async(scenario())

        assert writes_at_exit >= 1
        process.stdin.write.assert_called_with(b"y\n")
        assert process.stdin.write.call_count == writes_at_exit
        process.stdin.close.assert_called_once()

    def test_no_tasks_left_behind(self, supervisor, workspace_path):
        process = self._slow_process(0)

        async def scenario():
            await supervisor.run(["aider"], workspace_path)
            return [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]

        with patch("asyncio.create_subprocess_exec", return_value=process):
            leftover = run_async(scenario())

        assert leftover == []

    def test_stops_writing_when_stdin_closes(self, supervisor, workspace_path):
        process = self._slow_process(0)
        process.stdin.is_closing = MagicMock(return_value=True)

        with patch("asyncio.create_subprocess_exec", return_value=process):
            run_async(supervisor.run(["aider"], workspace_path))

        process.stdin.write.assert_not_called()
        process.stdin.close.assert_not_called()

    def test_process_outliving_its_streams_is_killed_and_reaped(self, supervisor, workspace_path):
        process = _make_mock_process()
        process.returncode = None
        process.stdout.read = AsyncMock(side_effect=RuntimeError("stream broke"))

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(RuntimeError):
                run_async(supervisor.run(["aider"], workspace_path))

        process.kill.assert_called_once()
        process.wait.assert_awaited()

    def test_already_exited_process_is_still_reaped(self, supervisor, workspace_path):
        process = _make_mock_process()
        process.returncode = None
        process.kill.side_effect = ProcessLookupError()
        process.stdout.read = AsyncMock(side_effect=RuntimeError("stream broke"))

        with patch("asyncio.create_subprocess_exec", return_value=process):
            with pytest.raises(RuntimeError):
                run_async(supervisor.run(["aider"], workspace_path))

        process.wait.assert_awaited()


class TestEnvironment:
    def test_home_and_path_point_at_agent_home(self, tmp_path):
        supervisor = ProcessSupervisor(home_dir=tmp_path / "aider")
        env = supervisor.build_environment({"PATH": "/usr/bin", "EXTRA": "1"})

        assert env["HOME"] == str(tmp_path / "aider")
        assert env["PATH"].startswith(f"{tmp_path / 'aider'}/.local/bin")
        assert env["PATH"].endswith("/usr/bin")
        assert env["EXTRA"] == "1"

    def test_without_home_dir_environment_is_passed_through(self):
        env = ProcessSupervisor().build_environment({"EXTRA": "1"})
        assert env["EXTRA"] == "1"


@requires_sh
class TestRealProcess:
    def test_captures_streams_and_exit_code(self, workspace_path):
        supervisor = ProcessSupervisor(auto_response_interval=0.05)
        with pytest.raises(AgentInvocationError) as exc_info:
            run_async(
                supervisor.run(
                    ["sh", "-c", "echo out; echo 'rate limited' >&2; exit 3"],
                    workspace_path,
                )
            )

        assert exc_info.value.exit_code == 3
        assert exc_info.value.output.stdout == "out\n"
        assert "rate limited" in exc_info.value.output.stderr

    def test_prompt_is_answered_by_auto_responder(self, workspace_path):
        supervisor = ProcessSupervisor(auto_response_interval=0.05)
        outcome = run_async(
            supervisor.run(
                ["sh", "-c", 'printf "Proceed? "; read answer; echo "got $answer"'],
                workspace_path,
            )
        )

        assert outcome.exit_code == 0
        assert "got y" in outcome.stdout

    def test_runs_in_working_directory(self, workspace_path):
        outcome = run_async(ProcessSupervisor().run(["sh", "-c", "pwd"], workspace_path))
        assert Path(outcome.stdout.strip()).resolve() == workspace_path.resolve()
