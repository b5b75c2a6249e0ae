"""Supervised execution of the external change agent.

Runs a command as an async subprocess with independent stdin/stdout/stderr
pipes, multiplexes both output streams into growing buffers, forwards each
chunk to a live callback, and keeps interactive confirmation prompts
unblocked by periodically writing an affirmative answer to stdin.

All stream callbacks run on the event loop of the calling task, so buffer
appends need no locking. The auto-responder task lives exactly as long as
the process: it is cancelled in a ``finally`` block as soon as the process
terminates or fails to start, and stdin is closed afterwards.
"""

import asyncio
import codecs
import logging
import os
import time
from pathlib import Path
from typing import Callable, Mapping, Optional, Protocol, Sequence, Set

from src.issuebot.errors import AgentInvocationError
from src.issuebot.runner.models import ProcessOutcome

logger = logging.getLogger(__name__)

AUTO_RESPONSE = b"y\n"
DEFAULT_AUTO_RESPONSE_INTERVAL_SECONDS = 5.0
READ_CHUNK_SIZE = 4096
LOG_SNIPPET_LENGTH = 200

ChunkCallback = Callable[[str, str], None]


class ProgressSink(Protocol):
    """Anything that can be asked to narrate the accumulated output."""

    async def maybe_flush(self, stdout: str, stderr: str) -> bool:
        ...


class _OutputBuffers:
    """Accumulated stdout/stderr text for one invocation."""

    def __init__(self) -> None:
        self.stdout = ""
        self.stderr = ""

    def append(self, stream_name: str, text: str) -> None:
        if stream_name == "stdout":
            self.stdout += text
        else:
            self.stderr += text


class ProcessSupervisor:
    """Runs a command with streaming capture and prompt auto-answering.

    Attributes:
        home_dir: Agent installation directory. When set, HOME points at it
            and ``<home_dir>/.local/bin`` is prepended to PATH.
        auto_response: Bytes written to stdin on every responder tick.
        auto_response_interval: Seconds between responder writes.
        chunk_size: Maximum bytes read from a stream per chunk.
    """

    def __init__(
        self,
        home_dir: Optional[Path] = None,
        auto_response: bytes = AUTO_RESPONSE,
        auto_response_interval: float = DEFAULT_AUTO_RESPONSE_INTERVAL_SECONDS,
        chunk_size: int = READ_CHUNK_SIZE,
    ):
        self.home_dir = home_dir
        self.auto_response = auto_response
        self.auto_response_interval = auto_response_interval
        self.chunk_size = chunk_size

    async def run(
        self,
        command: Sequence[str],
        working_dir: Path,
        env: Optional[Mapping[str, str]] = None,
        on_chunk: Optional[ChunkCallback] = None,
        progress: Optional[ProgressSink] = None,
    ) -> ProcessOutcome:
        """Execute a command and collect its output.

        Args:
            command: Program and arguments (no shell interpolation).
            working_dir: Directory the process runs in.
            env: Extra environment variables merged over ``os.environ``.
            on_chunk: Called synchronously with ``(stream_name, text)`` for
                every decoded chunk.
            progress: Optional narrator; asked to flush after every chunk
                (fire-and-forget) and once more before this method returns
                or raises.

        Returns:
            ProcessOutcome for a zero exit code.

        Raises:
            AgentInvocationError: On a non-zero exit code or when the process
                cannot be started. The error carries the buffered output.
        """
        start_time = time.monotonic()
        buffers = _OutputBuffers()
        flush_tasks: Set[asyncio.Task] = set()

        try:
            exit_code = await self._execute(
                command, working_dir, env, buffers, on_chunk, progress, flush_tasks
            )
        except OSError as exc:
            outcome = self._build_outcome(-1, buffers, start_time)
            logger.error(
                "Failed to start %s: %s",
                command[0],
                exc,
                extra={"working_dir": str(working_dir)},
            )
            raise AgentInvocationError(
                f"Failed to start {command[0]}: {exc}", outcome
            ) from exc
        finally:
            await self._final_flush(progress, buffers, flush_tasks)

        outcome = self._build_outcome(exit_code, buffers, start_time)

        if outcome.failed:
            logger.error(
                "Command failed with exit code %d in %.1fs",
                exit_code,
                outcome.duration_seconds,
                extra={"command": command[0], "stderr_length": len(outcome.stderr)},
            )
            raise AgentInvocationError(
                f"Command exited with code {exit_code}", outcome
            )

        logger.info(
            "Command completed successfully in %.1fs",
            outcome.duration_seconds,
            extra={"command": command[0], "stdout_length": len(outcome.stdout)},
        )
        return outcome

    def build_environment(
        self, env: Optional[Mapping[str, str]] = None
    ) -> dict[str, str]:
        """Merge the process environment, caller overrides and HOME/PATH.

        Args:
            env: Caller-supplied variables.

        Returns:
            The full environment for the child process.
        """
        merged = dict(os.environ)
        if env:
            merged.update(env)

        if self.home_dir is not None:
            home = str(self.home_dir)
            current_path = merged.get("PATH", os.defpath)
            merged["HOME"] = home
            merged["PATH"] = f"{home}/.local/bin{os.pathsep}{current_path}"

        return merged

    async def _execute(
        self,
        command: Sequence[str],
        working_dir: Path,
        env: Optional[Mapping[str, str]],
        buffers: _OutputBuffers,
        on_chunk: Optional[ChunkCallback],
        progress: Optional[ProgressSink],
        flush_tasks: Set[asyncio.Task],
    ) -> int:
        """Start the process, pump both streams and wait for exit.

        Returns:
            The process exit code.
        """
        logger.info(
            "Starting %s",
            command[0],
            extra={"working_dir": str(working_dir), "argc": len(command)},
        )

        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(working_dir),
            env=self.build_environment(env),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        responder = asyncio.create_task(self._auto_respond(process))
        try:
            await asyncio.gather(
                self._pump(process.stdout, "stdout", buffers, on_chunk, progress, flush_tasks),
                self._pump(process.stderr, "stderr", buffers, on_chunk, progress, flush_tasks),
            )
            await process.wait()
        finally:
            await self._stop_auto_responder(responder, process)

        logger.info("Command exited with code %s", process.returncode)
        return process.returncode

    async def _pump(
        self,
        stream: Optional[asyncio.StreamReader],
        stream_name: str,
        buffers: _OutputBuffers,
        on_chunk: Optional[ChunkCallback],
        progress: Optional[ProgressSink],
        flush_tasks: Set[asyncio.Task],
    ) -> None:
        """Read a stream to EOF, delivering each decoded chunk."""
        if stream is None:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(self.chunk_size)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    self._deliver(stream_name, tail, buffers, on_chunk, progress, flush_tasks)
                return

            text = decoder.decode(data)
            if text:
                self._deliver(stream_name, text, buffers, on_chunk, progress, flush_tasks)

    def _deliver(
        self,
        stream_name: str,
        text: str,
        buffers: _OutputBuffers,
        on_chunk: Optional[ChunkCallback],
        progress: Optional[ProgressSink],
        flush_tasks: Set[asyncio.Task],
    ) -> None:
        """Append a chunk, notify the callback and schedule a progress flush."""
        buffers.append(stream_name, text)
        logger.debug(
            "Command %s (snippet): %s",
            stream_name,
            text[:LOG_SNIPPET_LENGTH].replace("\n", " "),
        )

        if on_chunk is not None:
            try:
                on_chunk(stream_name, text)
            except Exception:
                logger.exception("Chunk callback failed", extra={"stream": stream_name})

        if progress is not None:
            task = asyncio.create_task(
                progress.maybe_flush(buffers.stdout, buffers.stderr)
            )
            flush_tasks.add(task)
            task.add_done_callback(flush_tasks.discard)

    async def _auto_respond(self, process: asyncio.subprocess.Process) -> None:
        """Write the auto-response to stdin on a fixed interval until stopped."""
        stdin = process.stdin
        if stdin is None:
            return

        while True:
            await asyncio.sleep(self.auto_response_interval)
            if stdin.is_closing():
                return
            try:
                stdin.write(self.auto_response)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                logger.debug("Auto-responder stopped: %s", exc)
                return

    async def _stop_auto_responder(
        self,
        responder: asyncio.Task,
        process: asyncio.subprocess.Process,
    ) -> None:
        """Cancel the responder, close stdin and reap a still-running process."""
        responder.cancel()
        await asyncio.wait({responder})

        stdin = process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        if process.returncode is None:
            logger.warning("Killing command that outlived its output streams")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def _final_flush(
        self,
        progress: Optional[ProgressSink],
        buffers: _OutputBuffers,
        flush_tasks: Set[asyncio.Task],
    ) -> None:
        """Wait for in-flight progress posts, then attempt one last flush."""
        if flush_tasks:
            await asyncio.gather(*list(flush_tasks), return_exceptions=True)

        if progress is None:
            return

        try:
            await progress.maybe_flush(buffers.stdout, buffers.stderr)
        except Exception:
            logger.exception("Final progress flush failed")

    def _build_outcome(
        self,
        exit_code: int,
        buffers: _OutputBuffers,
        start_time: float,
    ) -> ProcessOutcome:
        return ProcessOutcome(
            stdout=buffers.stdout,
            stderr=buffers.stderr,
            exit_code=exit_code,
            failed=exit_code != 0,
            duration_seconds=time.monotonic() - start_time,
        )
