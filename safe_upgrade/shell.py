"""Subprocess execution with timeouts.

Provides the ScriptRunner that every gate stage and lockfile sync goes
through, plus output formatting helpers.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO

from .commands import script_command
from .errors import ValidationFailed
from .models import (
    DEFAULT_MAX_OUTPUT_BYTES,
    SPAWN_FAILURE_EXIT_CODE,
    TIMEOUT_EXIT_CODE,
    ExecutionResult,
    ScriptConfig,
)

logger = logging.getLogger(__name__)

# Exit code reported when the adapter rejects a script before spawning it.
USAGE_EXIT_CODE = 2
_CHUNK_SIZE = 64 * 1024
_READER_JOIN_SECONDS = 5.0
# How long output may keep flowing after the direct child has exited.
_EOF_GRACE_SECONDS = 1.0


def step(msg: str) -> None:
    """Print a visually distinct step header.

    Used to separate major phases of an upgrade run in terminal output.
    """
    print(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")


class _BoundedReader(threading.Thread):
    """Drain a pipe, keeping at most ``limit`` bytes."""

    def __init__(self, stream: IO[bytes], limit: int) -> None:
        super().__init__(daemon=True)
        self.stream = stream
        self.limit = limit
        self.buffer = bytearray()
        self.truncated = False

    def run(self) -> None:
        try:
            while True:
                chunk = self.stream.read1(_CHUNK_SIZE)  # type: ignore[attr-defined]
                if not chunk:
                    break
                room = self.limit - len(self.buffer)
                if len(chunk) > room:
                    self.truncated = True
                    chunk = chunk[: max(room, 0)]
                self.buffer.extend(chunk)
        except (OSError, ValueError):
            # Pipe closed underneath us after a kill.
            pass

    def text(self) -> str:
        content = self.buffer.decode("utf-8", errors="replace")
        if self.truncated:
            content += f"\n\n[Output truncated - exceeded {self.limit} bytes]"
        return content


def _elapsed_ms(start: float) -> int:
    return max(int((time.monotonic() - start) * 1000), 0)


def _drain(readers: list[_BoundedReader], timeout: float) -> bool:
    """Wait up to ``timeout`` seconds for every reader to hit EOF."""
    deadline = time.monotonic() + timeout
    for reader in readers:
        reader.join(max(deadline - time.monotonic(), 0))
    return not any(reader.is_alive() for reader in readers)


def _kill_tree(proc: subprocess.Popen[bytes]) -> None:
    """Kill ``proc`` and everything it started in its session."""
    if os.name == "posix":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    proc.kill()


class ScriptRunner:
    """Runs one external command to completion and reports the outcome.

    ``run`` never raises: non-zero exits, timeouts, and spawn failures all
    come back as an ``ExecutionResult`` with ``success=False``.

    Args:
        max_output_bytes: Per-stream capture cap. Output beyond it is
            dropped and a truncation marker is appended.
    """

    def __init__(self, max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES) -> None:
        self.max_output_bytes = max_output_bytes

    def run(self, config: ScriptConfig, cwd: Path | str) -> ExecutionResult:
        """Run a configured script in ``cwd`` with its own timeout."""
        try:
            executable, argv = script_command(config)
        except ValidationFailed as exc:
            return ExecutionResult(success=False, exit_code=USAGE_EXIT_CODE, stderr=str(exc))
        return self.run_command(executable, argv, cwd, config.timeout_ms)

    def run_command(
        self, executable: str, argv: list[str], cwd: Path | str, timeout_ms: int
    ) -> ExecutionResult:
        """Run ``executable argv...`` in ``cwd``, killing it after ``timeout_ms``.

        The process is started in its own session so that a timeout kills
        the whole process group, not just the direct child.
        """
        cmd = [executable, *argv]
        logger.debug("Running `%s` in %s (timeout %dms)", shlex.join(cmd), cwd, timeout_ms)
        start = time.monotonic()

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(cwd),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=os.name == "posix",
            )
        except OSError as exc:
            logger.debug("Failed to start %s: %s", executable, exc)
            return ExecutionResult(
                success=False,
                exit_code=SPAWN_FAILURE_EXIT_CODE,
                stderr=f"Failed to start {executable}: {exc}",
                duration_ms=_elapsed_ms(start),
            )

        assert proc.stdout is not None and proc.stderr is not None
        readers = [
            _BoundedReader(proc.stdout, self.max_output_bytes),
            _BoundedReader(proc.stderr, self.max_output_bytes),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            returncode = proc.wait(timeout=timeout_ms / 1000)
        except subprocess.TimeoutExpired:
            timed_out = True
            _kill_tree(proc)
            proc.wait()
            returncode = TIMEOUT_EXIT_CODE

        if not _drain(readers, _EOF_GRACE_SECONDS):
            # Background children still hold the pipes open.
            logger.warning("Killing processes left behind by `%s`", shlex.join(cmd))
            _kill_tree(proc)
            _drain(readers, _READER_JOIN_SECONDS)
        duration_ms = _elapsed_ms(start)

        # Closing a pipe blocks while its reader is still inside read1().
        for stream, reader in zip((proc.stdout, proc.stderr), readers):
            if not reader.is_alive():
                stream.close()

        stdout, stderr = readers[0].text(), readers[1].text()
        if timed_out:
            stderr += f"\nProcess timed out after {timeout_ms}ms"
            logger.warning("`%s` timed out after %dms", shlex.join(cmd), timeout_ms)
        elif returncode < 0:
            # Killed by a signal: report it the way a shell would.
            returncode = 128 - returncode

        return ExecutionResult(
            success=returncode == 0,
            exit_code=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_ms=duration_ms,
            timed_out=timed_out,
        )
