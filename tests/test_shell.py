"""Tests for safe_upgrade.shell.

These run real processes through ``sh``.
"""

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path

import pytest

from safe_upgrade.models import ScriptConfig
from safe_upgrade.shell import ScriptRunner, step

pytestmark = pytest.mark.skipif(
    os.name != "posix" or shutil.which("sh") is None, reason="requires a POSIX shell"
)


def shell(command: str, timeout_ms: int = 10_000) -> ScriptConfig:
    return ScriptConfig(kind="shell", command=command, timeout_ms=timeout_ms)


def is_running(pid: int) -> bool:
    """True unless ``pid`` is gone or a zombie."""
    try:
        stat = Path(f"/proc/{pid}/stat").read_text()
    except (FileNotFoundError, ProcessLookupError):
        return False
    return stat.rsplit(")", 1)[1].split()[0] not in ("Z", "X")


class TestScriptRunner:
    def test_success_captures_stdout(self, tmp_path: Path) -> None:
        result = ScriptRunner().run(shell("echo hello"), tmp_path)
        assert result.success
        assert result.exit_code == 0
        assert result.stdout == "hello\n"
        assert not result.timed_out

    def test_non_zero_exit_does_not_raise(self, tmp_path: Path) -> None:
        result = ScriptRunner().run(shell("echo broken >&2; exit 3"), tmp_path)
        assert not result.success
        assert result.exit_code == 3
        assert result.stderr == "broken\n"

    def test_runs_in_cwd(self, tmp_path: Path) -> None:
        result = ScriptRunner().run(shell("pwd"), tmp_path)
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    def test_timeout_bounds_duration(self, tmp_path: Path) -> None:
        """A script outliving its timeout is killed at the timeout, not at its natural end."""
        result = ScriptRunner().run(shell("sleep 5", timeout_ms=300), tmp_path)
        assert not result.success
        assert result.timed_out
        assert result.exit_code == 124
        assert 250 <= result.duration_ms < 3000
        assert "timed out after 300ms" in result.stderr

    def test_timeout_kills_background_children(self, tmp_path: Path) -> None:
        """Children holding the output pipes do not keep run() waiting."""
        result = ScriptRunner().run(shell("sleep 5 & sleep 5; wait", timeout_ms=300), tmp_path)
        assert result.timed_out
        assert result.duration_ms < 3000

    @pytest.mark.skipif(not Path("/proc").is_dir(), reason="requires /proc")
    def test_exited_script_does_not_wait_for_background_children(self, tmp_path: Path) -> None:
        """A daemon left running by a finished script is killed, not waited on."""
        start = time.monotonic()
        result = ScriptRunner().run(
            shell("sleep 30 & echo $! > bg.pid; echo done", timeout_ms=1000), tmp_path
        )

        assert time.monotonic() - start < 5
        assert result.success
        assert result.stdout == "done\n"
        pid = int((tmp_path / "bg.pid").read_text())
        deadline = time.monotonic() + 2
        while is_running(pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert not is_running(pid)

    def test_output_is_truncated(self, tmp_path: Path) -> None:
        result = ScriptRunner(max_output_bytes=100).run(
            shell("yes a | head -c 1000"), tmp_path
        )
        marker = "\n\n[Output truncated - exceeded 100 bytes]"
        assert result.success
        assert result.stdout.endswith(marker)
        assert result.stdout[: -len(marker)] == "a\n" * 50

    def test_output_at_limit_is_not_truncated(self, tmp_path: Path) -> None:
        result = ScriptRunner(max_output_bytes=4).run(shell("printf abcd"), tmp_path)
        assert result.stdout == "abcd"

    def test_missing_executable(self, tmp_path: Path) -> None:
        result = ScriptRunner().run_command("safe-upgrade-no-such-tool", [], tmp_path, 1000)
        assert not result.success
        assert result.exit_code == 127
        assert "Failed to start" in result.stderr

    def test_missing_cwd(self, tmp_path: Path) -> None:
        result = ScriptRunner().run(shell("true"), tmp_path / "gone")
        assert result.exit_code == 127

    def test_invalid_script_is_reported_not_raised(self, tmp_path: Path) -> None:
        result = ScriptRunner().run(ScriptConfig(kind="npm", command="npm"), tmp_path)
        assert not result.success
        assert result.exit_code == 2
        assert "names no script" in result.stderr


def test_step_prints_header(capsys: pytest.CaptureFixture[str]) -> None:
    step("Fetching available versions")
    out = capsys.readouterr().out
    assert "Fetching available versions" in out
    assert "─" * 60 in out
