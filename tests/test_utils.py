from __future__ import annotations

import io
import os
import sys
import threading
import time
from pathlib import Path

import pytest

from stageflush.config import Settings
from stageflush.utils import (
    clean_environment,
    CommandError,
    CommandSpawnError,
    CommandTimeoutError,
    Shellout,
)


def _python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


def test_shellout_returns_result_on_failure() -> None:
    result = Shellout().shellout(
        _python("import sys; sys.stdout.write('out'); sys.stderr.write('err'); sys.exit(3)")
    )
    assert result.returncode == 3
    assert result.stdout == "out"
    assert result.stderr == "err"
    assert result.failed
    assert result.command[0] == sys.executable


def test_shellout_checked_raises_with_full_result() -> None:
    with pytest.raises(CommandError) as excinfo:
        Shellout().shellout_checked(_python("import sys; print('boom'); sys.exit(2)"))
    error = excinfo.value
    assert error.returncode == 2
    assert error.stdout.strip() == "boom"
    assert error.result.invocation.command[-1].endswith("sys.exit(2)")
    assert "exit code 2" in str(error)


def test_shellout_checked_returns_successful_result() -> None:
    result = Shellout().shellout_checked(_python("print('fine')"))
    assert result.returncode == 0
    assert result.stdout.strip() == "fine"


def test_timeout_is_distinct_from_exit_status() -> None:
    shellout = Shellout(Settings(command_timeout_s=0.5))
    with pytest.raises(CommandTimeoutError) as excinfo:
        shellout.shellout(_python("import time; time.sleep(30)"))
    assert not isinstance(excinfo.value, CommandError)
    assert excinfo.value.returncode is None
    assert excinfo.value.timeout == 0.5


def test_missing_program_is_spawn_failure(tmp_path: Path) -> None:
    with pytest.raises(CommandSpawnError) as excinfo:
        Shellout().shellout([str(tmp_path / "no-such-binary")])
    assert isinstance(excinfo.value.cause, OSError)


def test_dependency_environment_is_hidden_and_restored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/leak")
    monkeypatch.setenv("PIP_INDEX_URL", "http://leak")
    monkeypatch.setenv("STAGEFLUSH_KEEP", "kept")
    code = (
        "import os; print(os.environ.get('PYTHONPATH', '-'), "
        "os.environ.get('PIP_INDEX_URL', '-'), os.environ.get('STAGEFLUSH_KEEP', '-'))"
    )
    result = Shellout().shellout(_python(code))
    assert result.stdout.split() == ["-", "-", "kept"]
    assert os.environ["PYTHONPATH"] == "/leak"
    assert os.environ["PIP_INDEX_URL"] == "http://leak"


def test_environment_restored_after_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VIRTUAL_ENV", "/venv")
    with pytest.raises(CommandTimeoutError):
        Shellout(Settings(command_timeout_s=0.3)).shellout(_python("import time; time.sleep(30)"))
    assert os.environ["VIRTUAL_ENV"] == "/venv"


def test_env_additions_and_cwd_are_passed_through(tmp_path: Path) -> None:
    result = Shellout().shellout(
        _python("import os; print(os.environ['FOO']); print(os.getcwd())"),
        env={"FOO": "bar"},
        cwd=tmp_path,
    )
    lines = result.stdout.splitlines()
    assert lines[0] == "bar"
    assert Path(lines[1]).resolve() == tmp_path.resolve()


def test_verbose_streams_live_and_captures_nothing() -> None:
    stream = io.StringIO()
    shellout = Shellout(Settings(log_verbose=True), live_stream=stream)
    result = shellout.shellout(
        _python("import sys; print('hello'); sys.stderr.write('warn\\n')"), log_verbose=True
    )
    assert result.returncode == 0
    assert result.stdout == ""
    assert result.stderr == ""
    assert "hello" in stream.getvalue()
    assert "warn" in stream.getvalue()


@pytest.mark.parametrize("global_verbose, call_verbose", [(False, True), (True, False)])
def test_verbose_requires_both_flags(global_verbose: bool, call_verbose: bool) -> None:
    stream = io.StringIO()
    shellout = Shellout(Settings(log_verbose=global_verbose), live_stream=stream)
    result = shellout.shellout(_python("print('hello')"), log_verbose=call_verbose)
    assert result.stdout.strip() == "hello"
    assert stream.getvalue() == ""


def test_verbose_timeout() -> None:
    shellout = Shellout(Settings(log_verbose=True, command_timeout_s=0.5), live_stream=io.StringIO())
    with pytest.raises(CommandTimeoutError):
        shellout.shellout(_python("import time; time.sleep(30)"), log_verbose=True)


def test_clean_environment_returns_filtered_copy() -> None:
    environ = {"PIP_CACHE_DIR": "/cache", "GEM_HOME": "/gems", "HOME": "/home/me"}
    cleaned = clean_environment(["PIP_*", "GEM_*"], environ)
    assert cleaned == {"HOME": "/home/me"}
    cleaned["EXTRA"] = "1"
    assert environ == {"PIP_CACHE_DIR": "/cache", "GEM_HOME": "/gems", "HOME": "/home/me"}


def test_overlapping_shellouts_keep_caller_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/caller")
    shellout = Shellout()
    seen = {}

    def run(label: str, seconds: float) -> None:
        code = f"import os, time; time.sleep({seconds}); print(os.environ.get('PYTHONPATH', '-'))"
        seen[label] = shellout.shellout(_python(code)).stdout.strip()

    first = threading.Thread(target=run, args=("first", 0.5))
    second = threading.Thread(target=run, args=("second", 1.0))
    first.start()
    time.sleep(0.2)
    second.start()
    time.sleep(0.1)
    during = os.environ.get("PYTHONPATH")
    first.join()
    second.join()

    assert during == "/caller"
    assert os.environ.get("PYTHONPATH") == "/caller"
    assert seen == {"first": "-", "second": "-"}


def test_verbose_stops_streaming_when_grandchild_holds_pipe(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(Shellout, "pump_join_timeout", 0.2)
    stream = io.StringIO()
    shellout = Shellout(Settings(log_verbose=True), live_stream=stream)
    grandchild = "import time; time.sleep(1); print('late', flush=True)"
    code = (
        "import subprocess, sys\n"
        f"subprocess.Popen([sys.executable, '-c', {grandchild!r}])\n"
        "print('early', flush=True)\n"
    )
    result = shellout.shellout(_python(code), log_verbose=True)
    assert result.returncode == 0
    time.sleep(1.5)
    assert "early" in stream.getvalue()
    assert "late" not in stream.getvalue()
