from __future__ import annotations

import fnmatch
import logging
import os
import subprocess
import sys
import threading
from typing import IO, Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import Settings
from .models import ExecutionResult, Invocation

logger = logging.getLogger(__name__)


class ShelloutError(RuntimeError):
    """Base class for failures of an external command."""

    def __init__(self, invocation: Invocation, message: str) -> None:
        self.invocation = invocation
        super().__init__(message)

    @property
    def command(self) -> List[str]:
        return list(self.invocation.command)


class CommandError(ShelloutError):
    """Raised when a subprocess exits with a non-zero status code."""

    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        self.returncode = result.returncode
        self.stdout = result.stdout
        self.stderr = result.stderr
        super().__init__(
            result.invocation,
            f"Command {result.invocation} failed with exit code {result.returncode}"
            f"\nSTDOUT:{result.stdout}\nSTDERR:{result.stderr}",
        )


class CommandTimeoutError(ShelloutError):
    """Raised when a subprocess outlives its wall-clock budget."""

    def __init__(self, invocation: Invocation, timeout: float, stdout: str = "", stderr: str = "") -> None:
        self.timeout = timeout
        self.returncode = None
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(invocation, f"Command {invocation} timed out after {timeout}s")


class CommandSpawnError(ShelloutError):
    """Raised when a subprocess cannot be started at all."""

    def __init__(self, invocation: Invocation, cause: OSError) -> None:
        self.cause = cause
        super().__init__(invocation, f"Command {invocation} could not be started: {cause}")


def _decode(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode(errors="replace")
    return output


def _matches(name: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in patterns)


def clean_environment(patterns: Iterable[str], environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Copy of ``environ`` without the variables matching ``patterns``.

    ``os.environ`` itself is never modified, so concurrent callers and
    other threads keep seeing their own settings.
    """

    patterns = tuple(patterns)
    environ = os.environ if environ is None else environ
    return {name: value for name, value in environ.items() if not _matches(name, patterns)}


class Shellout:
    """Runs external commands in a clean environment with a hard timeout."""

    pump_join_timeout = 5.0

    def __init__(self, settings: Optional[Settings] = None, *, live_stream: Optional[IO[str]] = None) -> None:
        self.settings = settings or Settings()
        self._live_stream = live_stream

    @property
    def live_stream(self) -> IO[str]:
        return self._live_stream if self._live_stream is not None else sys.stdout

    def shellout(
        self,
        command: Sequence[str],
        *,
        log_verbose: bool = False,
        env: Optional[Mapping[str, str]] = None,
        **options: Any,
    ) -> ExecutionResult:
        """Run ``command`` and return its result; non-zero exits do not raise."""

        invocation = Invocation(
            command=tuple(command),
            env=dict(env) if env else None,
            log_verbose=log_verbose and self.settings.log_verbose,
            options=options,
        )
        process_env = clean_environment(self.settings.isolated_env_vars)
        if invocation.env:
            process_env.update(invocation.env)
        logger.debug("Running %s", invocation)
        if invocation.log_verbose:
            return self._run_streaming(invocation, process_env)
        return self._run_captured(invocation, process_env)

    def shellout_checked(self, command: Sequence[str], **kwargs: Any) -> ExecutionResult:
        """Like :meth:`shellout` but raise :class:`CommandError` on a non-zero exit."""

        result = self.shellout(command, **kwargs)
        if result.failed:
            raise CommandError(result)
        return result

    def _run_captured(self, invocation: Invocation, process_env: Mapping[str, str]) -> ExecutionResult:
        timeout = self.settings.command_timeout_s
        try:
            completed = subprocess.run(
                list(invocation.command),
                env=dict(process_env),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                timeout=timeout,
                check=False,
                **invocation.options,
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeoutError(invocation, timeout, _decode(exc.stdout), _decode(exc.stderr)) from exc
        except OSError as exc:
            raise CommandSpawnError(invocation, exc) from exc
        return ExecutionResult(invocation, completed.returncode, completed.stdout, completed.stderr)

    def _run_streaming(self, invocation: Invocation, process_env: Mapping[str, str]) -> ExecutionResult:
        timeout = self.settings.command_timeout_s
        try:
            process = subprocess.Popen(
                list(invocation.command),
                env=dict(process_env),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                **invocation.options,
            )
        except OSError as exc:
            raise CommandSpawnError(invocation, exc) from exc

        stream = self.live_stream
        stopped = threading.Event()
        pump = threading.Thread(target=self._pump, args=(process.stdout, stream, stopped), daemon=True)
        pump.start()
        try:
            returncode = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as exc:
            process.kill()
            process.wait()
            raise CommandTimeoutError(invocation, timeout) from exc
        finally:
            pump.join(timeout=self.pump_join_timeout)
            if pump.is_alive():
                # A grandchild still holds the pipe; the pump closes it on its next read.
                stopped.set()
        return ExecutionResult(invocation, returncode, "", "")

    @staticmethod
    def _pump(source: IO[str], stream: IO[str], stopped: threading.Event) -> None:
        with source:
            for line in source:
                if stopped.is_set():
                    break
                stream.write(line)
                stream.flush()
