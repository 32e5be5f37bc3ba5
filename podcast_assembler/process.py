"""Scoped execution of the external audio toolchain (ffmpeg / ffprobe).

Every toolchain invocation in the engine goes through ProcessRunner.run().
A child process is always killed and reaped before run() returns or raises,
whatever the exit path: success, non-zero exit, timeout, cancellation or an
exception raised in the calling thread.
"""

import logging
import shlex
import subprocess
import threading
from dataclasses import dataclass

from pydub.utils import get_encoder_name, get_prober_name

from podcast_assembler.errors import (
    ProcessCancelled,
    ProcessError,
    ProcessExecutionFailure,
    ProcessTimeout,
)
from podcast_assembler.models import ProcessPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessResult:
    args: list[str]
    returncode: int
    stdout: str
    stderr: str


class ProcessRunner:
    """Runs toolchain commands with a timeout and run-scoped cancellation.

    One runner belongs to one assembly run. cancel() kills every child the
    runner currently owns and makes any later run() fail fast, so a cancelled
    run cannot leak work into the next one.
    """

    def __init__(
        self,
        policy: ProcessPolicy | None = None,
        ffmpeg: str | None = None,
        ffprobe: str | None = None,
    ):
        self.policy = policy or ProcessPolicy()
        self.ffmpeg = ffmpeg or get_encoder_name()
        self.ffprobe = ffprobe or get_prober_name()
        self._lock = threading.Lock()
        self._active: set[subprocess.Popen] = set()
        self._cancelled = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self, args: list[str], timeout: float | None = None) -> ProcessResult:
        """Run a command to completion and capture its text output.

        Timeouts are retried only as many times as the policy allows, with
        exponential backoff between attempts.
        """
        if timeout is None:
            timeout = self.policy.timeout_seconds
        attempts = max(0, self.policy.timeout_retries) + 1

        for attempt in range(attempts):
            try:
                return self._run_once(list(args), timeout)
            except ProcessTimeout:
                if attempt == attempts - 1:
                    raise
                delay = self.policy.retry_base_delay * (2 ** attempt)
                logger.warning(
                    "%s timed out (attempt %d/%d), retrying in %.1fs",
                    args[0], attempt + 1, attempts, delay,
                )
                # Event.wait doubles as an interruptible sleep
                if self._cancelled.wait(delay):
                    raise ProcessCancelled(args) from None

        raise AssertionError("unreachable")

    def run_ffmpeg(self, *args: str, timeout: float | None = None) -> ProcessResult:
        return self.run(
            [self.ffmpeg, "-hide_banner", "-nostdin", "-y", *args], timeout=timeout
        )

    def run_ffprobe(self, *args: str, timeout: float | None = None) -> ProcessResult:
        return self.run([self.ffprobe, *args], timeout=timeout)

    def cancel(self) -> None:
        """Kill all in-flight children and refuse further work."""
        with self._lock:
            self._cancelled.set()
            active = list(self._active)
        for proc in active:
            # reaping stays with the thread that owns the child
            if proc.poll() is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass
        if active:
            logger.info("Cancelled %d running toolchain process(es)", len(active))

    def check_available(self) -> bool:
        """Verify ffmpeg and ffprobe can be invoked."""
        try:
            self.run([self.ffmpeg, "-version"], timeout=30)
            self.run([self.ffprobe, "-version"], timeout=30)
        except ProcessError as e:
            logger.debug("Toolchain unavailable: %s", e)
            return False
        return True

    def _run_once(self, args: list[str], timeout: float) -> ProcessResult:
        logger.debug("exec: %s", shlex.join(args))
        with self._lock:
            if self._cancelled.is_set():
                raise ProcessCancelled(args)
            try:
                proc = subprocess.Popen(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                )
            except OSError as e:
                raise ProcessError(f"cannot start {args[0]}: {e}", args) from e
            self._active.add(proc)

        try:
            try:
                stdout, stderr = proc.communicate(timeout=timeout)
            except subprocess.TimeoutExpired:
                raise ProcessTimeout(args, timeout) from None
        finally:
            _kill(proc)
            with self._lock:
                self._active.discard(proc)

        if self._cancelled.is_set():
            raise ProcessCancelled(args)
        if proc.returncode != 0:
            raise ProcessExecutionFailure(args, proc.returncode, stderr)
        return ProcessResult(args, proc.returncode, stdout, stderr)


def _kill(proc: subprocess.Popen) -> None:
    """Kill (if still running), reap, and close pipes. Idempotent."""
    if proc.poll() is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        proc.wait()
    for stream in (proc.stdout, proc.stderr):
        if stream is not None and not stream.closed:
            stream.close()
