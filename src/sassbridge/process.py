"""Worker process handles and the shared one-shot process registry.

This module provides:
- ProcessHandle: wrapper around one worker command, usable either for
  one-shot runs (write stdin, read everything after exit) or as a
  long-lived line-oriented process
- ProcessRegistry: process-wide cache holding at most one one-shot handle,
  keyed by its exact command line
"""

import logging
import queue
import subprocess
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import IO

import psutil

from sassbridge.exceptions import ProcessError, ProcessTimeoutError

logger = logging.getLogger(__name__)

# Sentinel pushed by the stdout reader thread when the stream closes
_EOF = object()


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of a one-shot run."""

    returncode: int
    stdout: str
    stderr: str

    @property
    def successful(self) -> bool:
        return self.returncode == 0


class ProcessHandle:
    """A worker command and the OS process currently running it."""

    def __init__(self, command: Sequence[str]) -> None:
        self.command: tuple[str, ...] = tuple(str(arg) for arg in command)
        self.process: subprocess.Popen[str] | None = None
        self._lines: queue.Queue[object] = queue.Queue()
        self._stderr_parts: list[str] = []
        self._stderr_lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._threads: list[threading.Thread] = []

    def __repr__(self) -> str:
        pid = self.process.pid if self.process else None
        return f"ProcessHandle(command={list(self.command)!r}, pid={pid})"

    def _popen(self) -> "subprocess.Popen[str]":
        try:
            return subprocess.Popen(
                list(self.command),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
            )
        except OSError as e:
            raise ProcessError(f"Failed to start {self.command[0]}: {e}") from e

    # One-shot use

    def run(self, input_text: str = "", timeout: float | None = None) -> ProcessResult:
        """Spawn the command, feed input_text on stdin and wait for it to exit.

        Raises:
            ProcessError: If the command cannot be started
            ProcessTimeoutError: If it does not finish within timeout
        """
        with self._run_lock:
            self.process = self._popen()
            logger.debug(f"Spawned {self.command[0]} (pid {self.process.pid})")
            try:
                stdout, stderr = self.process.communicate(input=input_text, timeout=timeout)
            except subprocess.TimeoutExpired as e:
                self.stop()
                raise ProcessTimeoutError(f"Sass process timed out after {timeout}s") from e
            return ProcessResult(returncode=self.process.returncode, stdout=stdout or "", stderr=stderr or "")

    # Long-lived use

    def start(self) -> None:
        """Start the process and the threads draining its output streams."""
        self.process = self._popen()
        self._lines = queue.Queue()
        with self._stderr_lock:
            self._stderr_parts = []
        stdout_thread = threading.Thread(target=self._pump_stdout, args=(self.process.stdout,), daemon=True)
        stderr_thread = threading.Thread(target=self._pump_stderr, args=(self.process.stderr,), daemon=True)
        self._threads = [stdout_thread, stderr_thread]
        for thread in self._threads:
            thread.start()
        logger.info(f"Started persistent worker (pid {self.process.pid})")

    def _pump_stdout(self, stream: IO[str] | None) -> None:
        if stream is None:
            self._lines.put(_EOF)
            return
        try:
            for line in iter(stream.readline, ""):
                self._lines.put(line)
        except (OSError, ValueError):
            # Stream closed underneath us while stopping
            pass
        finally:
            self._lines.put(_EOF)

    def _pump_stderr(self, stream: IO[str] | None) -> None:
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                with self._stderr_lock:
                    self._stderr_parts.append(line)
        except (OSError, ValueError):
            pass

    def send_line(self, line: str) -> None:
        if self.process is None or self.process.stdin is None:
            raise ProcessError("Sass persistent process failed: process not started")
        try:
            self.process.stdin.write(line if line.endswith("\n") else line + "\n")
            self.process.stdin.flush()
        except (BrokenPipeError, OSError, ValueError) as e:
            raise ProcessError(f"Sass persistent process failed: {self.error_output().strip() or e}") from e

    def read_line(self, timeout: float | None = None) -> str:
        """Block until the next output line arrives.

        Returns:
            The line, or "" when the process closed its output

        Raises:
            ProcessTimeoutError: If no line arrives within timeout
        """
        try:
            item = self._lines.get(timeout=timeout)
        except queue.Empty as e:
            raise ProcessTimeoutError(f"Timed out waiting for response from sass persistent process after {timeout}s") from e
        if item is _EOF:
            # Keep the marker available for later reads
            self._lines.put(_EOF)
            return ""
        return str(item)

    def error_output(self) -> str:
        with self._stderr_lock:
            return "".join(self._stderr_parts)

    # Lifecycle

    def is_running(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for exit; returns the exit code, or None if still running after timeout."""
        if self.process is None:
            return None
        try:
            return self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def stop(self, timeout: float = 3.0) -> None:
        """Terminate the process and any children it spawned."""
        process = self.process
        if process is None:
            return
        if process.poll() is None:
            try:
                parent = psutil.Process(process.pid)
                targets = parent.children(recursive=True) + [parent]
            except psutil.NoSuchProcess:
                targets = []
            for target in targets:
                try:
                    target.terminate()
                except psutil.NoSuchProcess:
                    pass
            _, alive = psutil.wait_procs(targets, timeout=timeout)
            for target in alive:
                logger.warning(f"Killing unresponsive worker process {target.pid}")
                try:
                    target.kill()
                except psutil.NoSuchProcess:
                    pass
        process.wait()
        # Readers see EOF once the process is gone; let them drain before closing
        for thread in self._threads:
            thread.join(timeout=1.0)
        self._threads = []
        for stream in (process.stdin, process.stdout, process.stderr):
            if stream is not None:
                try:
                    stream.close()
                except OSError:
                    pass


ProcessFactory = Callable[[Sequence[str]], ProcessHandle]


class ProcessRegistry:
    """Process-wide cache of the most recent one-shot handle.

    A handle is reused only when its command line matches exactly and it
    still reports running; otherwise a new handle replaces the entry. The
    check-and-replace runs under a lock so concurrent callers never both
    spawn and overwrite each other's entry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handle: ProcessHandle | None = None
        self._command: tuple[str, ...] | None = None

    def acquire(self, command: Sequence[str], factory: ProcessFactory) -> ProcessHandle:
        key = tuple(command)
        with self._lock:
            if self._handle is not None and self._command == key:
                if self._handle.is_running():
                    logger.debug("Reusing cached sass process")
                    return self._handle
                self._handle = None
                self._command = None

            handle = factory(list(key))
            self._handle = handle
            self._command = key
            return handle

    @property
    def cached(self) -> ProcessHandle | None:
        return self._handle

    @property
    def cached_command(self) -> tuple[str, ...] | None:
        return self._command

    def clear(self) -> None:
        with self._lock:
            self._handle = None
            self._command = None


shared_registry = ProcessRegistry()
