"""
USB Station task engine.

Runs external tools as cancellable tasks. Each child process gets one
worker thread per output stream plus a thread waiting for its exit, and
cancellation escalates from SIGINT to SIGKILL against the child's whole
process group.

Blocking reads on a pipe cannot be interrupted from another thread.
Cancelling a process task therefore stops the child, and the reader
threads are released by the pipes reaching end-of-file.
"""

from __future__ import annotations

import io
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Sequence
from enum import Enum, auto
from typing import IO, Generic, TypeVar

from usbstation.core.logging import get_logger

T = TypeVar("T")
logger = get_logger(__name__)

StreamConsumer = Callable[[IO[bytes]], None]
LineConsumer = Callable[[str], None]

DEFAULT_INTERRUPT_GRACE_SECONDS = 0.2
DEFAULT_TERMINATE_TIMEOUT_SECONDS = 2.0
_POLL_INTERVAL_SECONDS = 0.05
_DRAIN_CHUNK_SIZE = 64 * 1024


class TaskState(Enum):
    """State of a task handle. Every state but RUNNING is final."""

    RUNNING = auto()
    COMPLETED = auto()
    FAILED = auto()
    CANCELLED = auto()


class TaskCancelledException(Exception):
    """Raised when waiting on a task that was cancelled."""


class CommandResult:
    """Result of a command execution."""

    def __init__(
        self,
        returncode: int,
        stdout: str,
        stderr: str,
        command: str | list[str],
        duration_seconds: float = 0.0,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.command = command
        self.duration_seconds = duration_seconds

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def __repr__(self) -> str:
        cmd = self.command if isinstance(self.command, str) else " ".join(self.command)
        return f"CommandResult(rc={self.returncode}, cmd='{cmd[:50]}...')"


class TaskHandle(Generic[T]):
    """
    A cancellable, awaitable reference to work running on another thread.

    The handle resolves exactly once. Any number of threads may wait on it;
    callbacks registered after resolution run immediately.
    """

    def __init__(self, name: str = "task") -> None:
        self.name = name
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._state = TaskState.RUNNING
        self._value: T | None = None
        self._error: BaseException | None = None
        self._cancel_requested = False
        self._cancel_callbacks: list[Callable[[], None]] = []
        self._done_callbacks: list[Callable[[TaskHandle[T]], None]] = []

    @classmethod
    def completed(cls, value: T, name: str = "completed") -> TaskHandle[T]:
        """Create a handle that has already completed with ``value``."""
        handle: TaskHandle[T] = cls(name)
        handle._resolve(TaskState.COMPLETED, value=value)
        return handle

    @classmethod
    def failed(cls, error: BaseException, name: str = "failed") -> TaskHandle[T]:
        """Create a handle that has already failed with ``error``."""
        handle: TaskHandle[T] = cls(name)
        handle._resolve(TaskState.FAILED, error=error)
        return handle

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def cancelled(self) -> bool:
        return self._state is TaskState.CANCELLED

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def check_cancelled(self) -> None:
        """Raise if cancellation has been requested."""
        if self._cancel_requested:
            raise TaskCancelledException(f"Task {self.name} was cancelled")

    def cancel(self) -> bool:
        """
        Cancel the task.

        Returns True for the call that performed the cancellation, False if
        the task had already finished or was already cancelled.
        """
        with self._lock:
            if self._state is not TaskState.RUNNING or self._cancel_requested:
                return False
            self._cancel_requested = True
            callbacks = list(self._cancel_callbacks)
            self._cancel_callbacks.clear()

        self._stop()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancel callback error", task=self.name, error=str(e))

        self._resolve(TaskState.CANCELLED)
        return True

    def _stop(self) -> None:
        """Release whatever the task is running. Called once, on cancel."""

    def add_cancel_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` when the task is cancelled (now, if it already was)."""
        with self._lock:
            if not self._cancel_requested:
                self._cancel_callbacks.append(callback)
                return
        callback()

    def add_done_callback(self, callback: Callable[[TaskHandle[T]], None]) -> None:
        """Run ``callback(handle)`` once the task resolves (now, if it has)."""
        with self._lock:
            if self._state is TaskState.RUNNING:
                self._done_callbacks.append(callback)
                return
        callback(self)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the task resolves. Returns False on timeout."""
        return self._done.wait(timeout)

    def result(self, timeout: float | None = None) -> T:
        """
        Wait for and return the task's value.

        Raises TaskCancelledException if the task was cancelled, the task's
        error if it failed, and TimeoutError if it did not finish in time.
        """
        if not self._done.wait(timeout):
            raise TimeoutError(f"Task {self.name} did not finish within {timeout}s")
        if self._state is TaskState.CANCELLED:
            raise TaskCancelledException(f"Task {self.name} was cancelled")
        if self._state is TaskState.FAILED:
            assert self._error is not None
            raise self._error
        return self._value  # type: ignore[return-value]

    def _resolve(
        self,
        state: TaskState,
        value: T | None = None,
        error: BaseException | None = None,
    ) -> bool:
        with self._lock:
            if self._state is not TaskState.RUNNING:
                return False
            self._state = state
            self._value = value
            self._error = error
            callbacks = list(self._done_callbacks)
            self._done_callbacks.clear()
            if state is not TaskState.CANCELLED:
                self._cancel_callbacks.clear()

        self._done.set()

        for callback in callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.warning("Done callback error", task=self.name, error=str(e))
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, state={self._state.name})"


def submit(fn: Callable[[TaskHandle[T]], T], name: str = "task") -> TaskHandle[T]:
    """
    Run ``fn(handle)`` on a daemon thread and return its handle.

    ``fn`` receives its own handle so it can poll ``check_cancelled()`` and
    register cancel callbacks for nested tasks.
    """
    handle: TaskHandle[T] = TaskHandle(name)

    def run() -> None:
        try:
            value = fn(handle)
        except TaskCancelledException:
            handle._resolve(TaskState.CANCELLED)
        except Exception as e:
            # Errors caused by a requested cancellation still count as cancelled
            if handle.cancel_requested:
                handle._resolve(TaskState.CANCELLED)
            else:
                handle._resolve(TaskState.FAILED, error=e)
        else:
            if handle.cancel_requested:
                handle._resolve(TaskState.CANCELLED)
            else:
                handle._resolve(TaskState.COMPLETED, value=value)

    thread = threading.Thread(target=run, name=f"task-{name}", daemon=True)
    thread.start()
    return handle


class ProcessTask(TaskHandle[int]):
    """
    One child process plus the threads consuming its output.

    Resolves to the exit code once the process has exited and both output
    consumers have returned. If a consumer raises, the process is stopped
    and the task fails with the first error; later errors are attached to
    it as notes.
    """

    def __init__(
        self,
        command: Sequence[str],
        stdout_consumer: StreamConsumer | None = None,
        stderr_consumer: StreamConsumer | None = None,
        interrupt_grace_seconds: float = DEFAULT_INTERRUPT_GRACE_SECONDS,
        terminate_timeout_seconds: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(name=os.path.basename(command[0]) if command else "process")
        self.command = list(command)
        self.process: subprocess.Popen[bytes] | None = None
        self.interrupt_grace_seconds = interrupt_grace_seconds
        self.terminate_timeout_seconds = terminate_timeout_seconds
        self._stdout_consumer = stdout_consumer
        self._stderr_consumer = stderr_consumer
        self._consumer_threads: list[threading.Thread] = []
        self._errors: list[BaseException] = []
        self._terminating = False

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def start(self) -> ProcessTask:
        """Spawn the child process and its consumer threads."""
        logger.debug("Running command", command=self.command)
        try:
            self.process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            logger.warning("Could not start command", command=self.command, error=str(e))
            self._resolve(TaskState.FAILED, error=e)
            return self

        logger.info("Executing command", pid=self.process.pid, command=" ".join(self.command))

        streams = (
            ("stdout", self.process.stdout, self._stdout_consumer),
            ("stderr", self.process.stderr, self._stderr_consumer),
        )
        for label, stream, consumer in streams:
            thread = threading.Thread(
                target=self._consume,
                args=(stream, consumer),
                name=f"{self.name}-{self.process.pid}-{label}",
                daemon=True,
            )
            self._consumer_threads.append(thread)
            thread.start()

        waiter = threading.Thread(
            target=self._await_exit,
            name=f"{self.name}-{self.process.pid}-wait",
            daemon=True,
        )
        waiter.start()
        return self

    def cancel(self) -> bool:
        """Cancel the task; a no-op once the child process has exited."""
        if self.process is not None and self.process.poll() is not None:
            return False
        return super().cancel()

    def _stop(self) -> None:
        self._terminate()

    def _consume(self, stream: IO[bytes] | None, consumer: StreamConsumer | None) -> None:
        if stream is None:
            return
        try:
            with stream:
                if consumer is None:
                    # Drain so the child never blocks on a full pipe
                    while stream.read(_DRAIN_CHUNK_SIZE):
                        pass
                else:
                    consumer(stream)
        except (BrokenPipeError, ConnectionResetError) as e:
            # The reading side went away, treat as cancellation
            if not self.cancel_requested:
                logger.info("Output stream closed early, cancelling", task=self.name, error=str(e))
            self.cancel()
        except Exception as e:
            with self._lock:
                self._errors.append(e)
            logger.warning("Output consumer failed", task=self.name, error=str(e))
            self._terminate()

    def _await_exit(self) -> None:
        assert self.process is not None
        try:
            returncode = self.process.wait()
        except Exception as e:
            with self._lock:
                self._errors.append(e)
            self._terminate()
            returncode = -1

        for thread in self._consumer_threads:
            thread.join()

        with self._lock:
            errors = list(self._errors)

        if self.cancel_requested:
            self._resolve(TaskState.CANCELLED)
        elif errors:
            first = errors[0]
            for extra in errors[1:]:
                first.add_note(f"Also failed: {extra!r}")
            self._resolve(TaskState.FAILED, error=first)
        else:
            self._resolve(TaskState.COMPLETED, value=returncode)

        logger.debug("Command exited", task=self.name, pid=self.process.pid, returncode=returncode)

    def _terminate(self) -> None:
        """Escalate SIGINT, SIGTERM, SIGKILL against the process group."""
        with self._lock:
            if self._terminating:
                return
            self._terminating = True

        proc = self.process
        if proc is None or proc.poll() is not None:
            return

        logger.info("Cancelling command", pid=proc.pid, command=" ".join(self.command))

        self._signal_group(signal.SIGINT)
        if self._wait_exit(self.interrupt_grace_seconds):
            return

        self._signal_group(signal.SIGTERM)
        if self._wait_exit(self.terminate_timeout_seconds):
            return

        logger.warning("Process ignored SIGTERM, sending SIGKILL", pid=proc.pid)
        self._signal_group(signal.SIGKILL)
        if not self._wait_exit(self.terminate_timeout_seconds):
            logger.warning(
                "Failed to terminate process, giving up",
                pid=proc.pid,
                command=" ".join(self.command),
            )

    def _signal_group(self, sig: signal.Signals) -> None:
        assert self.process is not None
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError as e:
            logger.warning("Cannot signal process", pid=self.process.pid, signal=sig.name, error=str(e))

    def _wait_exit(self, timeout: float) -> bool:
        assert self.process is not None
        deadline = time.monotonic() + timeout
        while True:
            if self.process.poll() is not None:
                return True
            if time.monotonic() >= deadline:
                return False
            time.sleep(_POLL_INTERVAL_SECONDS)


def read_lines(consumer: LineConsumer) -> StreamConsumer:
    """
    Adapt a per-line callback into a stream consumer.

    Lines are decoded as UTF-8 with replacement. Carriage returns count as
    line ends, so in-place progress updates arrive one per call.
    """

    def consume(stream: IO[bytes]) -> None:
        reader = io.TextIOWrapper(stream, encoding="utf-8", errors="replace", newline=None)  # type: ignore[arg-type]
        try:
            for line in reader:
                consumer(line.rstrip("\n"))
        finally:
            reader.detach()

    return consume


def read_all(sink: Callable[[str], None]) -> StreamConsumer:
    """Adapt a callback taking the whole decoded output into a stream consumer."""

    def consume(stream: IO[bytes]) -> None:
        sink(stream.read().decode("utf-8", errors="replace"))

    return consume


def spawn(
    command: Sequence[str],
    stdout_consumer: StreamConsumer | None = None,
    stderr_consumer: StreamConsumer | None = None,
    interrupt_grace_seconds: float = DEFAULT_INTERRUPT_GRACE_SECONDS,
    terminate_timeout_seconds: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS,
) -> ProcessTask:
    """Start ``command`` and return its task handle."""
    return ProcessTask(
        command,
        stdout_consumer,
        stderr_consumer,
        interrupt_grace_seconds=interrupt_grace_seconds,
        terminate_timeout_seconds=terminate_timeout_seconds,
    ).start()


def spawn_lines(
    command: Sequence[str],
    on_stdout_line: LineConsumer | None = None,
    on_stderr_line: LineConsumer | None = None,
    interrupt_grace_seconds: float = DEFAULT_INTERRUPT_GRACE_SECONDS,
    terminate_timeout_seconds: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS,
) -> ProcessTask:
    """Start ``command``, feeding each output line to the given callbacks."""
    return spawn(
        command,
        read_lines(on_stdout_line) if on_stdout_line is not None else None,
        read_lines(on_stderr_line) if on_stderr_line is not None else None,
        interrupt_grace_seconds=interrupt_grace_seconds,
        terminate_timeout_seconds=terminate_timeout_seconds,
    )


def run_captured(
    command: Sequence[str],
    timeout: float | None = None,
    interrupt_grace_seconds: float = DEFAULT_INTERRUPT_GRACE_SECONDS,
    terminate_timeout_seconds: float = DEFAULT_TERMINATE_TIMEOUT_SECONDS,
) -> CommandResult:
    """
    Run ``command`` to completion, capturing stdout and stderr.

    Never raises: spawn errors, timeouts and cancellation come back as a
    result with returncode -1 and the error text in stderr.
    """
    start_time = time.time()
    stdout_parts: list[str] = []
    stderr_parts: list[str] = []

    task = spawn(
        command,
        read_all(stdout_parts.append),
        read_all(stderr_parts.append),
        interrupt_grace_seconds=interrupt_grace_seconds,
        terminate_timeout_seconds=terminate_timeout_seconds,
    )

    try:
        returncode = task.result(timeout)
    except TimeoutError:
        task.cancel()
        return CommandResult(
            returncode=-1,
            stdout="".join(stdout_parts),
            stderr=f"Command timed out after {timeout}s",
            command=list(command),
            duration_seconds=time.time() - start_time,
        )
    except Exception as e:
        captured = "".join(stderr_parts)
        return CommandResult(
            returncode=-1,
            stdout="".join(stdout_parts),
            stderr=f"{e}: {captured}" if captured else str(e),
            command=list(command),
            duration_seconds=time.time() - start_time,
        )

    return CommandResult(
        returncode=returncode,
        stdout="".join(stdout_parts),
        stderr="".join(stderr_parts),
        command=list(command),
        duration_seconds=time.time() - start_time,
    )
