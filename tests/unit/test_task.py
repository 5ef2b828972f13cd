"""
Tests for usbstation.core.task module.

Process tests run small Python child processes through the interpreter
running the tests.
"""

import sys
import threading
import time

import pytest

from usbstation.core.task import (
    ProcessTask,
    TaskCancelledException,
    TaskHandle,
    TaskState,
    read_lines,
    run_captured,
    spawn,
    spawn_lines,
    submit,
)


def python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


IGNORE_INT_AND_TERM = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGINT, signal.SIG_IGN)\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "print('ready', flush=True)\n"
    "time.sleep(30)\n"
)


class TestTaskHandle:
    """Tests for TaskHandle."""

    def test_completed(self) -> None:
        handle = TaskHandle.completed(42)
        assert handle.done
        assert handle.state is TaskState.COMPLETED
        assert handle.result() == 42

    def test_failed(self) -> None:
        handle: TaskHandle[int] = TaskHandle.failed(ValueError("nope"))
        assert handle.state is TaskState.FAILED
        with pytest.raises(ValueError, match="nope"):
            handle.result()

    def test_cancel_resolves_once(self) -> None:
        handle: TaskHandle[int] = TaskHandle("work")
        assert handle.cancel() is True
        assert handle.cancel() is False
        assert handle.cancelled
        with pytest.raises(TaskCancelledException):
            handle.result()

    def test_cancel_after_completion_is_noop(self) -> None:
        handle = TaskHandle.completed("done")
        assert handle.cancel() is False
        assert handle.result() == "done"

    def test_first_resolution_wins(self) -> None:
        handle: TaskHandle[int] = TaskHandle("work")
        assert handle._resolve(TaskState.COMPLETED, value=1) is True
        assert handle._resolve(TaskState.FAILED, error=RuntimeError()) is False
        assert handle.result() == 1

    def test_cancel_callbacks(self) -> None:
        handle: TaskHandle[int] = TaskHandle("work")
        calls: list[str] = []
        handle.add_cancel_callback(lambda: calls.append("first"))

        handle.cancel()
        handle.add_cancel_callback(lambda: calls.append("late"))

        assert calls == ["first", "late"]

    def test_done_callbacks(self) -> None:
        handle: TaskHandle[int] = TaskHandle("work")
        seen: list[TaskState] = []
        handle.add_done_callback(lambda h: seen.append(h.state))

        handle._resolve(TaskState.COMPLETED, value=3)
        handle.add_done_callback(lambda h: seen.append(h.state))

        assert seen == [TaskState.COMPLETED, TaskState.COMPLETED]

    def test_result_timeout(self) -> None:
        handle: TaskHandle[int] = TaskHandle("slow")
        with pytest.raises(TimeoutError):
            handle.result(timeout=0.01)

    def test_wait(self) -> None:
        handle: TaskHandle[int] = TaskHandle("slow")
        assert handle.wait(0.01) is False
        handle.cancel()
        assert handle.wait(0.01) is True


class TestSubmit:
    """Tests for running functions as tasks."""

    def test_returns_value(self) -> None:
        handle = submit(lambda h: "value", name="value")
        assert handle.result(timeout=2) == "value"
        assert handle.state is TaskState.COMPLETED

    def test_exception_fails_task(self) -> None:
        def boom(handle: TaskHandle[None]) -> None:
            raise RuntimeError("kaput")

        handle = submit(boom)
        with pytest.raises(RuntimeError, match="kaput"):
            handle.result(timeout=2)
        assert handle.state is TaskState.FAILED

    def test_cooperative_cancellation(self) -> None:
        started = threading.Event()

        def loop(handle: TaskHandle[None]) -> None:
            started.set()
            while True:
                handle.check_cancelled()
                time.sleep(0.01)

        handle = submit(loop)
        started.wait(2)
        assert handle.cancel() is True
        assert handle.wait(2)
        assert handle.state is TaskState.CANCELLED

    def test_cancel_callback_reaches_nested_task(self) -> None:
        nested: TaskHandle[int] = TaskHandle("nested")
        registered = threading.Event()

        def outer(handle: TaskHandle[int]) -> int:
            handle.add_cancel_callback(nested.cancel)
            registered.set()
            return nested.result()

        handle = submit(outer)
        registered.wait(2)
        handle.cancel()

        assert handle.wait(2)
        assert nested.cancelled
        assert handle.cancelled


class TestProcessTask:
    """Tests for child process tasks."""

    def test_lines_and_exit_code(self) -> None:
        lines: list[str] = []
        task = spawn_lines(python("print('a'); print('b')"), lines.append)

        assert task.result(timeout=10) == 0
        assert lines == ["a", "b"]

    def test_non_zero_exit_code(self) -> None:
        task = spawn(python("import sys; sys.exit(3)"))
        assert task.result(timeout=10) == 3
        assert task.state is TaskState.COMPLETED

    def test_stderr_lines(self) -> None:
        errors: list[str] = []
        task = spawn_lines(
            python("import sys; sys.stderr.write('oops\\n')"),
            on_stderr_line=errors.append,
        )
        assert task.result(timeout=10) == 0
        assert errors == ["oops"]

    def test_carriage_returns_split_lines(self) -> None:
        lines: list[str] = []
        task = spawn_lines(
            python("import sys; sys.stdout.write('10%\\r20%\\r30%\\n')"),
            lines.append,
        )
        task.result(timeout=10)
        assert lines == ["10%", "20%", "30%"]

    def test_unconsumed_output_is_drained(self) -> None:
        # Enough output to fill a pipe buffer several times over
        task = spawn(python("import sys; sys.stdout.write('x' * 1_000_000)"))
        assert task.result(timeout=10) == 0

    def test_consumer_error_fails_task(self) -> None:
        def consumer(line: str) -> None:
            raise ValueError(f"bad line {line}")

        task = spawn_lines(python("print('one', flush=True); import time; time.sleep(30)"), consumer)

        with pytest.raises(ValueError, match="bad line one"):
            task.result(timeout=10)
        assert task.state is TaskState.FAILED

    def test_broken_pipe_cancels_task(self) -> None:
        def consumer(line: str) -> None:
            raise BrokenPipeError("reader went away")

        task = spawn_lines(
            python("print('one', flush=True); import time; time.sleep(30)"),
            consumer,
            interrupt_grace_seconds=0.1,
            terminate_timeout_seconds=1,
        )

        assert task.wait(10)
        assert task.state is TaskState.CANCELLED
        assert task.process is not None
        assert task.process.poll() is not None
        with pytest.raises(TaskCancelledException):
            task.result()

    def test_other_os_error_fails_task(self) -> None:
        def consumer(line: str) -> None:
            raise FileNotFoundError("/media/pi/GONE/log.txt")

        task = spawn_lines(python("print('one', flush=True); import time; time.sleep(30)"), consumer)

        with pytest.raises(FileNotFoundError, match="GONE"):
            task.result(timeout=10)
        assert task.state is TaskState.FAILED
        assert task.process is not None
        assert task.process.poll() is not None

    def test_spawn_failure(self) -> None:
        task = spawn(["/nonexistent/tool"])
        assert task.state is TaskState.FAILED
        with pytest.raises(OSError):
            task.result()

    def test_cancel_interrupts_process(self) -> None:
        ready = threading.Event()
        task = spawn_lines(
            python("import time; print('ready', flush=True); time.sleep(30)"),
            lambda line: ready.set(),
        )
        assert ready.wait(10)

        assert task.cancel() is True
        assert task.wait(5)
        assert task.state is TaskState.CANCELLED
        assert task.process is not None
        assert task.process.poll() is not None

    @pytest.mark.slow
    def test_cancel_escalates_to_sigkill(self) -> None:
        ready = threading.Event()
        task = ProcessTask(
            python(IGNORE_INT_AND_TERM),
            read_lines(lambda line: ready.set()),
            interrupt_grace_seconds=0.1,
            terminate_timeout_seconds=0.3,
        ).start()
        assert ready.wait(10)

        start = time.monotonic()
        assert task.cancel() is True
        assert task.wait(5)

        assert task.cancelled
        assert task.process is not None
        assert task.process.returncode == -9
        assert time.monotonic() - start < 5

    def test_cancel_after_exit_returns_false(self) -> None:
        task = spawn(python("pass"))
        assert task.result(timeout=10) == 0
        assert task.cancel() is False
        assert task.state is TaskState.COMPLETED


class TestRunCaptured:
    """Tests for run_captured."""

    def test_captures_output(self) -> None:
        result = run_captured(
            python("import sys; print('out'); sys.stderr.write('err'); sys.exit(2)")
        )
        assert result.returncode == 2
        assert result.stdout == "out\n"
        assert result.stderr == "err"
        assert not result.success

    def test_missing_command(self) -> None:
        result = run_captured(["/nonexistent/tool", "--flag"])
        assert result.returncode == -1
        assert result.stderr
        assert result.command == ["/nonexistent/tool", "--flag"]

    def test_timeout(self) -> None:
        result = run_captured(python("import time; time.sleep(30)"), timeout=0.2)
        assert result.returncode == -1
        assert "timed out" in result.stderr
