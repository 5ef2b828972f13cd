"""
Barriers over groups of tasks.

Both barriers return a new task handle that resolves once every member has
finished. Cancelling the barrier cancels every member.
"""

from __future__ import annotations

import queue
from collections.abc import Sequence
from typing import Any

from usbstation.core.logging import get_logger
from usbstation.core.task import TaskHandle, TaskState, submit

logger = get_logger(__name__)


def _completion_queue(tasks: Sequence[TaskHandle[Any]]) -> queue.Queue[TaskHandle[Any]]:
    finished: queue.Queue[TaskHandle[Any]] = queue.Queue()
    for task in tasks:
        task.add_done_callback(finished.put)
    return finished


def _cancel_all(tasks: Sequence[TaskHandle[Any]]) -> None:
    for task in tasks:
        task.cancel()


def join_all_or_abort(tasks: Sequence[TaskHandle[Any]], name: str = "barrier") -> TaskHandle[Any]:
    """
    Wait for all ``tasks``, aborting on the first failure.

    Members are observed in completion order. As soon as one fails or is
    cancelled, the remaining members are cancelled and the barrier resolves
    the same way. Otherwise it resolves to the value of the last task in
    ``tasks``, or None when ``tasks`` is empty.
    """
    members = list(tasks)
    if not members:
        return TaskHandle.completed(None, name=name)

    finished = _completion_queue(members)

    def run(handle: TaskHandle[Any]) -> Any:
        handle.add_cancel_callback(lambda: _cancel_all(members))
        for _ in members:
            task = finished.get()
            if task.state is not TaskState.COMPLETED:
                logger.debug("Barrier member did not complete, aborting", barrier=name, task=task.name)
                _cancel_all(members)
                task.result()
        return members[-1].result()

    return submit(run, name=name)


def join_all_best_effort(tasks: Sequence[TaskHandle[Any]], name: str = "barrier") -> TaskHandle[Any]:
    """
    Wait for all ``tasks``, tolerating failures.

    Resolves to the value of the last task in ``tasks`` that completed
    successfully, or None if none did.
    """
    members = list(tasks)
    if not members:
        return TaskHandle.completed(None, name=name)

    finished = _completion_queue(members)

    def run(handle: TaskHandle[Any]) -> Any:
        handle.add_cancel_callback(lambda: _cancel_all(members))
        for _ in members:
            finished.get()

        value = None
        for task in members:
            try:
                value = task.result()
            except Exception as e:
                logger.debug("Ignoring task failure", barrier=name, task=task.name, error=str(e))
        return value

    return submit(run, name=name)
