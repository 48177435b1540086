"""Built-in task executables."""

from task_relay.orchestrator.executables.echo import EchoBatchTask, EchoTask
from task_relay.orchestrator.executables.passthrough import PassthroughTask
from task_relay.orchestrator.registry import TaskExecutable


def builtin_executables() -> list[TaskExecutable]:
    return [EchoTask(), EchoBatchTask(), PassthroughTask()]


__all__ = ["EchoBatchTask", "EchoTask", "PassthroughTask", "builtin_executables"]
