"""``passthrough`` returns its parameters unchanged.

Useful to check that a payload survives submission, the broker and result
storage without any task-specific validation in the way.
"""

from __future__ import annotations

from typing import Any

from task_relay.orchestrator.context import TaskContext
from task_relay.orchestrator.registry import TaskExecutable


class PassthroughTask(TaskExecutable):
    task_type = "passthrough"
    parameter_type = dict[str, Any]
    result_type = dict[str, Any]
    max_retries = 0

    def execute(self, parameters: dict[str, Any], context: TaskContext) -> dict[str, Any]:
        context.log_info("passing through %d key(s)", len(parameters))
        return parameters
