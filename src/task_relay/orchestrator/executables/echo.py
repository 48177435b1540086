"""Echo executables for smoke tests, demos and operator checks.

``echo`` returns its message and can be told to fail a number of attempts
first or to take a rate limit permit. ``echo_batch`` fans out one ``echo``
sub-task per message.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from task_relay.orchestrator.context import TaskContext
from task_relay.orchestrator.errors import TaskFailure
from task_relay.orchestrator.failure_classifier import retryable_failure_classes
from task_relay.orchestrator.models import FailureClass
from task_relay.orchestrator.registry import TaskExecutable

_RETRYABLE = retryable_failure_classes(
    FailureClass.BACKEND_TRANSIENT,
    FailureClass.TIMEOUT,
    FailureClass.UNCLASSIFIED,
)


@dataclass(slots=True)
class EchoParameters:
    message: str
    fail_attempts: int = 0
    fail_permanently: bool = False
    rate_limit_key: str | None = None


@dataclass(slots=True)
class EchoResult:
    message: str
    retry_count: int
    node_id: str


class EchoTask(TaskExecutable):
    task_type = "echo"
    parameter_type = EchoParameters
    result_type = EchoResult

    def __init__(self, *, max_retries: int = 3) -> None:
        self.max_retries = max_retries

    def execute(self, parameters: EchoParameters, context: TaskContext) -> EchoResult:
        if parameters.fail_permanently:
            raise TaskFailure(
                f"echo refused: {parameters.message}",
                kind=FailureClass.INPUT_CONTRACT_ERROR,
            )
        if context.retry_count < parameters.fail_attempts:
            raise ConnectionError(
                f"simulated transient failure "
                f"{context.retry_count + 1}/{parameters.fail_attempts}",
            )
        if parameters.rate_limit_key is not None:
            context.acquire_permit(parameters.rate_limit_key)
        context.log_info("echo %r", parameters.message)
        return EchoResult(
            message=parameters.message,
            retry_count=context.retry_count,
            node_id=context.node_id,
        )

    def is_retryable(self, error: BaseException) -> bool:
        return _RETRYABLE(error)


@dataclass(slots=True)
class EchoBatchParameters:
    messages: list[str] = field(default_factory=list)


@dataclass(slots=True)
class EchoBatchResult:
    sub_task_ids: list[str]


class EchoBatchTask(TaskExecutable):
    task_type = "echo_batch"
    parameter_type = EchoBatchParameters
    result_type = EchoBatchResult
    max_retries = 0

    def execute(self, parameters: EchoBatchParameters, context: TaskContext) -> EchoBatchResult:
        context.expect_sub_tasks(len(parameters.messages))
        sub_task_ids = []
        for index, message in enumerate(parameters.messages, start=1):
            sub_task_ids.append(context.submit_sub_task("echo", {"message": message}))
            context.update_progress({"submitted": index, "total": len(parameters.messages)})
        return EchoBatchResult(sub_task_ids=sub_task_ids)
