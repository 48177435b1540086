"""Task executable contract and the registry that dispatches on task type."""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import TypeAdapter

from task_relay.orchestrator.errors import UnknownTaskTypeError

if TYPE_CHECKING:
    from task_relay.orchestrator.context import TaskContext

logger = logging.getLogger(__name__)


class TaskExecutable(ABC):
    """Body of one task type.

    ``parameter_type`` and ``result_type`` are any type pydantic can validate
    (dataclasses, models, builtin containers). Parameters are validated before
    ``execute`` runs and results are dumped to JSON-compatible values.
    """

    task_type: ClassVar[str]
    parameter_type: ClassVar[Any] = Any
    result_type: ClassVar[Any] = Any
    max_retries: int = 3

    @abstractmethod
    def execute(self, parameters: Any, context: TaskContext) -> Any:
        """Run the task body and return its result."""

    def is_retryable(self, error: BaseException) -> bool:
        return True


class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    NON_RETRYABLE_FAILURE = "non_retryable_failure"


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one execution attempt."""

    status: ExecutionStatus
    result: Any = None
    error: BaseException | None = None

    @property
    def is_success(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS

    @property
    def is_retryable(self) -> bool:
        return self.status is ExecutionStatus.RETRYABLE_FAILURE


class ExecutorRegistry:
    """Task type to executable mapping, built once and passed explicitly."""

    def __init__(self, executables: Iterable[TaskExecutable] = ()) -> None:
        self._executables: dict[str, TaskExecutable] = {}
        self._adapters: dict[int, TypeAdapter[Any]] = {}
        for executable in executables:
            self.register(executable)

    def register(self, executable: TaskExecutable) -> None:
        task_type = getattr(executable, "task_type", None)
        if not task_type:
            raise ValueError(f"{type(executable).__name__} does not declare a task_type.")
        if task_type in self._executables:
            raise ValueError(f"Task type already registered: {task_type!r}")
        if executable.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0 for {task_type!r}")
        self._executables[task_type] = executable
        logger.debug("Registered executable %s for %r", type(executable).__name__, task_type)

    def get(self, task_type: str) -> TaskExecutable | None:
        return self._executables.get(task_type)

    def require(self, task_type: str) -> TaskExecutable:
        executable = self.get(task_type)
        if executable is None:
            raise UnknownTaskTypeError(task_type)
        return executable

    def task_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._executables))

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._executables

    def validate_parameters(self, executable: TaskExecutable, parameters: Any) -> Any:
        """Validate a Python value against the parameter type; raises ``ValidationError``."""

        return self._adapter(executable.parameter_type).validate_python(parameters)

    def parse_body(self, executable: TaskExecutable, body: str) -> Any:
        return self._adapter(executable.parameter_type).validate_json(body)

    def dump_parameters(self, executable: TaskExecutable, parameters: Any) -> Any:
        return self._adapter(executable.parameter_type).dump_python(parameters, mode="json")

    def dump_result(self, executable: TaskExecutable, result: Any) -> Any:
        adapter = self._adapter(executable.result_type)
        return adapter.dump_python(adapter.validate_python(result), mode="json")

    def execute(
        self,
        executable: TaskExecutable,
        parameters: Any,
        context: TaskContext,
    ) -> ExecutionResult:
        """Run ``executable`` and classify any failure with its own predicate."""

        try:
            raw_result = executable.execute(parameters, context)
            result = self.dump_result(executable, raw_result)
        except Exception as error:  # noqa: BLE001
            return ExecutionResult(status=_classify(executable, error), error=error)
        return ExecutionResult(status=ExecutionStatus.SUCCESS, result=result)

    def _adapter(self, type_: Any) -> TypeAdapter[Any]:
        key = id(type_)
        adapter = self._adapters.get(key)
        if adapter is None:
            adapter = TypeAdapter(type_)
            self._adapters[key] = adapter
        return adapter


def _classify(executable: TaskExecutable, error: BaseException) -> ExecutionStatus:
    try:
        retryable = executable.is_retryable(error)
    except Exception:  # noqa: BLE001
        logger.exception(
            "is_retryable raised for %r; treating failure as final",
            executable.task_type,
        )
        return ExecutionStatus.NON_RETRYABLE_FAILURE
    if retryable:
        return ExecutionStatus.RETRYABLE_FAILURE
    return ExecutionStatus.NON_RETRYABLE_FAILURE


def load_executables(import_paths: Iterable[str]) -> list[TaskExecutable]:
    """Import executables from ``package.module:attribute`` paths.

    The attribute may be an executable instance, an executable class, or a
    zero-argument factory returning one executable or an iterable of them.
    """

    loaded: list[TaskExecutable] = []
    for import_path in import_paths:
        module_name, _, attribute = import_path.partition(":")
        if not module_name or not attribute:
            raise ValueError(
                f"Executable path must look like 'module:attribute', got {import_path!r}",
            )
        target = getattr(importlib.import_module(module_name), attribute)
        if isinstance(target, TaskExecutable):
            loaded.append(target)
            continue
        produced = target()
        if isinstance(produced, TaskExecutable):
            loaded.append(produced)
        else:
            loaded.extend(produced)
    return loaded
