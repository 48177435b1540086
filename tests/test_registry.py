from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import allure
import pytest
from pydantic import ValidationError

from task_relay.orchestrator.errors import UnknownTaskTypeError
from task_relay.orchestrator.executables import EchoBatchTask, EchoTask, PassthroughTask
from task_relay.orchestrator.registry import (
    ExecutionStatus,
    ExecutorRegistry,
    TaskExecutable,
    load_executables,
)

pytestmark = [
    allure.epic("Task Runtime"),
    allure.feature("Executor Registry"),
]


@dataclass
class SquareParameters:
    value: int


class SquareTask(TaskExecutable):
    task_type = "square"
    parameter_type = SquareParameters
    result_type = int

    def execute(self, parameters: SquareParameters, context: Any) -> int:
        if parameters.value < 0:
            raise ConnectionError("negative numbers are flaky")
        if parameters.value == 13:
            raise KeyError("unlucky")
        return parameters.value * parameters.value

    def is_retryable(self, error: BaseException) -> bool:
        if isinstance(error, KeyError):
            raise RuntimeError("predicate bug")
        return isinstance(error, ConnectionError)


class NamelessTask(TaskExecutable):
    def execute(self, parameters: Any, context: Any) -> Any:
        return None


def test_register_rejects_duplicates_and_missing_task_type() -> None:
    registry = ExecutorRegistry([SquareTask()])

    with pytest.raises(ValueError, match="already registered"):
        registry.register(SquareTask())
    with pytest.raises(ValueError, match="task_type"):
        registry.register(NamelessTask())
    assert "square" in registry
    assert registry.task_types() == ("square",)


def test_require_raises_for_unknown_type() -> None:
    registry = ExecutorRegistry()

    assert registry.get("square") is None
    with pytest.raises(UnknownTaskTypeError, match="square"):
        registry.require("square")


def test_parameters_are_validated_and_dumped() -> None:
    registry = ExecutorRegistry([SquareTask()])
    executable = registry.require("square")

    parsed = registry.parse_body(executable, '{"value": "4"}')

    assert parsed == SquareParameters(value=4)
    assert registry.dump_parameters(executable, parsed) == {"value": 4}
    with pytest.raises(ValidationError):
        registry.validate_parameters(executable, {"value": "four"})


def test_execute_classifies_outcomes_with_executable_predicate() -> None:
    registry = ExecutorRegistry([SquareTask()])
    executable = registry.require("square")

    success = registry.execute(executable, SquareParameters(3), None)
    transient = registry.execute(executable, SquareParameters(-1), None)
    broken_predicate = registry.execute(executable, SquareParameters(13), None)

    assert success.is_success and success.result == 9
    assert transient.status is ExecutionStatus.RETRYABLE_FAILURE
    assert isinstance(transient.error, ConnectionError)
    assert broken_predicate.status is ExecutionStatus.NON_RETRYABLE_FAILURE


def test_result_that_does_not_match_result_type_is_a_failure() -> None:
    class WrongResultTask(SquareTask):
        task_type = "wrong_result"

        def execute(self, parameters: SquareParameters, context: Any) -> Any:
            return "not a number"

    registry = ExecutorRegistry([WrongResultTask()])

    outcome = registry.execute(registry.require("wrong_result"), SquareParameters(1), None)

    assert outcome.is_success is False
    assert isinstance(outcome.error, ValidationError)


def test_load_executables_accepts_instances_classes_and_factories() -> None:
    loaded = load_executables(
        [
            "task_relay.orchestrator.executables.echo:EchoTask",
            "task_relay.orchestrator.executables:builtin_executables",
        ],
    )

    assert [type(executable) for executable in loaded] == [
        EchoTask,
        EchoTask,
        EchoBatchTask,
        PassthroughTask,
    ]
    with pytest.raises(ValueError, match="module:attribute"):
        load_executables(["task_relay.orchestrator.executables"])
