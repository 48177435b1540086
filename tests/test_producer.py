from __future__ import annotations

import json

import allure

from task_relay.orchestrator.models import ExternalTaskEvent, TaskStatus
from task_relay.orchestrator.runtime import TaskRelayRuntime
from task_relay.orchestrator.transport.base import (
    HEADER_ORIGINAL_ROUTING_KEY,
    HEADER_RETRY_COUNT,
    HEADER_TASK_ID,
    HEADER_TASK_TYPE,
    HEADER_USER_ID,
    QueueSpec,
)
from task_relay.orchestrator.transport.topology import EVENTS_EXCHANGE, TASKS_QUEUE
from task_relay.storage.common import utc_now

pytestmark = [
    allure.epic("Message Transport"),
    allure.feature("Producer"),
]


def test_send_task_routes_to_primary_queue_with_headers(runtime: TaskRelayRuntime) -> None:
    sent = runtime.producer.send_task(
        task_id="t1",
        user_id="alice",
        task_type="echo",
        body='{"message": "hi"}',
    )

    assert sent is True
    with runtime.broker.open_channel() as channel:
        delivery = channel.get(TASKS_QUEUE)
        assert delivery is not None
        assert delivery.routing_key == "task.echo"
        assert delivery.headers[HEADER_TASK_ID] == "t1"
        assert delivery.headers[HEADER_USER_ID] == "alice"
        assert delivery.headers[HEADER_TASK_TYPE] == "echo"
        assert delivery.headers[HEADER_RETRY_COUNT] == 0
        assert delivery.correlation_id


def test_send_task_reports_unroutable_type(runtime: TaskRelayRuntime) -> None:
    sent = runtime.producer.send_task(
        task_id="t1",
        user_id="alice",
        task_type="not_registered",
        body="{}",
    )

    assert sent is False
    assert runtime.broker.queue_info(TASKS_QUEUE).message_count == 0


def test_send_to_retry_tier_parks_message_in_one_tier(runtime: TaskRelayRuntime) -> None:
    sent = runtime.producer.send_to_retry_tier(
        task_id="t1",
        user_id="alice",
        task_type="echo",
        body="{}",
        retry_count=2,
    )

    assert sent is True
    assert runtime.broker.queue_info("tasks.wait_1s.queue").message_count == 0
    assert runtime.broker.queue_info("tasks.wait_2s.queue").message_count == 1
    with runtime.broker.open_channel() as channel:
        delivery = channel.get("tasks.wait_2s.queue")
        assert delivery is not None
        assert delivery.headers[HEADER_RETRY_COUNT] == 2
        assert delivery.headers[HEADER_ORIGINAL_ROUTING_KEY] == "task.echo"


def test_task_events_are_broadcast_without_requiring_a_listener(
    runtime: TaskRelayRuntime,
) -> None:
    event = ExternalTaskEvent(
        event_id="e1",
        task_id="t1",
        task_type="echo",
        user_id="alice",
        status=TaskStatus.COMPLETED,
        timestamp=utc_now(),
        result={"message": "hi"},
        retry_count=0,
    )
    assert runtime.producer.send_task_event(event) is True

    runtime.broker.declare_queue(QueueSpec("audit.completed"))
    runtime.broker.bind_queue(
        queue_name="audit.completed",
        exchange=EVENTS_EXCHANGE,
        routing_key="task.event.completed",
    )
    assert runtime.producer.send_task_event(event) is True

    with runtime.broker.open_channel() as channel:
        delivery = channel.get("audit.completed")
        assert delivery is not None
        payload = json.loads(delivery.body)
    assert payload["status"] == "completed"
    assert payload["result"] == {"message": "hi"}
    assert "error_info" not in payload
    assert delivery.message_id == "e1"
