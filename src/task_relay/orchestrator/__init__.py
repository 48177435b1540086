"""Background task orchestration over a durable SQLite-backed broker.

Why not Celery / Dramatiq / RabbitMQ?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The delivery model here is the AMQP one (exchanges, TTL delay queues,
dead-letter exchanges, per-channel leases), but the hard guarantees come
from the task record, not from the broker:

- ``try_set_running`` is a versioned compare-and-swap, so a redelivered
  message never runs the body twice.
- Retry, dead-letter and aggregation decisions are committed to the task
  record before the message is acked or rejected.
- Parent tasks finish from a recount of their children's records, so a
  duplicated or replayed child event cannot count twice.

Keeping the queue in the same SQLite file as the records means a
single-machine deployment needs no extra service, while ``transport.base``
keeps the broker contract narrow enough to swap in a networked broker.
"""
