"""Shared names for headers, delivery outcomes, consumer states and events.

Producers, workers and operator scripts import these so that the wire
metadata and the events seen by observers stay consistent.

Outcomes (one per delivery):
- ``ACKED``: processed successfully and removed from the queue.
- ``NACKED_REQUEUE``: failed below the retry ceiling; requeued with an
  incremented ``x-retry-count`` header.
- ``NACKED_DROPPED``: poison or retries exhausted; rejected without requeue
  (dead-lettered when the queue has a DLX, otherwise discarded).
- ``RELEASED``: buffered but never started when shutdown began; handed back
  to the broker untouched.

Events (passed to ``ConsumerStats`` observers):
- ``received``, ``redelivered``, ``acked``, ``requeued``, ``dead_letter``,
  ``poison``, ``dropped``, ``released``, ``shutdown``.
"""

CONTENT_TYPE_JSON = "application/json"
CONTENT_ENCODING = "utf-8"

# Delivery headers
HEADER_RETRY_COUNT = "x-retry-count"
HEADER_DEAD_LETTER_REASON = "x-dead-letter-reason"
HEADER_REPLAYED = "x-replayed-from-dlq"

DLQ_SUFFIX = ".dlq"

KIND_SMS = "SMS"
KIND_EMAIL = "EMAIL"

# Delivery outcomes
OUTCOME_ACKED = "ACKED"
OUTCOME_NACKED_REQUEUE = "NACKED_REQUEUE"
OUTCOME_NACKED_DROPPED = "NACKED_DROPPED"
OUTCOME_RELEASED = "RELEASED"

# Consumer loop states
STATE_IDLE = "IDLE"
STATE_LISTENING = "LISTENING"
STATE_SHUTTING_DOWN = "SHUTTING_DOWN"
STATE_STOPPED = "STOPPED"

# Observer events
EVENT_RECEIVED = "received"
EVENT_REDELIVERED = "redelivered"
EVENT_ACKED = "acked"
EVENT_REQUEUED = "requeued"
EVENT_DEAD_LETTER = "dead_letter"
EVENT_POISON = "poison"
EVENT_DROPPED = "dropped"
EVENT_RELEASED = "released"
EVENT_SHUTDOWN = "shutdown"


def dead_letter_queue_name(queue_name: str) -> str:
    """Return the dead-letter queue paired with a work queue."""
    return f"{queue_name}{DLQ_SUFFIX}"
