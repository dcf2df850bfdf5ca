"""Delivery and reliability engine for marketing notifications.

Modules include configuration, the envelope model and codec, RabbitMQ
connection handling, topology declaration, the publisher, the consumer
loop with its retry policy, and statistics/metrics/tracing hooks.
"""
