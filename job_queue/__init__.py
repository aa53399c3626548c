"""
Job Queue — durable per-class queues and the workers that drain them.

- message_queue: Job envelope, in-memory and Redis Streams backends
- sql_queue: relational backend (SELECT + compare-and-set lease)
- retry: attempt/backoff policy
- consumer: dispatch worker pool and delayed-job promoter
"""
from job_queue.message_queue import (
    InMemoryMessageQueue, Job, MessageQueue, RedisMessageQueue, create_message_queue,
)
from job_queue.retry import RetryDecision, RetryPolicy, is_retryable

__all__ = [
    "Job", "MessageQueue", "InMemoryMessageQueue", "RedisMessageQueue",
    "create_message_queue", "RetryDecision", "RetryPolicy", "is_retryable",
]
