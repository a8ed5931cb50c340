"""Durable job queue and the worker pool that consumes it."""

from idphoto.queue.task_queue import (
    LIVE_STATES,
    BackoffOptions,
    BackoffType,
    EnqueueOptions,
    JobState,
    QueuedJob,
    RedisTaskQueue,
    TaskQueue,
)
from idphoto.queue.worker import QueueWorker

__all__ = [
    "LIVE_STATES",
    "BackoffOptions",
    "BackoffType",
    "EnqueueOptions",
    "JobState",
    "QueuedJob",
    "QueueWorker",
    "RedisTaskQueue",
    "TaskQueue",
]
