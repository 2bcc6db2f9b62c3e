"""Queue persistence exports."""

from .persistence import JobStatus, QueueBackendError, QueueJobDTO, RedisQueueStore

__all__ = ["JobStatus", "QueueBackendError", "QueueJobDTO", "RedisQueueStore"]
