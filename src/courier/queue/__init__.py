"""Delivery task queues, throughput limiting, and the in-process worker pool.

Transports:
    - InMemoryQueue: single process, consumed by WorkerPool
    - ArqQueue: Redis via arq, consumed by ``arq courier.worker.WorkerSettings``
"""

from .arq_queue import ArqQueue
from .base import DeliveryQueue, DeliveryTask
from .limiter import InMemoryThroughputLimiter, RedisThroughputLimiter, ThroughputLimiter
from .memory import InMemoryQueue
from .worker import TaskHandler, WorkerPool

__all__ = [
    "ArqQueue",
    "DeliveryQueue",
    "DeliveryTask",
    "InMemoryQueue",
    "InMemoryThroughputLimiter",
    "RedisThroughputLimiter",
    "TaskHandler",
    "ThroughputLimiter",
    "WorkerPool",
]
