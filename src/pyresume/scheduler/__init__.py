"""Durable Scheduler interface and implementations.

    - DurableScheduler: Abstract interface
    - InMemoryScheduler: In-process simulation for tests and local runs
    - HttpScheduler: Client for a QStash-style REST API
"""

from pyresume.scheduler.base import DurableScheduler, Message, SchedulerError
from pyresume.scheduler.http import HttpScheduler
from pyresume.scheduler.memory import DeadLetter, DeliveryRecord, InMemoryScheduler

__all__ = [
    "DurableScheduler",
    "Message",
    "SchedulerError",
    "InMemoryScheduler",
    "DeliveryRecord",
    "DeadLetter",
    "HttpScheduler",
]
