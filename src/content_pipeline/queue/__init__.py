"""Durable content job queue with optional Redis dispatch acceleration."""

from content_pipeline.queue.content_queue import ContentQueue
from content_pipeline.queue.models import JobStatus, QueueJobCreate, QueueJobView
from content_pipeline.queue.repository import JobStore, QueueRepository

__all__ = [
    "ContentQueue",
    "JobStatus",
    "JobStore",
    "QueueJobCreate",
    "QueueJobView",
    "QueueRepository",
]
