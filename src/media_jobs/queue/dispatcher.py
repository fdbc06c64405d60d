"""Enqueue job items onto the queue their name maps to."""

import asyncio
from typing import List, Sequence

from loguru import logger

from .backends import QueueBackend
from .models import JobItem
from .registry import queue_for


class JobDispatcher:
    """Async front door to the queue engine.

    No deduplication happens here; the engine decides what a duplicate is.
    """

    def __init__(self, backend: QueueBackend):
        self.backend = backend

    async def queue(self, item: JobItem) -> int:
        queue_name = queue_for(item.name)
        job_id = await asyncio.to_thread(self.backend.enqueue, queue_name, item)
        logger.debug(f"Queued {item.name.value} on {queue_name.value} (id={job_id})")
        return job_id

    async def queue_all(self, items: Sequence[JobItem]) -> List[int]:
        """Enqueue a batch in submission order. An empty batch is a no-op."""
        if not items:
            return []

        batch = [(queue_for(item.name), item) for item in items]
        job_ids = await asyncio.to_thread(self.backend.enqueue_all, batch)
        logger.debug(f"Queued batch of {len(job_ids)} jobs")
        return job_ids
