from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable

from fastapi.concurrency import run_in_threadpool

from applications.models import ProfileChangeEvent

LOGGER = logging.getLogger("application_service.worker")


class ProfileChangeWorker:
    """Consumes profile-change events off an in-process queue, one at a time."""

    def __init__(self, handler: Callable[[ProfileChangeEvent], bool]) -> None:
        self.handler = handler
        self.queue: asyncio.Queue[ProfileChangeEvent] = asyncio.Queue()
        self.processed = 0

    async def enqueue(self, event: ProfileChangeEvent) -> int:
        await self.queue.put(event)
        return self.queue.qsize()

    async def drain(self) -> None:
        await self.queue.join()

    async def run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                recomputed = await run_in_threadpool(self.handler, event)
                LOGGER.info(
                    json.dumps(
                        {
                            "event": "profile_event_processed",
                            "event_type": event.event_type,
                            "user_id": event.user_id,
                            "recomputed": recomputed,
                        }
                    )
                )
            except Exception:
                LOGGER.exception(
                    json.dumps(
                        {
                            "event": "profile_event_failed",
                            "event_type": event.event_type,
                            "user_id": event.user_id,
                        }
                    )
                )
            finally:
                self.processed += 1
                self.queue.task_done()
