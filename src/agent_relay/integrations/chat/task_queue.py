"""Per-conversation serialization of executor jobs.

Jobs for one conversation run strictly one after another; different
conversations each get their own worker task and proceed in parallel.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, Optional

from ...core.logging_utils import log_event

TaskJob = Callable[[], Awaitable[None]]

STATUS_STARTED = "started"
STATUS_QUEUED = "queued"


@dataclass(frozen=True)
class SubmitResult:
    status: str
    conversation_id: str
    position: int = 0

    @property
    def queued(self) -> bool:
        return self.status == STATUS_QUEUED


@dataclass(frozen=True)
class _QueuedJob:
    job: TaskJob
    label: Optional[str]


class ConversationTaskQueue:
    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._lock = asyncio.Lock()
        self._queues: Dict[str, Deque[_QueuedJob]] = {}
        self._workers: Dict[str, asyncio.Task[None]] = {}
        self._idle_event = asyncio.Event()
        self._idle_event.set()

    def is_busy(self, conversation_id: str) -> bool:
        return conversation_id in self._workers

    def pending_count(self, conversation_id: str) -> int:
        return len(self._queues.get(conversation_id) or ())

    @property
    def active_conversations(self) -> int:
        return len(self._workers)

    async def submit(
        self,
        conversation_id: str,
        job: TaskJob,
        *,
        label: Optional[str] = None,
    ) -> SubmitResult:
        """Start ``job`` now if the conversation is idle, otherwise queue it."""
        entry = _QueuedJob(job=job, label=label)
        async with self._lock:
            if conversation_id not in self._workers:
                self._idle_event.clear()
                self._workers[conversation_id] = asyncio.create_task(
                    self._drain_conversation(conversation_id, entry)
                )
                return SubmitResult(status=STATUS_STARTED, conversation_id=conversation_id)
            queue = self._queues.setdefault(conversation_id, deque())
            queue.append(entry)
            position = len(queue)
        log_event(
            self._logger,
            logging.INFO,
            "task_queue.queued",
            conversation_id=conversation_id,
            label=label,
            position=position,
        )
        return SubmitResult(
            status=STATUS_QUEUED, conversation_id=conversation_id, position=position
        )

    async def drain_all(self, conversation_id: str) -> int:
        """Drop every job still waiting for ``conversation_id``; returns the count."""
        async with self._lock:
            queue = self._queues.pop(conversation_id, None)
            dropped = len(queue) if queue else 0
        if dropped:
            log_event(
                self._logger,
                logging.INFO,
                "task_queue.drained",
                conversation_id=conversation_id,
                dropped=dropped,
            )
        return dropped

    async def wait_idle(self) -> None:
        """Wait until no queued or running jobs remain."""
        await self._idle_event.wait()

    async def shutdown(self) -> None:
        async with self._lock:
            self._queues.clear()
            workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    async def _drain_conversation(
        self, conversation_id: str, first: _QueuedJob
    ) -> None:
        entry: Optional[_QueuedJob] = first
        try:
            while entry is not None:
                await self._run_job(conversation_id, entry)
                async with self._lock:
                    queue = self._queues.get(conversation_id)
                    if queue:
                        entry = queue.popleft()
                    else:
                        entry = None
                        self._queues.pop(conversation_id, None)
                        self._workers.pop(conversation_id, None)
                        if not self._workers:
                            self._idle_event.set()
        finally:
            if self._workers.get(conversation_id) is asyncio.current_task():
                self._workers.pop(conversation_id, None)
            if not self._workers:
                self._idle_event.set()

    async def _run_job(self, conversation_id: str, entry: _QueuedJob) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "task_queue.job.start",
            conversation_id=conversation_id,
            label=entry.label,
        )
        try:
            await entry.job()
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "task_queue.job.failed",
                conversation_id=conversation_id,
                label=entry.label,
                exc=exc,
            )
        log_event(
            self._logger,
            logging.INFO,
            "task_queue.job.done",
            conversation_id=conversation_id,
            label=entry.label,
        )


__all__ = ["ConversationTaskQueue", "SubmitResult", "TaskJob"]
