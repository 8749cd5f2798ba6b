"""Per-job task update channels.

Each subscriber gets its own asyncio.Queue; the executor publishes a
snapshot of a task after every status or progress write. A job_completed
update (or job_aborted, when the job could not be settled) is the last
item of every stream for that job.
"""

import asyncio
import logging
from typing import AsyncIterator, Dict, List, Optional

from sqlmodel import SQLModel

from workerfleet.app.models.job import JobStatus, TaskRead

logger = logging.getLogger(__name__)


class TaskUpdate(SQLModel):
    event: str  # task, job_completed, job_aborted
    job_id: str
    task: Optional[TaskRead] = None
    job_status: Optional[JobStatus] = None
    error: Optional[str] = None


TERMINAL_EVENTS = ("job_completed", "job_aborted")


class TaskEvents:
    def __init__(self):
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))

    def subscribe(self, job_id: str) -> AsyncIterator[TaskUpdate]:
        """Return a stream of updates for *job_id* that ends when the job completes.

        The subscription is registered immediately, so updates published
        before the caller starts iterating are not lost.
        """
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        return self._drain(job_id, queue)

    async def _drain(self, job_id: str, queue: asyncio.Queue) -> AsyncIterator[TaskUpdate]:
        try:
            while True:
                update = await queue.get()
                yield update
                if update.event in TERMINAL_EVENTS:
                    break
        finally:
            subs = self._subscribers.get(job_id, [])
            if queue in subs:
                subs.remove(queue)
            if not subs:
                self._subscribers.pop(job_id, None)

    def publish(self, update: TaskUpdate) -> None:
        for queue in self._subscribers.get(update.job_id, []):
            queue.put_nowait(update)

    def task_changed(self, task) -> None:
        self.publish(TaskUpdate(event="task", job_id=task.job_id, task=task.to_read()))

    def job_completed(self, job_id: str, status: JobStatus) -> None:
        self.publish(TaskUpdate(event="job_completed", job_id=job_id, job_status=status))

    def job_aborted(self, job_id: str, error: str) -> None:
        self.publish(TaskUpdate(event="job_aborted", job_id=job_id, error=error))
