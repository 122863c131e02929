"""
In-process registry of background sync jobs.

A job wraps one async runner. While it runs, the runner emits ``progress``
events; the job then emits ``complete`` (with the runner's result) or
``error``, and always a final ``done``. Every event is kept in the job's
history so a subscriber attaching late sees everything from the start.

Finished jobs are dropped ``retention_seconds`` after ``done``.
"""
import asyncio
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from statsync.core.logging import clear_job_id, get_logger, set_job_id

logger = get_logger(__name__)

Emit = Callable[[Any], None]
Runner = Callable[[Emit], Awaitable[Any]]

PROGRESS = "progress"
COMPLETE = "complete"
ERROR = "error"
DONE = "done"


@dataclass
class JobEvent:
    event: str
    data: Any = None


@dataclass
class Job:
    id: str
    name: str
    status: str = "running"
    created_at: datetime = field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    history: List[JobEvent] = field(default_factory=list)
    _queues: List[asyncio.Queue] = field(default_factory=list, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def finished(self) -> bool:
        return self._done.is_set()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "result": self.result,
            "error": self.error,
            "events": len(self.history),
        }


class Subscription:
    """Async iterator over one job's events, ending after ``done``."""

    def __init__(self, job: Job, queue: asyncio.Queue):
        self.job = job
        self.queue = queue
        self._closed = False

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> JobEvent:
        if self._closed:
            raise StopAsyncIteration
        event = await self.queue.get()
        if event.event == DONE:
            self._closed = True
        return event


class JobRegistry:
    """
    Args:
        retention_seconds: How long a finished job stays queryable
    """

    def __init__(self, retention_seconds: float = 60.0):
        self.retention_seconds = retention_seconds
        self._jobs: Dict[str, Job] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    def start(self, name: str, runner: Runner) -> Job:
        job = Job(id=uuid.uuid4().hex, name=name)
        self._jobs[job.id] = job
        self._tasks[job.id] = asyncio.create_task(self._run(job, runner))
        logger.info(f"Job {job.id} started: {name}")
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list(self) -> List[Job]:
        return sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)

    def subscribe(self, job_id: str) -> Subscription:
        """
        Attach to a job's event stream, replaying its history first.

        Raises:
            KeyError: Unknown (or already collected) job id
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        queue: asyncio.Queue = asyncio.Queue()
        for event in job.history:
            queue.put_nowait(event)
        if not job.finished:
            job._queues.append(queue)
        return Subscription(job, queue)

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription.queue in subscription.job._queues:
            subscription.job._queues.remove(subscription.queue)

    async def wait(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        await job._done.wait()
        return job

    def _publish(self, job: Job, event: str, data: Any = None) -> None:
        item = JobEvent(event, data)
        job.history.append(item)
        for queue in list(job._queues):
            queue.put_nowait(item)

    async def _run(self, job: Job, runner: Runner) -> None:
        token = set_job_id(job.id)
        try:
            result = await runner(lambda data: self._publish(job, PROGRESS, data))
            job.result = result
            job.status = "completed"
            self._publish(job, COMPLETE, result)
            logger.info(f"Job {job.id} completed")
        except Exception as e:
            job.error = str(e) or type(e).__name__
            job.status = "failed"
            self._publish(job, ERROR, {"message": job.error, "type": type(e).__name__})
            logger.error(f"Job {job.id} failed: {e}", exc_info=True)
        finally:
            job.finished_at = datetime.utcnow()
            self._publish(job, DONE, {"status": job.status})
            job._queues.clear()
            job._done.set()
            self._tasks.pop(job.id, None)
            clear_job_id(token)
            asyncio.get_running_loop().call_later(self.retention_seconds, self._collect, job.id)

    def _collect(self, job_id: str) -> None:
        if self._jobs.pop(job_id, None) is not None:
            logger.debug(f"Job {job_id} collected")

    async def shutdown(self) -> None:
        """Cancel jobs still running (application shutdown)."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def format_sse(event: JobEvent) -> str:
    """Render one event in text/event-stream framing."""
    return f"event: {event.event}\ndata: {json.dumps(event.data, default=str)}\n\n"
