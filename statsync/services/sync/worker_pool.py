"""
Bounded worker pool for multi-unit backfills.

Units (team ids, game ids, ...) go into an ``asyncio.Queue`` drained by a
fixed number of workers, so a season's worth of games never turns into an
unbounded burst against the provider. A failing unit is logged and recorded,
and the remaining units still run. A store failure is the exception: it
stops the pool and is re-raised once in-flight units finish.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List

from statsync.core.exceptions import StoreUnavailableError
from statsync.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class BackfillResult:
    """Per-unit outcome of a continue-on-error backfill."""
    succeeded: List[Hashable] = field(default_factory=list)
    failed: List[Hashable] = field(default_factory=list)
    results: Dict[Hashable, Any] = field(default_factory=dict)
    errors: Dict[Hashable, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "failed_units": list(self.failed),
            "errors": {str(k): v for k, v in self.errors.items()},
            "results": {str(k): v for k, v in self.results.items()},
        }


class WorkerPool:
    """Run an async worker over units with at most ``concurrency`` in flight."""

    def __init__(self, concurrency: int = 3, name: str = "backfill"):
        self.concurrency = max(int(concurrency), 1)
        self.name = name

    async def run(
        self,
        units: Iterable[Hashable],
        worker: Callable[[Hashable], Awaitable[Any]],
    ) -> BackfillResult:
        queue: asyncio.Queue = asyncio.Queue()
        for unit in units:
            queue.put_nowait(unit)

        result = BackfillResult()
        if queue.empty():
            return result
        aborted: List[StoreUnavailableError] = []

        async def _drain() -> None:
            while True:
                try:
                    unit = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if aborted:
                    queue.task_done()
                    continue
                try:
                    value = await worker(unit)
                    result.succeeded.append(unit)
                    result.results[unit] = value
                except StoreUnavailableError as e:
                    # The store is gone for every unit, not just this one
                    logger.error(f"{self.name}: store unavailable at unit {unit}, aborting: {e}")
                    result.failed.append(unit)
                    result.errors[unit] = str(e)
                    aborted.append(e)
                except Exception as e:
                    logger.warning(f"{self.name}: unit {unit} failed, continuing: {e}")
                    result.failed.append(unit)
                    result.errors[unit] = str(e) or type(e).__name__
                finally:
                    queue.task_done()

        workers = min(self.concurrency, queue.qsize())
        await asyncio.gather(*(_drain() for _ in range(workers)))
        if aborted:
            raise aborted[0]

        logger.info(f"{self.name}: {len(result.succeeded)} succeeded, {len(result.failed)} failed")
        return result
