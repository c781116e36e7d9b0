"""
Bulk resolution using AnyIO's structured concurrency.
Fans a list of queries out over a bounded pool of network fetches and
returns one result per query in input order.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

import anyio
import structlog
from anyio import CapacityLimiter, create_task_group

from ..config import Config
from ..exceptions import RegistryLoadFailedError
from ..models import ResolutionResult, ResultSource
from .resolver_service import ResolutionContext, Resolver

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, ResolutionResult], None]


@dataclass
class BulkJob:
    """One bulk run: inputs, concurrency bound and an index-addressed result buffer."""

    queries: list[str]
    concurrency_limit: int
    results: list[Optional[ResolutionResult]] = field(default_factory=list)
    completed: int = 0
    _cancel_requested: bool = field(default=False, init=False, repr=False)
    _cancel_event: Optional[anyio.Event] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.concurrency_limit < 1:
            raise ValueError(f"Invalid concurrency limit: {self.concurrency_limit}")
        self.results = [None] * len(self.queries)

    def cancel(self) -> None:
        """Stop starting new fetches. In-flight requests are left to finish."""
        self._cancel_requested = True
        if self._cancel_event is not None:
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested

    @property
    def done(self) -> bool:
        return self.completed == len(self.queries)

    def _bind_event(self) -> anyio.Event:
        # created inside the event loop that runs the job
        if self._cancel_event is None:
            self._cancel_event = anyio.Event()
            if self._cancel_requested:
                self._cancel_event.set()
        return self._cancel_event


class BulkScheduler:
    """Runs bulk jobs against a ResolutionContext."""

    def __init__(self, context: ResolutionContext):
        self.context = context
        self.resolver = Resolver(context)

        # Track lookups
        self.total_lookups = 0
        self.failed_lookups = 0
        self.cache_hits = 0

    def create_job(
        self, queries: Sequence[str], concurrency_limit: Optional[int] = None
    ) -> BulkJob:
        return BulkJob(
            queries=list(queries),
            concurrency_limit=(
                self.context.config.max_concurrent_lookups
                if concurrency_limit is None
                else concurrency_limit
            ),
        )

    async def run(
        self,
        queries: Sequence[str],
        concurrency_limit: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> list[ResolutionResult]:
        """Resolve queries and return their results in input order."""
        job = self.create_job(queries, concurrency_limit)
        return await self.execute(job, progress_callback)

    async def execute(
        self,
        job: BulkJob,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> list[ResolutionResult]:
        """
        Execute job to completion.

        Every query settles to exactly one result; a failing query never
        aborts its siblings. Raises RegistryLoadFailedError, once, if the
        bootstrap registry cannot be loaded.
        """
        limiter = CapacityLimiter(job.concurrency_limit)
        cancel_event = job._bind_event()
        fatal: list[RegistryLoadFailedError] = []

        logger.info(
            "Starting bulk resolution",
            queries=len(job.queries),
            concurrency_limit=job.concurrency_limit,
        )

        async def settle(index: int, raw: str) -> None:
            try:
                result = await self.resolver.resolve(raw, limiter, cancel_event)
            except RegistryLoadFailedError as e:
                if not fatal:
                    fatal.append(e)
                    logger.error("Bootstrap registry unavailable, aborting job", error=e.message)
                    tg.cancel_scope.cancel()
                return

            job.results[index] = result
            job.completed += 1
            self.total_lookups += 1
            if not result.ok:
                self.failed_lookups += 1
            if result.source is ResultSource.CACHE:
                self.cache_hits += 1
            if progress_callback:
                progress_callback(index, result)

        async with create_task_group() as tg:
            for index, raw in enumerate(job.queries):
                tg.start_soon(settle, index, raw)

        if fatal:
            raise fatal[0]

        logger.info(
            "Bulk resolution finished",
            queries=len(job.queries),
            failed=sum(1 for r in job.results if r is not None and not r.ok),
            cancelled=job.cancelled,
        )
        return [result for result in job.results if result is not None]

    def get_statistics(self) -> dict[str, Any]:
        """Get scheduler statistics."""
        return {
            "total_lookups": self.total_lookups,
            "failed_lookups": self.failed_lookups,
            "cache_hits": self.cache_hits,
            "network_fetches": self.resolver.network_fetches,
            "success_rate": (self.total_lookups - self.failed_lookups) / self.total_lookups
            if self.total_lookups > 0
            else 0,
            "cache_stats": self.context.cache.stats(),
        }


async def resolve_bulk(
    queries: Sequence[str],
    config: Optional[Config] = None,
    concurrency_limit: Optional[int] = None,
) -> list[ResolutionResult]:
    """Resolve queries with a fresh context built from config."""
    async with ResolutionContext.open(config or Config.from_env()) as context:
        return await BulkScheduler(context).run(queries, concurrency_limit)
