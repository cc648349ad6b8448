from __future__ import annotations

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from core.models import JobRunStatus, JobType
from storage.strikes import StoreError


class JobCancelled(Exception):
    pass


def new_job_run_id() -> str:
    # millisecond prefix keeps ids sortable by start time
    return f'{int(time.time() * 1000):012x}{secrets.token_hex(8)}'


@dataclass
class JobContext:
    job_run_id: str
    job_type: JobType
    dry_run: bool
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    # hashes removed during this pass
    removed: Set[str] = field(default_factory=set)

    def checkpoint(self) -> None:
        if self.cancel_event.is_set():
            raise JobCancelled(f'{self.job_type.value} run {self.job_run_id} cancelled')


class Metrics:
    COUNTERS = (
        'processed',
        'removed',
        'strikes',
        'resets',
        'files_blocked',
        'cleaned',
        'category_changed',
        'errors',
    )

    def __init__(self) -> None:
        self.counts: Dict[str, int] = {k: 0 for k in self.COUNTERS}
        # per-instance aggregation, keyed '<instance>:<counter>'
        self.extra: Dict[str, int] = {}

    def incr(self, key: str, instance: Optional[str] = None, n: int = 1) -> None:
        self.counts[key] = self.counts.get(key, 0) + n
        if instance:
            k = f'{instance}:{key}'
            self.extra[k] = self.extra.get(k, 0) + n

    def get(self, key: str, default: int = 0) -> int:
        if key in self.counts:
            return self.counts[key]
        return self.extra.get(key, default)

    def __getitem__(self, key: str) -> int:
        return self.get(key, 0)


@dataclass
class JobResult:
    job_run_id: str
    job_type: JobType
    status: JobRunStatus
    metrics: Metrics
    error: Optional[str] = None


JobFn = Callable[[JobContext, Metrics], Awaitable[None]]


class JobRunner:
    """Runs jobs with a persisted lifecycle; at most one run per job type in flight."""

    def __init__(self, store: Any, event_bus: Any = None) -> None:
        self.store = store
        self.event_bus = event_bus
        self._in_flight: Dict[JobType, JobContext] = {}
        self._pending: Set[JobType] = set()

    def is_running(self, job_type: JobType) -> bool:
        return job_type in self._pending

    def cancel(self, job_type: JobType) -> bool:
        ctx = self._in_flight.get(job_type)
        if ctx is None:
            return False
        ctx.cancel_event.set()
        return True

    async def run(self, job_type: JobType, fn: JobFn, dry_run: bool = False) -> Optional[JobResult]:
        if job_type in self._pending:
            logging.info(f'Job {job_type.value}: previous run still in progress; skipping trigger')
            return None
        self._pending.add(job_type)
        try:
            return await self._run(job_type, fn, dry_run)
        finally:
            self._pending.discard(job_type)
            self._in_flight.pop(job_type, None)

    async def _run(self, job_type: JobType, fn: JobFn, dry_run: bool) -> Optional[JobResult]:
        run_id = new_job_run_id()
        try:
            self.store.start_job_run(run_id, job_type.value)
        except StoreError as e:
            logging.error(f'Job {job_type.value}: cannot start run, store unavailable: {e}')
            return None
        ctx = JobContext(job_run_id=run_id, job_type=job_type, dry_run=dry_run)
        self._in_flight[job_type] = ctx
        metrics = Metrics()
        status = JobRunStatus.FAILED
        error: Optional[str] = None
        logging.info(f'Job {job_type.value}: run {run_id} started{" (dry run)" if dry_run else ""}')
        try:
            await fn(ctx, metrics)
            status = JobRunStatus.COMPLETED
        except Exception as e:
            error = str(e) or type(e).__name__
            logging.error(f'Job {job_type.value}: run {run_id} failed: {error}')
            if self.event_bus is not None:
                await self.event_bus.publish(
                    'job_failed',
                    f'{job_type.value} run failed: {error}',
                    'error',
                    {'job_type': job_type.value, 'job_run_id': run_id},
                )
        finally:
            try:
                self.store.finish_job_run(run_id, status.value)
            except StoreError as e:
                logging.error(f'Job {job_type.value}: could not record run status: {e}')
        return JobResult(run_id, job_type, status, metrics, error)


def summarize(result: JobResult, interval: int) -> Dict[str, Any]:
    next_run = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(time.time() + interval))
    per_instance: Dict[str, Dict[str, int]] = {}
    for key, val in result.metrics.extra.items():
        instance, _, counter = key.rpartition(':')
        per_instance.setdefault(instance, {})[counter] = val
    return {
        'job': result.job_type.value,
        'job_run_id': result.job_run_id,
        'status': result.status.value,
        **result.metrics.counts,
        'per_instance': per_instance,
        'next_run': next_run,
    }


def log_summary(summary: Dict[str, Any], interval: int, log_fn: Callable[[str], None]) -> None:
    log_fn(f"Run summary ({summary['job']}, {summary['status']}):")
    log_fn(
        f"  processed={summary['processed']} removed={summary['removed']} "
        f"cleaned={summary['cleaned']} category_changed={summary['category_changed']}"
    )
    log_fn(
        f"  strikes={summary['strikes']} resets={summary['resets']} "
        f"files_blocked={summary['files_blocked']} errors={summary['errors']}"
    )
    for name, stats in (summary.get('per_instance') or {}).items():
        log_fn('  ' + name + ': ' + ' '.join(f'{k}={v}' for k, v in sorted(stats.items())))
    log_fn(f"Next run: {summary['next_run']} (in {interval}s)")


async def run_forever(
    runner: JobRunner,
    jobs: List[Tuple[JobType, JobFn, bool]],
    interval: int,
    flush_cb: Callable[[], Awaitable[None]],
    log_fn: Callable[[str], None],
) -> None:
    while True:
        tasks = [runner.run(job_type, fn, dry_run) for job_type, fn, dry_run in jobs]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for (job_type, _, _), res in zip(jobs, results):
            if isinstance(res, Exception):
                log_fn(f'Unhandled error in {job_type.value} job: {res}')
            elif res is not None:
                log_summary(summarize(res, interval), interval, log_fn)
        await flush_cb()
        await asyncio.sleep(interval)
