from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.actions import ActionsDeps, DryRunInterceptor, remove_from_client_allowed, remove_from_queue, skip_files
from core.config import QueueCleanerSettings
from core.evaluator import evaluate_slow, evaluate_stall
from core.models import FileEntry, QueuePage, QueueRecord, StrikeType, TorrentView
from core.runner import JobCancelled, JobContext, Metrics
from core.striker import StrikeTracker
from core.utils import is_ignored
from integrations.clients import ArrInstance, DownloadClientInstance, call
from storage.strikes import StoreError

MAX_PAGE_SIZE = 100
IMPORT_STUCK_STATES = {'importpending', 'importblocked', 'importfailed'}

Found = Tuple[DownloadClientInstance, TorrentView]


@dataclass
class QueueCleanerDeps:
    settings: QueueCleanerSettings
    arr_instances: List[ArrInstance]
    download_clients: List[DownloadClientInstance]
    tracker: StrikeTracker
    event_bus: Any
    adapter_timeout: float = 30.0
    clock: Callable[[], float] = field(default=time.time)


def _as_record(rec: Any) -> QueueRecord:
    return rec if isinstance(rec, QueueRecord) else QueueRecord.from_dict(rec)


def _as_torrent(t: Any) -> TorrentView:
    return t if isinstance(t, TorrentView) else TorrentView.from_dict(t)


async def fetch_queue(instance: ArrInstance, timeout: float) -> List[QueueRecord]:
    first: QueuePage = await call(instance.client.get_queue_page(1, 1), timeout, f'{instance.name} queue')
    total = int(first.total_records or 0)
    if not total:
        logging.debug(f'Instance {instance.name}: queue empty; nothing to process')
        return []
    page_size = min(total, MAX_PAGE_SIZE) or 1
    pages = (total + page_size - 1) // page_size
    logging.debug(f'Instance {instance.name}: queue size {total}, fetching {pages} page(s)')
    records: List[QueueRecord] = []
    for page in range(pages):
        data = await call(
            instance.client.get_queue_page(page + 1, page_size),
            timeout,
            f'{instance.name} queue page {page + 1}',
        )
        records.extend(_as_record(r) for r in (data.records or []))
    return records


class QueueCleaner:
    def __init__(self, deps: QueueCleanerDeps) -> None:
        self.deps = deps
        self.settings = deps.settings
        self.tracker = deps.tracker

    async def execute(self, ctx: JobContext, metrics: Metrics) -> None:
        actions = ActionsDeps(
            event_bus=self.deps.event_bus,
            interceptor=DryRunInterceptor(ctx.dry_run, self.deps.adapter_timeout, self.deps.event_bus),
            search_after_removal=self.settings.search_after_removal,
        )
        instances = self.deps.arr_instances
        results = await asyncio.gather(
            *[self.process_instance(inst, ctx, metrics, actions) for inst in instances],
            return_exceptions=True,
        )
        for inst, res in zip(instances, results):
            if isinstance(res, (StoreError, JobCancelled, asyncio.CancelledError)):
                raise res
            if isinstance(res, BaseException):
                metrics.incr('errors', inst.name)
                logging.error(f'Instance {inst.name}: pass aborted: {res}')

    async def find_torrents(self, hashes: List[str]) -> Dict[str, Found]:
        clients = self.deps.download_clients
        timeout = self.deps.adapter_timeout
        results = await asyncio.gather(
            *[call(c.client.list_torrents(hashes), timeout, f'{c.name} list') for c in clients],
            return_exceptions=True,
        )
        found: Dict[str, Found] = {}
        for client, res in zip(clients, results):
            if isinstance(res, asyncio.CancelledError):
                raise res
            if isinstance(res, BaseException):
                logging.error(f'Client {client.name}: torrent lookup failed: {res}')
                continue
            for raw in res or []:
                torrent = _as_torrent(raw)
                found.setdefault(torrent.hash, (client, torrent))
        return found

    async def process_instance(
        self, instance: ArrInstance, ctx: JobContext, metrics: Metrics, actions: ActionsDeps
    ) -> None:
        logging.info(f'Instance {instance.name}: starting queue check')
        records = await fetch_queue(instance, self.deps.adapter_timeout)
        groups: Dict[str, List[QueueRecord]] = {}
        for rec in records:
            if not rec.download_id:
                continue
            groups.setdefault(rec.download_id, []).append(rec)
        if not groups:
            return
        torrent_hashes = [h for h, g in groups.items() if g[0].is_torrent]
        found = await self.find_torrents(torrent_hashes) if torrent_hashes else {}

        for download_id, group in groups.items():
            ctx.checkpoint()
            if download_id in ctx.removed:
                continue
            metrics.incr('processed', instance.name)
            try:
                await self.process_download(instance, group, found.get(download_id), ctx, metrics, actions)
            except (StoreError, JobCancelled):
                raise
            except Exception as e:
                metrics.incr('errors', instance.name)
                logging.error(f'Instance {instance.name}: item processing error {group[0].title} ({download_id}): {e}')

    async def process_download(
        self,
        instance: ArrInstance,
        records: List[QueueRecord],
        found: Optional[Found],
        ctx: JobContext,
        metrics: Metrics,
        actions: ActionsDeps,
    ) -> None:
        head = records[0]
        if not head.is_torrent:
            logging.debug(f'Instance {instance.name}: {head.title} is not a torrent; skipping')
            return
        ignored = self.settings.ignored_downloads
        if found is None:
            if head.download_id in {str(p).lower() for p in ignored}:
                return
            logging.info(f'Instance {instance.name}: {head.title} ({head.download_id}) not found in any download client')
            if not self.settings.failed_import.skip_if_not_found_in_client:
                await self.check_failed_import(instance, records, None, ctx, metrics, actions)
            return

        client, torrent = found
        if is_ignored(torrent, ignored):
            logging.info(f'Instance {instance.name}: {torrent.name} is ignored')
            return

        cb = self.settings.content_blocker
        if cb.enabled and cb.content_filter is not None and not (cb.ignore_private and torrent.is_private):
            if await self.check_content(instance, records, client, torrent, ctx, metrics, actions):
                return

        if await self.check_stall(instance, records, torrent, ctx, metrics, actions):
            return
        if await self.check_slow(instance, records, torrent, ctx, metrics, actions):
            return
        await self.check_failed_import(instance, records, torrent, ctx, metrics, actions)

    async def check_content(
        self,
        instance: ArrInstance,
        records: List[QueueRecord],
        client: DownloadClientInstance,
        torrent: TorrentView,
        ctx: JobContext,
        metrics: Metrics,
        actions: ActionsDeps,
    ) -> bool:
        """Returns True when the download was fully blocked and handled."""
        cb = self.settings.content_blocker
        files = torrent.files
        if not files:
            raw = await call(client.client.get_files(torrent.hash), self.deps.adapter_timeout, f'{client.name} files')
            files = [f if isinstance(f, FileEntry) else FileEntry.from_dict(f) for f in (raw or [])]
        decision = cb.content_filter.evaluate(files)
        if decision.all_files_blocked:
            logging.info(f'Instance {instance.name}: all files of {torrent.name} are unwanted')
            if cb.max_strikes > 0:
                condemned = await self.tracker.record_strike_and_check_limit(
                    torrent.hash, torrent.name or records[0].title, StrikeType.DOWNLOAD_BLOCKED,
                    cb.max_strikes, ctx.job_run_id, torrent.downloaded,
                )
                metrics.incr('strikes', instance.name)
                if not condemned:
                    return True
            await self.remove(
                instance, records, torrent, 'all_files_blocked',
                remove_from_client_allowed(torrent, cb.delete_private), ctx, metrics, actions,
            )
            return True
        if decision.to_skip:
            await skip_files(client, torrent, decision.to_skip, actions)
            metrics.incr('files_blocked', instance.name, len(decision.to_skip))
        return False

    async def check_stall(
        self,
        instance: ArrInstance,
        records: List[QueueRecord],
        torrent: TorrentView,
        ctx: JobContext,
        metrics: Metrics,
        actions: ActionsDeps,
    ) -> bool:
        """Returns True when a stall violation was recorded; slow checks are skipped then."""
        rule = self.settings.rules.find_matching_stall_rule(torrent)
        if rule is None:
            return False
        previous = self.tracker.last_seen_bytes(torrent.hash, StrikeType.STALLED)
        ev = evaluate_stall(torrent, rule, previous)
        logging.debug(f'Instance {instance.name}: stall rule {rule.name} -> {ev.verdict.value} ({ev.reason})')
        if ev.reset:
            if await self.tracker.reset_strikes(torrent.hash, StrikeType.STALLED, ctx.job_run_id):
                metrics.incr('resets', instance.name)
        if not ev.is_violation:
            self.tracker.observe(torrent.hash, StrikeType.STALLED, torrent.downloaded)
            return False
        condemned = await self.tracker.record_strike_and_check_limit(
            torrent.hash, torrent.name or records[0].title, StrikeType.STALLED,
            rule.max_strikes, ctx.job_run_id, torrent.downloaded,
        )
        self.tracker.observe(torrent.hash, StrikeType.STALLED, torrent.downloaded)
        metrics.incr('strikes', instance.name)
        if condemned:
            await self.remove(
                instance, records, torrent, StrikeType.STALLED.value,
                remove_from_client_allowed(torrent, rule.delete_private_torrents_from_client),
                ctx, metrics, actions,
            )
        return True

    async def check_slow(
        self,
        instance: ArrInstance,
        records: List[QueueRecord],
        torrent: TorrentView,
        ctx: JobContext,
        metrics: Metrics,
        actions: ActionsDeps,
    ) -> bool:
        rule = self.settings.rules.find_matching_slow_rule(torrent)
        if rule is None:
            return False
        _, below_since = self.tracker.observation(torrent.hash, StrikeType.SLOW_SPEED)
        now = self.deps.clock()
        ev = evaluate_slow(torrent, rule, below_since, now)
        since = (below_since if below_since is not None else now) if ev.below_threshold else None
        logging.debug(f'Instance {instance.name}: slow rule {rule.name} -> {ev.verdict.value} ({ev.reason})')
        if ev.reset:
            if await self.tracker.reset_strikes(torrent.hash, StrikeType.SLOW_SPEED, ctx.job_run_id):
                metrics.incr('resets', instance.name)
        if not ev.is_violation:
            self.tracker.observe(torrent.hash, StrikeType.SLOW_SPEED, torrent.downloaded, since)
            return False
        condemned = await self.tracker.record_strike_and_check_limit(
            torrent.hash, torrent.name or records[0].title, ev.strike_type,
            rule.max_strikes, ctx.job_run_id, torrent.downloaded,
        )
        self.tracker.observe(torrent.hash, StrikeType.SLOW_SPEED, torrent.downloaded, since)
        metrics.incr('strikes', instance.name)
        if condemned:
            await self.remove(
                instance, records, torrent, ev.strike_type.value,
                remove_from_client_allowed(torrent, rule.delete_private_torrents_from_client),
                ctx, metrics, actions,
            )
            return True
        return False

    async def check_failed_import(
        self,
        instance: ArrInstance,
        records: List[QueueRecord],
        torrent: Optional[TorrentView],
        ctx: JobContext,
        metrics: Metrics,
        actions: ActionsDeps,
    ) -> bool:
        fi = self.settings.failed_import
        head = records[0]
        if fi.max_strikes <= 0:
            return False
        if head.tracked_download_status.lower() != 'warning':
            return False
        if head.tracked_download_state.lower() not in IMPORT_STUCK_STATES:
            return False
        if torrent is not None and fi.ignore_private and torrent.is_private:
            return False
        messages = [m.lower() for rec in records for m in rec.status_messages]
        for pattern in fi.ignored_patterns:
            if any(pattern.lower() in m for m in messages):
                logging.debug(f'Instance {instance.name}: {head.title} import warning ignored by {pattern!r}')
                return False
        condemned = await self.tracker.record_strike_and_check_limit(
            head.download_id, head.title, StrikeType.FAILED_IMPORT, fi.max_strikes, ctx.job_run_id,
        )
        metrics.incr('strikes', instance.name)
        if condemned:
            await self.remove(
                instance, records, torrent, StrikeType.FAILED_IMPORT.value,
                remove_from_client_allowed(torrent, fi.delete_private), ctx, metrics, actions,
            )
        return condemned

    async def remove(
        self,
        instance: ArrInstance,
        records: List[QueueRecord],
        torrent: Optional[TorrentView],
        reason: str,
        remove_from_client: bool,
        ctx: JobContext,
        metrics: Metrics,
        actions: ActionsDeps,
    ) -> None:
        download_id = records[0].download_id
        await remove_from_queue(instance, records, torrent, reason, remove_from_client, actions, ctx.job_run_id)
        ctx.removed.add(download_id)
        metrics.incr('removed', instance.name)
        if not ctx.dry_run:
            await self.tracker.mark_removed(download_id)
