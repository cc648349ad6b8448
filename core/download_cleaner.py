from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Set

from core.actions import DryRunInterceptor
from core.config import DownloadCleanerSettings
from core.models import FileEntry, TorrentView
from core.queue_cleaner import fetch_queue
from core.rules import SeedingRule
from core.runner import JobCancelled, JobContext, Metrics
from core.utils import is_ignored
from integrations.clients import AdapterError, ArrInstance, DownloadClientInstance, call

HardlinkCheck = Callable[[TorrentView, List[FileEntry]], bool]


def has_hardlinks(torrent: TorrentView, files: List[FileEntry]) -> bool:
    """True when any wanted file of the torrent has another link on disk.

    Raises OSError when a file cannot be stat'ed.
    """
    for entry in files:
        if entry.is_skipped:
            continue
        path = os.path.join(torrent.save_path, entry.path)
        if os.stat(path).st_nlink > 1:
            return True
    return False


@dataclass
class DownloadCleanerDeps:
    settings: DownloadCleanerSettings
    download_clients: List[DownloadClientInstance]
    arr_instances: List[ArrInstance]
    event_bus: Any
    adapter_timeout: float = 30.0
    hardlink_check: HardlinkCheck = field(default=has_hardlinks)


class DownloadCleaner:
    def __init__(self, deps: DownloadCleanerDeps) -> None:
        self.deps = deps
        self.settings = deps.settings

    async def execute(self, ctx: JobContext, metrics: Metrics) -> None:
        interceptor = DryRunInterceptor(ctx.dry_run, self.deps.adapter_timeout, self.deps.event_bus)
        queued = await self.queued_hashes()
        clients = self.deps.download_clients
        results = await asyncio.gather(
            *[self.process_client(c, queued, ctx, metrics, interceptor) for c in clients],
            return_exceptions=True,
        )
        for client, res in zip(clients, results):
            if isinstance(res, (JobCancelled, asyncio.CancelledError)):
                raise res
            if isinstance(res, BaseException):
                metrics.incr('errors', client.name)
                logging.error(f'Client {client.name}: download cleanup aborted: {res}')

    async def queued_hashes(self) -> Set[str]:
        """Download ids still in any arr queue; those are left to the queue cleaner.

        An unreachable queue aborts the pass: nothing may be cleaned while it is
        unknown whether an arr instance still holds the download.
        """
        out: Set[str] = set()
        timeout = self.deps.adapter_timeout
        for inst in self.deps.arr_instances:
            try:
                records = await fetch_queue(inst, timeout)
            except AdapterError as e:
                logging.error(f'Instance {inst.name}: queue unavailable; skipping download cleanup: {e}')
                raise
            out.update(rec.download_id for rec in records if rec.download_id)
        return out

    async def process_client(
        self,
        client: DownloadClientInstance,
        queued: Set[str],
        ctx: JobContext,
        metrics: Metrics,
        interceptor: DryRunInterceptor,
    ) -> None:
        raw = await call(client.client.list_torrents(None), self.deps.adapter_timeout, f'{client.name} list')
        torrents = [t if isinstance(t, TorrentView) else TorrentView.from_dict(t) for t in (raw or [])]
        ignored = self.settings.ignored_downloads
        for torrent in torrents:
            ctx.checkpoint()
            if not torrent.is_seeding or torrent.hash in queued:
                continue
            if is_ignored(torrent, ignored):
                logging.debug(f'Client {client.name}: {torrent.name} is ignored')
                continue
            metrics.incr('processed', client.name)
            try:
                await self.check_unlinked(client, torrent, ctx, metrics, interceptor)
                await self.check_seeding(client, torrent, ctx, metrics, interceptor)
            except JobCancelled:
                raise
            except Exception as e:
                metrics.incr('errors', client.name)
                logging.error(f'Client {client.name}: item processing error {torrent.name} ({torrent.hash}): {e}')

    def matching_seeding_rule(self, torrent: TorrentView) -> Optional[SeedingRule]:
        for rule in self.settings.seeding_rules:
            if rule.matches_category(torrent.category) and rule.privacy_type.includes(torrent.is_private):
                return rule
        return None

    async def check_seeding(
        self,
        client: DownloadClientInstance,
        torrent: TorrentView,
        ctx: JobContext,
        metrics: Metrics,
        interceptor: DryRunInterceptor,
    ) -> bool:
        if torrent.is_private and not self.settings.delete_private:
            return False
        rule = self.matching_seeding_rule(torrent)
        if rule is None or not rule.is_violated(torrent):
            return False
        await interceptor.intercept(
            f'{client.name}: delete {torrent.name} delete_files={rule.delete_source_files}',
            client.client.delete_torrent,
            torrent.hash,
            rule.delete_source_files,
        )
        metrics.incr('cleaned', client.name)
        logging.info(
            f'Client {client.name}: cleaned {torrent.name} ratio={torrent.ratio:.2f} '
            f'seeded={torrent.seeding_hours:.1f}h rule={rule.name}'
        )
        await self.deps.event_bus.publish(
            'download_cleaned',
            f'Cleaned {torrent.name} (category {torrent.category})',
            'important',
            {
                'client': client.name,
                'hash': torrent.hash,
                'title': torrent.name,
                'category': torrent.category,
                'ratio': torrent.ratio,
                'seeding_hours': round(torrent.seeding_hours, 2),
                'delete_source_files': rule.delete_source_files,
                'job_run_id': ctx.job_run_id,
            },
            dry_run=ctx.dry_run,
        )
        return True

    async def check_unlinked(
        self,
        client: DownloadClientInstance,
        torrent: TorrentView,
        ctx: JobContext,
        metrics: Metrics,
        interceptor: DryRunInterceptor,
    ) -> bool:
        unlinked = self.settings.unlinked
        if not unlinked.enabled:
            return False
        categories = {c.lower() for c in unlinked.categories}
        if not torrent.category or torrent.category.lower() not in categories:
            return False
        target = unlinked.target_category
        if unlinked.use_tag and target.lower() in {t.lower() for t in torrent.tags}:
            return False

        files = torrent.files
        if not files:
            raw = await call(client.client.get_files(torrent.hash), self.deps.adapter_timeout, f'{client.name} files')
            files = [f if isinstance(f, FileEntry) else FileEntry.from_dict(f) for f in (raw or [])]
        if not files:
            return False
        try:
            linked = self.deps.hardlink_check(torrent, files)
        except OSError as e:
            logging.warning(f'Client {client.name}: hardlink check failed for {torrent.name}: {e}')
            return False
        if linked:
            return False

        if unlinked.use_tag:
            await interceptor.intercept(
                f'{client.name}: tag {torrent.name} with {target}', client.client.add_tag, torrent.hash, target
            )
        else:
            await interceptor.intercept(
                f'{client.name}: move {torrent.name} to category {target}',
                client.client.change_category,
                torrent.hash,
                target,
            )
        previous = torrent.category
        if not ctx.dry_run:
            if unlinked.use_tag:
                torrent.tags.append(target)
            else:
                torrent.category = target
        metrics.incr('category_changed', client.name)
        await self.deps.event_bus.publish(
            'category_changed',
            f'{torrent.name} has no hardlinks; {"tagged" if unlinked.use_tag else "moved to"} {target}',
            'info',
            {
                'client': client.name,
                'hash': torrent.hash,
                'title': torrent.name,
                'old_category': previous,
                'new_category': target,
                'is_tag': unlinked.use_tag,
                'job_run_id': ctx.job_run_id,
            },
            dry_run=ctx.dry_run,
        )
        return True
