from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional

from core.models import QueueRecord, TorrentView
from integrations.clients import ArrInstance, DownloadClientInstance, call


class DryRunInterceptor:
    """Gate for every external mutation.

    In dry-run mode the mutation is logged and skipped; otherwise it runs
    under the adapter timeout.
    """

    def __init__(self, dry_run: bool, timeout: float, event_bus: Any = None) -> None:
        self.dry_run = dry_run
        self.timeout = timeout
        self.event_bus = event_bus

    async def intercept(self, what: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> bool:
        if self.dry_run:
            logging.info(f'[DRY RUN] skipped: {what}')
            if self.event_bus is not None:
                self.event_bus.log('dry_run_skip', action=what)
            return False
        await call(fn(*args, **kwargs), self.timeout, what)
        return True


@dataclass
class ActionsDeps:
    event_bus: Any  # expects async .publish(event_type, message, severity, data, strike_id=None)
    interceptor: DryRunInterceptor
    search_after_removal: bool = True


async def remove_from_queue(
    instance: ArrInstance,
    records: List[QueueRecord],
    torrent: Optional[TorrentView],
    reason: str,
    remove_from_client: bool,
    deps: ActionsDeps,
    job_run_id: str = '',
) -> None:
    """Dequeue every record of one download, then optionally search for a replacement."""
    head = records[0]
    item_ids: List[int] = []
    for rec in records:
        await deps.interceptor.intercept(
            f'{instance.name}: remove queue record {rec.id} ({rec.title}) remove_from_client={remove_from_client}',
            instance.client.remove_from_queue,
            rec.id,
            remove_from_client,
        )
        item_ids.extend(i for i in rec.item_ids if i not in item_ids)

    if deps.search_after_removal and item_ids:
        await deps.interceptor.intercept(
            f'{instance.name}: search for {item_ids}',
            instance.client.trigger_search,
            item_ids,
        )

    logging.info(
        f'Instance {instance.name}: removed {head.title} ({head.download_id}) reason={reason} '
        f'remove_from_client={remove_from_client}'
    )
    await deps.event_bus.publish(
        'queue_item_deleted',
        f'Removed {head.title} from {instance.name}: {reason}',
        'important',
        {
            'instance': instance.name,
            'hash': head.download_id,
            'title': head.title,
            'reason': reason,
            'remove_from_client': remove_from_client,
            'is_private': bool(torrent.is_private) if torrent is not None else None,
            'job_run_id': job_run_id,
        },
        dry_run=deps.interceptor.dry_run,
    )


async def skip_files(
    client: DownloadClientInstance,
    torrent: TorrentView,
    indexes: List[int],
    deps: ActionsDeps,
) -> None:
    for index in indexes:
        await deps.interceptor.intercept(
            f'{client.name}: skip file {index} of {torrent.name}',
            client.client.set_file_priority,
            torrent.hash,
            index,
            True,
        )
    if indexes:
        await deps.event_bus.publish(
            'files_blocked',
            f'Blocked {len(indexes)} unwanted file(s) in {torrent.name}',
            'info',
            {'client': client.name, 'hash': torrent.hash, 'title': torrent.name, 'files': indexes},
            dry_run=deps.interceptor.dry_run,
        )


def remove_from_client_allowed(torrent: Optional[TorrentView], delete_private: bool) -> bool:
    if torrent is None:
        return True
    return not torrent.is_private or bool(delete_private)
