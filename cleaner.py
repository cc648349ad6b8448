import asyncio
import logging
from typing import Any, Dict, List, Tuple

import aiohttp

from core.config import (
    DEFAULT_CONFIG_PATH,
    ConfigAccessor,
    ConfigSnapshot,
    build_snapshot,
    get_env_var,
    load_yaml,
    sanitize_config,
    validate_config,
)
from core.download_cleaner import DownloadCleaner, DownloadCleanerDeps
from core.events import EventBus
from core.models import JobType
from core.queue_cleaner import QueueCleaner, QueueCleanerDeps
from core.runner import JobFn, JobRunner, run_forever
from core.striker import StrikeTracker
from integrations.clients import (
    AdapterError,
    ArrClient,
    ArrInstance,
    DownloadClient,
    DownloadClientInstance,
    load_adapter,
)
from storage.strikes import StrikeStore

LOG_FORMAT = '%(asctime)s [%(levelname)s]: %(message)s'

CONFIG_PATH = get_env_var('CONFIG_PATH', DEFAULT_CONFIG_PATH)

# YAML config loading
CONFIG: Dict[str, Any] = sanitize_config(load_yaml(CONFIG_PATH))
SETTINGS: ConfigSnapshot = build_snapshot(CONFIG)

DEBUG_LOGGING = SETTINGS.debug_logging
logging_level = logging.DEBUG if DEBUG_LOGGING else logging.INFO

logging.basicConfig(
    format=LOG_FORMAT,
    level=logging_level,
    handlers=[logging.StreamHandler()],
    force=True,
)

# Dedicated non-propagating logger for structured event lines so they are not
# duplicated by the root handler.
EVENT_LOG = logging.getLogger('queue_cleaner.events')
EVENT_LOG.setLevel(logging_level)
EVENT_LOG.propagate = False
for _h in list(EVENT_LOG.handlers):
    EVENT_LOG.removeHandler(_h)
_h = logging.StreamHandler()
_h.setFormatter(logging.Formatter(LOG_FORMAT))
EVENT_LOG.addHandler(_h)

validate_config(CONFIG, DEBUG_LOGGING)


def build_arr_instances(cfg: Dict[str, Any]) -> List[ArrInstance]:
    out: List[ArrInstance] = []
    for entry in ConfigAccessor(cfg).arr_instances():
        name = str(entry.get('name') or entry.get('adapter'))
        if not entry.get('adapter') or entry.get('enabled') is False:
            continue
        try:
            client = load_adapter(entry['adapter'], entry.get('options'))
        except (AdapterError, TypeError) as e:
            logging.error(f'Instance {name}: adapter could not be created; skipping: {e}')
            continue
        if not isinstance(client, ArrClient):
            logging.error(f'Instance {name}: {entry["adapter"]} is not an ArrClient; skipping')
            continue
        out.append(ArrInstance(name=name, client=client, kind=str(entry.get('type') or 'arr')))
    return out


def build_download_clients(cfg: Dict[str, Any]) -> List[DownloadClientInstance]:
    out: List[DownloadClientInstance] = []
    for entry in ConfigAccessor(cfg).download_clients():
        name = str(entry.get('name') or entry.get('adapter'))
        if not entry.get('adapter') or entry.get('enabled') is False:
            continue
        try:
            client = load_adapter(entry['adapter'], entry.get('options'))
        except (AdapterError, TypeError) as e:
            logging.error(f'Client {name}: adapter could not be created; skipping: {e}')
            continue
        if not isinstance(client, DownloadClient):
            logging.error(f'Client {name}: {entry["adapter"]} is not a DownloadClient; skipping')
            continue
        out.append(DownloadClientInstance(name=name, client=client))
    return out


def build_jobs(
    settings: ConfigSnapshot,
    arr_instances: List[ArrInstance],
    download_clients: List[DownloadClientInstance],
    tracker: StrikeTracker,
    event_bus: Any,
) -> List[Tuple[JobType, JobFn, bool]]:
    jobs: List[Tuple[JobType, JobFn, bool]] = []
    if settings.queue_cleaner.enabled and arr_instances:
        qc = QueueCleaner(QueueCleanerDeps(
            settings=settings.queue_cleaner,
            arr_instances=arr_instances,
            download_clients=download_clients,
            tracker=tracker,
            event_bus=event_bus,
            adapter_timeout=settings.adapter_timeout,
        ))
        jobs.append((JobType.QUEUE_CLEANER, qc.execute, settings.queue_cleaner.dry_run))
    if settings.download_cleaner.enabled and download_clients:
        dc = DownloadCleaner(DownloadCleanerDeps(
            settings=settings.download_cleaner,
            download_clients=download_clients,
            arr_instances=arr_instances,
            event_bus=event_bus,
            adapter_timeout=settings.adapter_timeout,
        ))
        jobs.append((JobType.DOWNLOAD_CLEANER, dc.execute, settings.download_cleaner.dry_run))
    return jobs


async def main():
    store = StrikeStore(SETTINGS.database_path)
    arr_instances = build_arr_instances(CONFIG)
    download_clients = build_download_clients(CONFIG)
    try:
        async with aiohttp.ClientSession() as session:
            event_bus = EventBus(
                CONFIG,
                structured_logs=SETTINGS.structured_logs,
                dry_run=SETTINGS.dry_run,
                debug_logging=DEBUG_LOGGING,
                logger=EVENT_LOG,
                session=session,
            )
            tracker = StrikeTracker(store, event_bus)
            jobs = build_jobs(SETTINGS, arr_instances, download_clients, tracker, event_bus)
            if not jobs:
                logging.warning('No jobs enabled; check arr_instances, download_clients and job sections')
                return
            logging.info(
                f'Starting queue cleaner: {len(arr_instances)} arr instance(s), '
                f'{len(download_clients)} download client(s), dry_run={SETTINGS.dry_run}'
            )
            runner = JobRunner(store, event_bus)
            await run_forever(runner, jobs, SETTINGS.run_interval, event_bus.flush, logging.info)
    finally:
        for inst in [*arr_instances, *download_clients]:
            try:
                await inst.client.close()
            except Exception as e:
                logging.warning(f'{inst.name}: close failed: {e}')
        store.close()


if __name__ == '__main__':
    asyncio.run(main())
