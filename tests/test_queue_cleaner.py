import importlib

import pytest


pytestmark = pytest.mark.asyncio

HASH = 'aaaa1111'


class FakeBus:
    def __init__(self):
        self.events = []
        self.logged = []

    async def publish(self, event_type, message, severity='info', data=None, strike_id=None, *, dry_run=None):
        self.events.append({'type': event_type, 'data': data or {}, 'dry_run': dry_run})

    def log(self, event, **fields):
        self.logged.append((event, fields))

    def types(self):
        return [e['type'] for e in self.events]


def _arr_client_cls():
    clients = importlib.import_module('integrations.clients')
    models = importlib.import_module('core.models')

    class FakeArr(clients.ArrClient):
        def __init__(self, records, fail=False):
            self.records = records
            self.fail = fail
            self.removed = []
            self.searched = []

        async def get_queue_page(self, page, page_size):
            if self.fail:
                raise RuntimeError('connection refused')
            start = (page - 1) * page_size
            return models.QueuePage(self.records[start:start + page_size], len(self.records))

        async def remove_from_queue(self, queue_record_id, remove_from_client):
            self.removed.append((queue_record_id, remove_from_client))

        async def trigger_search(self, item_ids):
            self.searched.append(list(item_ids))

    return FakeArr


def _download_client_cls():
    clients = importlib.import_module('integrations.clients')

    class FakeClient(clients.DownloadClient):
        def __init__(self, torrents):
            self.torrents = {t.hash: t for t in torrents}
            self.skipped = []
            self.deleted = []

        async def list_torrents(self, hashes=None):
            wanted = set(hashes) if hashes is not None else None
            return [t for h, t in self.torrents.items() if wanted is None or h in wanted]

        async def get_files(self, torrent_hash):
            return list(self.torrents[torrent_hash].files)

        async def set_file_priority(self, torrent_hash, file_index, skip):
            self.skipped.append((torrent_hash, file_index, skip))

        async def delete_torrent(self, torrent_hash, delete_files):
            self.deleted.append((torrent_hash, delete_files))

    return FakeClient


def _record(download_id=HASH, rid=1, **kw):
    models = importlib.import_module('core.models')
    data = {'id': rid, 'downloadId': download_id, 'title': 'Some.Show.S01E01', 'protocol': 'torrent', 'episodeId': 10}
    data.update(kw)
    return models.QueueRecord.from_dict(data)


def _torrent(**kw):
    models = importlib.import_module('core.models')
    base = dict(hash=HASH, name='Some.Show.S01E01', size=1000, downloaded=100, state='stalled')
    base.update(kw)
    return models.TorrentView(**base)


class Harness:
    def __init__(self, settings, records, torrents, dry_run=False, clock=lambda: 1000.0):
        clients = importlib.import_module('integrations.clients')
        strikes = importlib.import_module('storage.strikes')
        striker = importlib.import_module('core.striker')
        qc = importlib.import_module('core.queue_cleaner')
        self.store = strikes.StrikeStore(':memory:')
        self.bus = FakeBus()
        self.arr = _arr_client_cls()(records)
        self.client = _download_client_cls()(torrents)
        self.dry_run = dry_run
        self.runs = 0
        self.cleaner = qc.QueueCleaner(qc.QueueCleanerDeps(
            settings=settings,
            arr_instances=[clients.ArrInstance('Sonarr', self.arr)],
            download_clients=[clients.DownloadClientInstance('qbit', self.client)],
            tracker=striker.StrikeTracker(self.store, self.bus),
            event_bus=self.bus,
            adapter_timeout=5.0,
            clock=clock,
        ))

    async def run_pass(self):
        runner = importlib.import_module('core.runner')
        models = importlib.import_module('core.models')
        self.runs += 1
        run_id = f'run{self.runs}'
        self.store.start_job_run(run_id, 'queue_cleaner')
        ctx = runner.JobContext(job_run_id=run_id, job_type=models.JobType.QUEUE_CLEANER, dry_run=self.dry_run)
        metrics = runner.Metrics()
        await self.cleaner.execute(ctx, metrics)
        return metrics


def _settings(stall=None, slow=None, **kw):
    config = importlib.import_module('core.config')
    rules = importlib.import_module('core.rules')
    return config.QueueCleanerSettings(rules=rules.RuleManager(stall or [], slow or []), **kw)


def _stall_rule(**kw):
    rules = importlib.import_module('core.rules')
    return rules.StallRule(name='stall', **kw)


async def test_stalled_torrent_condemned_on_third_pass():
    models = importlib.import_module('core.models')
    h = Harness(_settings([_stall_rule()]), [_record()], [_torrent()])
    for _ in range(2):
        m = await h.run_pass()
        assert m['strikes'] == 1 and m['removed'] == 0
        assert h.arr.removed == []
    m = await h.run_pass()
    assert m['removed'] == 1
    assert h.arr.removed == [(1, True)]
    assert h.arr.searched == [[10]]
    assert h.store.live_strike_count(HASH, models.StrikeType.STALLED.value) == 3
    assert h.store.get_item(HASH)['is_removed'] == 1
    assert 'queue_item_deleted' in h.bus.types()


async def test_private_torrent_is_only_dequeued():
    models = importlib.import_module('core.models')
    rule = _stall_rule(privacy_type=models.PrivacyType.BOTH)
    h = Harness(_settings([rule]), [_record()], [_torrent(is_private=True)])
    for _ in range(3):
        await h.run_pass()
    assert h.arr.removed == [(1, False)]


async def test_dry_run_accumulates_strikes_without_mutations():
    h = Harness(_settings([_stall_rule()]), [_record()], [_torrent()], dry_run=True)
    for _ in range(3):
        await h.run_pass()
    assert h.arr.removed == [] and h.arr.searched == []
    assert h.store.live_strike_count(HASH, 'stalled') == 3
    deleted = [e for e in h.bus.events if e['type'] == 'queue_item_deleted']
    assert deleted and deleted[0]['dry_run'] is True
    assert h.store.get_item(HASH)['is_removed'] == 0
    assert any(ev == 'dry_run_skip' for ev, _ in h.bus.logged)


async def test_progress_resets_stall_strikes():
    h = Harness(_settings([_stall_rule()]), [_record()], [_torrent()])
    await h.run_pass()
    await h.run_pass()
    assert h.store.live_strike_count(HASH, 'stalled') == 2
    h.client.torrents[HASH] = _torrent(downloaded=400, state='downloading')
    m = await h.run_pass()
    assert m['resets'] == 1
    assert h.store.live_strike_count(HASH, 'stalled') == 0
    # history survives the reset
    assert h.store.total_strike_rows(HASH) == 2
    assert 'strike_reset' in h.bus.types()
    assert h.arr.removed == []


async def test_failed_strike_write_keeps_previous_observation():
    strikes = importlib.import_module('storage.strikes')
    h = Harness(_settings([_stall_rule(minimum_progress_bytes=50)]), [_record()], [_torrent(state='downloading')])
    await h.run_pass()
    assert h.store.get_observation(HASH, 'stalled')[0] == 100

    def broken(*a, **kw):
        raise strikes.StoreError('database is locked')

    original = h.store.record_strike
    h.store.record_strike = broken
    h.client.torrents[HASH] = _torrent(downloaded=130, state='downloading')
    with pytest.raises(strikes.StoreError):
        await h.run_pass()
    assert h.store.get_observation(HASH, 'stalled')[0] == 100

    # progress is measured from the last committed observation
    h.store.record_strike = original
    h.client.torrents[HASH] = _torrent(downloaded=160, state='downloading')
    m = await h.run_pass()
    assert m['strikes'] == 0
    assert h.store.get_observation(HASH, 'stalled')[0] == 160


async def test_multiple_records_for_one_download_are_removed_together():
    h = Harness(
        _settings([_stall_rule()]),
        [_record(rid=1, episodeId=10), _record(rid=2, episodeId=11)],
        [_torrent()],
    )
    for _ in range(3):
        m = await h.run_pass()
        assert m['processed'] == 1
    assert h.arr.removed == [(1, True), (2, True)]
    assert h.arr.searched == [[10, 11]]


async def test_slow_torrent_strikes_slow_speed():
    rules = importlib.import_module('core.rules')
    slow = rules.SlowRule(name='slow', min_speed=1000)
    h = Harness(_settings(slow=[slow]), [_record()], [_torrent(state='downloading', download_speed=10)])
    for _ in range(3):
        await h.run_pass()
    assert h.store.live_strike_count(HASH, 'slow_speed') == 3
    assert h.arr.removed == [(1, True)]


async def test_fully_blocked_content_removed_directly():
    config = importlib.import_module('core.config')
    filters = importlib.import_module('core.filters')
    models = importlib.import_module('core.models')
    cb = config.ContentBlockerSettings(enabled=True, content_filter=filters.ContentFilter(['*.exe', '*.lnk']))
    files = [models.FileEntry(0, 'setup.exe'), models.FileEntry(1, 'movie.lnk')]
    h = Harness(_settings([_stall_rule()], content_blocker=cb), [_record()], [_torrent(files=files)])
    m = await h.run_pass()
    assert m['removed'] == 1
    assert h.arr.removed == [(1, True)]
    # stall accounting is not reached for a blocked download
    assert h.store.live_strike_count(HASH, 'stalled') == 0


async def test_partially_blocked_content_skips_files():
    config = importlib.import_module('core.config')
    filters = importlib.import_module('core.filters')
    models = importlib.import_module('core.models')
    cb = config.ContentBlockerSettings(enabled=True, content_filter=filters.ContentFilter(['*.exe']))
    files = [models.FileEntry(0, 'movie.mkv'), models.FileEntry(1, 'setup.exe')]
    h = Harness(_settings(content_blocker=cb), [_record()], [_torrent(files=files, state='downloading')])
    m = await h.run_pass()
    assert h.client.skipped == [(HASH, 1, True)]
    assert m['files_blocked'] == 1
    assert h.arr.removed == []
    assert 'files_blocked' in h.bus.types()


async def test_blocked_content_with_strikes():
    config = importlib.import_module('core.config')
    filters = importlib.import_module('core.filters')
    models = importlib.import_module('core.models')
    cb = config.ContentBlockerSettings(enabled=True, max_strikes=3, content_filter=filters.ContentFilter(['*.exe']))
    h = Harness(_settings(content_blocker=cb), [_record()], [_torrent(files=[models.FileEntry(0, 'a.exe')])])
    await h.run_pass()
    await h.run_pass()
    assert h.arr.removed == []
    await h.run_pass()
    assert h.store.live_strike_count(HASH, 'download_blocked') == 3
    assert h.arr.removed == [(1, True)]


async def test_failed_import_strikes_and_respects_ignored_patterns():
    config = importlib.import_module('core.config')
    fi = config.FailedImportSettings(max_strikes=3, ignored_patterns=['custom format'])
    stuck = dict(trackedDownloadStatus='warning', trackedDownloadState='importPending')
    done = _torrent(downloaded=1000, state='completed')

    h = Harness(_settings(failed_import=fi), [_record(**stuck)], [done])
    for _ in range(3):
        await h.run_pass()
    assert h.store.live_strike_count(HASH, 'failed_import') == 3
    assert h.arr.removed == [(1, True)]

    ignored = _record(statusMessages=[{'title': 'x', 'messages': ['Not a Custom Format upgrade']}], **stuck)
    h2 = Harness(_settings(failed_import=fi), [ignored], [done])
    await h2.run_pass()
    assert h2.store.live_strike_count(HASH, 'failed_import') == 0


async def test_failed_import_when_missing_from_client_is_configurable():
    config = importlib.import_module('core.config')
    stuck = dict(trackedDownloadStatus='warning', trackedDownloadState='importBlocked')
    skip = config.FailedImportSettings(max_strikes=3)
    h = Harness(_settings(failed_import=skip), [_record(**stuck)], [])
    await h.run_pass()
    assert h.store.live_strike_count(HASH, 'failed_import') == 0

    check = config.FailedImportSettings(max_strikes=3, skip_if_not_found_in_client=False)
    h2 = Harness(_settings(failed_import=check), [_record(**stuck)], [])
    await h2.run_pass()
    assert h2.store.live_strike_count(HASH, 'failed_import') == 1


async def test_ignored_downloads_and_non_torrents_are_skipped():
    h = Harness(
        _settings([_stall_rule()], ignored_downloads=['tracker.example']),
        [_record(), _record(download_id='bbbb', rid=2, protocol='usenet')],
        [_torrent(trackers=['https://tracker.example/announce'])],
    )
    await h.run_pass()
    assert h.store.list_items() == []


async def test_failing_instance_does_not_stop_others():
    clients = importlib.import_module('integrations.clients')
    h = Harness(_settings([_stall_rule()]), [_record()], [_torrent()])
    broken = _arr_client_cls()([], fail=True)
    h.cleaner.deps.arr_instances.insert(0, clients.ArrInstance('Radarr', broken))
    m = await h.run_pass()
    assert m['errors'] == 1
    assert m.get('Radarr:errors') == 1
    assert h.store.live_strike_count(HASH, 'stalled') == 1


async def test_store_failure_aborts_the_pass():
    strikes = importlib.import_module('storage.strikes')
    h = Harness(_settings([_stall_rule()]), [_record()], [_torrent()])

    def broken(*a, **kw):
        raise strikes.StoreError('database is locked')

    h.store.record_strike = broken
    with pytest.raises(strikes.StoreError):
        await h.run_pass()


async def test_cancelled_pass_stops_before_next_item():
    runner = importlib.import_module('core.runner')
    models = importlib.import_module('core.models')
    h = Harness(_settings([_stall_rule()]), [_record()], [_torrent()])
    h.store.start_job_run('cancelled', 'queue_cleaner')
    ctx = runner.JobContext(job_run_id='cancelled', job_type=models.JobType.QUEUE_CLEANER, dry_run=False)
    ctx.cancel_event.set()
    with pytest.raises(runner.JobCancelled):
        await h.cleaner.execute(ctx, runner.Metrics())
    assert h.store.list_items() == []
