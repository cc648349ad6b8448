import importlib

import pytest


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ('DRY_RUN', 'DEBUG_LOGGING', 'STRUCTURED_LOGS', 'DATABASE_PATH', 'RUN_INTERVAL', 'ADAPTER_TIMEOUT'):
        monkeypatch.delenv(key, raising=False)


def test_snapshot_parses_rules_and_jobs():
    config = importlib.import_module('core.config')
    cfg = {
        'general': {'dry_run': True, 'ignored_downloads': ['keep-me']},
        'queue_cleaner': {
            'dry_run': False,
            'ignored_downloads': ['tracker.example'],
            'stall_rules': [{'name': 'all', 'privacy_type': 'both', 'max_strikes': 5}],
            'slow_rules': [{'name': 'slow', 'min_speed': '100KB', 'min_sample_minutes': 10}],
            'failed_import': {'max_strikes': 4, 'ignored_patterns': 'not an upgrade'},
        },
        'content_blocker': {'enabled': True, 'patterns': ['*.exe'], 'max_strikes': 2},
        'download_cleaner': {
            'enabled': True,
            'seeding_rules': [{'name': 'movies', 'max_ratio': '2', 'min_seed_time': 24}],
            'unlinked': {'enabled': True, 'target_category': 'unlinked', 'categories': 'movies'},
        },
    }
    snap = config.build_snapshot(config.sanitize_config(cfg))
    assert snap.dry_run is True
    qc = snap.queue_cleaner
    assert qc.dry_run is False
    assert qc.ignored_downloads == ['keep-me', 'tracker.example']
    assert qc.rules.stall_rules[0].max_strikes == 5
    assert qc.rules.slow_rules[0].min_speed == 100_000
    assert qc.failed_import.max_strikes == 4
    assert qc.failed_import.ignored_patterns == ['not an upgrade']
    assert qc.content_blocker.enabled and qc.content_blocker.max_strikes == 2
    dc = snap.download_cleaner
    assert dc.enabled and dc.dry_run is True
    assert dc.seeding_rules[0].max_ratio == 2.0
    assert dc.unlinked.enabled and dc.unlinked.categories == ['movies']


def test_env_fallback_and_yaml_precedence(monkeypatch):
    config = importlib.import_module('core.config')
    monkeypatch.setenv('DRY_RUN', 'true')
    monkeypatch.setenv('RUN_INTERVAL', '60')
    monkeypatch.setenv('DATABASE_PATH', '/tmp/x.db')
    monkeypatch.setenv('ADAPTER_TIMEOUT', 'soon')
    snap = config.build_snapshot({})
    assert snap.dry_run is True
    assert snap.run_interval == 60
    assert snap.database_path == '/tmp/x.db'
    assert snap.adapter_timeout == config.DEFAULT_ADAPTER_TIMEOUT
    snap = config.build_snapshot({'general': {'dry_run': False, 'run_interval_seconds': 30}})
    assert snap.dry_run is False and snap.run_interval == 30


def test_defaults_without_config():
    config = importlib.import_module('core.config')
    snap = config.build_snapshot({})
    assert snap.dry_run is False
    assert snap.queue_cleaner.enabled is True
    assert snap.queue_cleaner.content_blocker.enabled is False
    assert snap.download_cleaner.enabled is False
    assert snap.database_path == config.DEFAULT_DATABASE_PATH


def test_empty_whitelist_disables_content_blocking():
    config = importlib.import_module('core.config')
    cfg = {'content_blocker': {'enabled': True, 'mode': 'whitelist'}}
    assert config.build_snapshot(cfg).queue_cleaner.content_blocker.enabled is False
    problems = config.validate_config(cfg)
    assert any('whitelist' in p for p in problems)


def test_sanitize_coerces_numbers_and_drops_bad_destinations():
    config = importlib.import_module('core.config')
    out = config.sanitize_config({
        'general': {'run_interval_seconds': '0', 'adapter_timeout_seconds': 'x'},
        'queue_cleaner': {'failed_import': {'max_strikes': '-2'}, 'stall_rules': [{'name': 'a'}, 'junk']},
        'download_cleaner': {'seeding_rules': [{'name': 'tv', 'max_ratio': 'bad', 'min_seed_time': -5}]},
        'notifications': {'destinations': [
            {'type': 'discord', 'url': 'http://d', 'events': 'strike'},
            {'type': 'pager', 'url': 'http://p'},
        ]},
    })
    assert out['general']['run_interval_seconds'] == 1
    assert out['general']['adapter_timeout_seconds'] == config.DEFAULT_ADAPTER_TIMEOUT
    assert out['queue_cleaner']['failed_import']['max_strikes'] == 0
    assert out['queue_cleaner']['stall_rules'] == [{'name': 'a'}]
    rule = out['download_cleaner']['seeding_rules'][0]
    assert rule['max_ratio'] == -1.0 and rule['min_seed_time'] == 0.0
    dests = out['notifications']['destinations']
    assert len(dests) == 1 and dests[0]['events'] == ['strike']
    assert config.sanitize_config(None) == {}


def test_validate_reports_rule_gaps_and_missing_adapters():
    config = importlib.import_module('core.config')
    problems = config.validate_config({
        'arr_instances': [{'name': 'Sonarr'}],
        'queue_cleaner': {'stall_rules': [{'name': 'low', 'max_completion': 50}]},
        'download_cleaner': {'seeding_rules': [{'name': 'tv'}], 'unlinked': {'enabled': True}},
    })
    assert any('Sonarr' in p and 'adapter' in p for p in problems)
    assert any('uncovered' in p for p in problems)
    assert any("'tv'" in p for p in problems)
    assert any('target_category' in p for p in problems)


def test_load_yaml_missing_and_invalid(tmp_path, caplog):
    config = importlib.import_module('core.config')
    assert config.load_yaml(str(tmp_path / 'nope.yaml')) == {}
    bad = tmp_path / 'bad.yaml'
    bad.write_text('general: [unclosed\n')
    assert config.load_yaml(str(bad)) == {}
    assert any('could not be read' in r.message for r in caplog.records)
    good = tmp_path / 'good.yaml'
    good.write_text('general:\n  dry_run: true\n')
    assert config.load_yaml(str(good)) == {'general': {'dry_run': True}}


def test_accessor_collects_instances():
    config = importlib.import_module('core.config')
    acc = config.ConfigAccessor({
        'arr_instances': [{'name': 'Sonarr', 'adapter': 'm:C'}, 'bad'],
        'download_clients': {'name': 'qbit', 'adapter': 'm:D'},
    })
    assert [d['name'] for d in acc.arr_instances()] == ['Sonarr']
    assert [d['name'] for d in acc.download_clients()] == ['qbit']
    assert config.get_env_var('NOT_SET_ANYWHERE', 7, cast_to=int) == 7
