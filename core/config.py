from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import yaml

from core.filters import ContentFilter, build_content_filter
from core.rules import (
    RuleManager,
    SeedingRule,
    seeding_rule_from_dict,
    slow_rule_from_dict,
    stall_rule_from_dict,
)
from core.utils import to_float

DEFAULT_CONFIG_PATH = '/app/config.yaml'
DEFAULT_DATABASE_PATH = '/app/data/cleaner.db'
DEFAULT_RUN_INTERVAL = 300
DEFAULT_ADAPTER_TIMEOUT = 30.0


def env_bool(value: str) -> bool:
    return str(value).lower() in ['true', '1', 'yes']


def get_env_var(key: str, default: Any = None, cast_to: Callable[[str], Any] = str) -> Any:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return cast_to(value)
    except (TypeError, ValueError):
        logging.warning(f'Ignoring invalid value for {key}: {value!r}')
        return default


def load_yaml(path: str) -> Dict[str, Any]:
    if not path or not os.path.exists(path):
        return {}
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logging.error(f'Config {path} could not be read: {e}')
        return {}
    return data if isinstance(data, dict) else {}


def _section(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    val = cfg.get(key)
    return val if isinstance(val, dict) else {}


def _list(val: Any) -> List[Any]:
    if val is None:
        return []
    return val if isinstance(val, list) else [val]


class ConfigAccessor:
    def __init__(self, cfg: Dict[str, Any]) -> None:
        self.cfg = cfg if isinstance(cfg, dict) else {}

    def general(self, key: str, default: Any = None) -> Any:
        return _section(self.cfg, 'general').get(key, default)

    def section(self, key: str) -> Dict[str, Any]:
        return _section(self.cfg, key)

    def job_dry_run(self, job: str, fallback: bool) -> bool:
        val = self.section(job).get('dry_run')
        return fallback if val is None else bool(val)

    def ignored_downloads(self, job: str) -> List[str]:
        out = [str(x) for x in _list(self.general('ignored_downloads'))]
        out.extend(str(x) for x in _list(self.section(job).get('ignored_downloads')))
        return out

    def notification_destinations(self) -> List[Dict[str, Any]]:
        notif = self.section('notifications')
        return [d for d in _list(notif.get('destinations')) if isinstance(d, dict) and d.get('url')]

    def arr_instances(self) -> List[Dict[str, Any]]:
        return [d for d in _list(self.cfg.get('arr_instances')) if isinstance(d, dict)]

    def download_clients(self) -> List[Dict[str, Any]]:
        return [d for d in _list(self.cfg.get('download_clients')) if isinstance(d, dict)]


def sanitize_config(cfg: Dict[str, Any], debug_logging: bool = False) -> Dict[str, Any]:
    if not isinstance(cfg, dict):
        return {}
    out = dict(cfg)

    def _nz(v, cast, default):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return default

    gen = _section(out, 'general')
    if gen:
        if 'run_interval_seconds' in gen:
            gen['run_interval_seconds'] = max(1, _nz(gen.get('run_interval_seconds'), int, DEFAULT_RUN_INTERVAL))
        if 'adapter_timeout_seconds' in gen:
            gen['adapter_timeout_seconds'] = max(
                1.0, _nz(gen.get('adapter_timeout_seconds'), float, DEFAULT_ADAPTER_TIMEOUT)
            )
        out['general'] = gen

    qc = _section(out, 'queue_cleaner')
    fi = _section(qc, 'failed_import')
    if fi:
        fi['max_strikes'] = max(0, _nz(fi.get('max_strikes', 0), int, 0))
        fi['ignored_patterns'] = [str(p) for p in _list(fi.get('ignored_patterns'))]
        qc['failed_import'] = fi
    for key in ('stall_rules', 'slow_rules'):
        if key in qc:
            qc[key] = [r for r in _list(qc.get(key)) if isinstance(r, dict)]
    if qc:
        out['queue_cleaner'] = qc

    cb = _section(out, 'content_blocker')
    if cb:
        cb['max_strikes'] = max(0, _nz(cb.get('max_strikes', 0), int, 0))
        cb['patterns'] = [str(p) for p in _list(cb.get('patterns'))]
        out['content_blocker'] = cb

    dc = _section(out, 'download_cleaner')
    if dc:
        rules = []
        for r in _list(dc.get('seeding_rules')):
            if not isinstance(r, dict):
                continue
            for k in ('max_ratio', 'max_seed_time'):
                if k in r:
                    r[k] = _nz(r.get(k), float, -1.0)
            if 'min_seed_time' in r:
                r['min_seed_time'] = max(0.0, _nz(r.get('min_seed_time'), float, 0.0))
            rules.append(r)
        dc['seeding_rules'] = rules
        out['download_cleaner'] = dc

    notif = _section(out, 'notifications')
    valid_types = {'discord', 'slack', 'generic'}
    cleaned = []
    for d in _list(notif.get('destinations')):
        if not isinstance(d, dict):
            continue
        typ = str(d.get('type') or 'generic').lower()
        if not d.get('url') or typ not in valid_types:
            if debug_logging:
                logging.warning(f'Ignoring invalid notification destination: {d}')
            continue
        ev = d.get('events')
        if ev is not None and not isinstance(ev, list):
            d['events'] = [str(ev)]
        cleaned.append(d)
    if notif:
        notif['destinations'] = cleaned
        out['notifications'] = notif
    return out


def validate_config(cfg: Dict[str, Any], debug_logging: bool = False) -> List[str]:
    """Log configuration problems as warnings. Never raises."""
    problems: List[str] = []
    acc = ConfigAccessor(cfg)
    for kind, entries in (('arr instance', acc.arr_instances()), ('download client', acc.download_clients())):
        for entry in entries:
            if not entry.get('adapter'):
                problems.append(f"{kind} '{entry.get('name')}' has no adapter; it will be skipped.")

    qc = acc.section('queue_cleaner')
    try:
        rules = RuleManager(
            [stall_rule_from_dict(r, i) for i, r in enumerate(_list(qc.get('stall_rules')))],
            [slow_rule_from_dict(r, i) for i, r in enumerate(_list(qc.get('slow_rules')))],
        )
        problems.extend(rules.advisories())
    except (TypeError, ValueError, AttributeError) as e:
        problems.append(f'queue_cleaner rules could not be parsed: {e}')

    cb = acc.section('content_blocker')
    if cb.get('enabled') and str(cb.get('mode') or '').lower() == 'whitelist':
        if not cb.get('patterns') and not cb.get('patterns_path'):
            problems.append('content_blocker whitelist has no patterns; content blocking will be skipped.')

    dc = acc.section('download_cleaner')
    for r in _list(dc.get('seeding_rules')):
        if isinstance(r, dict) and to_float(r.get('max_ratio'), -1.0) < 0 and to_float(r.get('max_seed_time'), -1.0) < 0:
            problems.append(f"seeding rule '{r.get('name')}' has neither max_ratio nor max_seed_time; it never triggers.")
    unlinked = _section(dc, 'unlinked')
    if unlinked.get('enabled') and not unlinked.get('target_category'):
        problems.append('download_cleaner.unlinked is enabled without target_category; it will be skipped.')

    for d in _list(_section(cfg, 'notifications').get('destinations')):
        if isinstance(d, dict) and not d.get('url'):
            problems.append(f"Notification destination '{d.get('name') or d.get('type')}' missing url; it will be ignored.")
    for p in problems:
        logging.warning(p)
    return problems


@dataclass
class FailedImportSettings:
    max_strikes: int = 0
    ignore_private: bool = False
    delete_private: bool = False
    ignored_patterns: List[str] = field(default_factory=list)
    skip_if_not_found_in_client: bool = True


@dataclass
class ContentBlockerSettings:
    enabled: bool = False
    ignore_private: bool = False
    delete_private: bool = False
    max_strikes: int = 0
    content_filter: Optional[ContentFilter] = None


@dataclass
class QueueCleanerSettings:
    enabled: bool = True
    dry_run: bool = False
    rules: RuleManager = field(default_factory=RuleManager)
    ignored_downloads: List[str] = field(default_factory=list)
    search_after_removal: bool = True
    failed_import: FailedImportSettings = field(default_factory=FailedImportSettings)
    content_blocker: ContentBlockerSettings = field(default_factory=ContentBlockerSettings)


@dataclass
class UnlinkedSettings:
    enabled: bool = False
    target_category: str = ''
    use_tag: bool = False
    categories: List[str] = field(default_factory=list)


@dataclass
class DownloadCleanerSettings:
    enabled: bool = False
    dry_run: bool = False
    delete_private: bool = False
    ignored_downloads: List[str] = field(default_factory=list)
    seeding_rules: List[SeedingRule] = field(default_factory=list)
    unlinked: UnlinkedSettings = field(default_factory=UnlinkedSettings)


@dataclass
class ConfigSnapshot:
    dry_run: bool = False
    debug_logging: bool = False
    structured_logs: bool = True
    run_interval: int = DEFAULT_RUN_INTERVAL
    adapter_timeout: float = DEFAULT_ADAPTER_TIMEOUT
    database_path: str = DEFAULT_DATABASE_PATH
    queue_cleaner: QueueCleanerSettings = field(default_factory=QueueCleanerSettings)
    download_cleaner: DownloadCleanerSettings = field(default_factory=DownloadCleanerSettings)
    raw: Dict[str, Any] = field(default_factory=dict)


def build_snapshot(cfg: Dict[str, Any]) -> ConfigSnapshot:
    acc = ConfigAccessor(cfg)

    # YAML general wins over env
    def _general(key: str, env_key: str, default: Any, cast: Callable[[str], Any]) -> Any:
        val = acc.general(key, None)
        if val is not None:
            return val
        return get_env_var(env_key, default, cast_to=cast)

    dry_run = bool(_general('dry_run', 'DRY_RUN', False, env_bool))

    qc = acc.section('queue_cleaner')
    fi = _section(qc, 'failed_import')
    cb = acc.section('content_blocker')
    content_filter = build_content_filter(cb)
    if content_filter is not None and content_filter.is_empty:
        content_filter = None
    queue_settings = QueueCleanerSettings(
        enabled=bool(qc.get('enabled', True)),
        dry_run=acc.job_dry_run('queue_cleaner', dry_run),
        rules=RuleManager(
            [stall_rule_from_dict(r, i) for i, r in enumerate(_list(qc.get('stall_rules')))],
            [slow_rule_from_dict(r, i) for i, r in enumerate(_list(qc.get('slow_rules')))],
        ),
        ignored_downloads=acc.ignored_downloads('queue_cleaner'),
        search_after_removal=bool(qc.get('search_after_removal', True)),
        failed_import=FailedImportSettings(
            max_strikes=int(fi.get('max_strikes', 0) or 0),
            ignore_private=bool(fi.get('ignore_private', False)),
            delete_private=bool(fi.get('delete_private', False)),
            ignored_patterns=[str(p) for p in _list(fi.get('ignored_patterns'))],
            skip_if_not_found_in_client=bool(fi.get('skip_if_not_found_in_client', True)),
        ),
        content_blocker=ContentBlockerSettings(
            enabled=content_filter is not None,
            ignore_private=bool(cb.get('ignore_private', False)),
            delete_private=bool(cb.get('delete_private', False)),
            max_strikes=int(cb.get('max_strikes', 0) or 0),
            content_filter=content_filter,
        ),
    )

    dc = acc.section('download_cleaner')
    unlinked = _section(dc, 'unlinked')
    download_settings = DownloadCleanerSettings(
        enabled=bool(dc.get('enabled', False)),
        dry_run=acc.job_dry_run('download_cleaner', dry_run),
        delete_private=bool(dc.get('delete_private', False)),
        ignored_downloads=acc.ignored_downloads('download_cleaner'),
        seeding_rules=[seeding_rule_from_dict(r, i) for i, r in enumerate(_list(dc.get('seeding_rules')))],
        unlinked=UnlinkedSettings(
            enabled=bool(unlinked.get('enabled', False)) and bool(unlinked.get('target_category')),
            target_category=str(unlinked.get('target_category') or ''),
            use_tag=bool(unlinked.get('use_tag', False)),
            categories=[str(c) for c in _list(unlinked.get('categories'))],
        ),
    )

    return ConfigSnapshot(
        dry_run=dry_run,
        debug_logging=bool(_general('debug_logging', 'DEBUG_LOGGING', False, env_bool)),
        structured_logs=bool(_general('structured_logs', 'STRUCTURED_LOGS', True, env_bool)),
        run_interval=int(_general('run_interval_seconds', 'RUN_INTERVAL', DEFAULT_RUN_INTERVAL, int)),
        adapter_timeout=float(_general('adapter_timeout_seconds', 'ADAPTER_TIMEOUT', DEFAULT_ADAPTER_TIMEOUT, float)),
        database_path=str(_general('database_path', 'DATABASE_PATH', DEFAULT_DATABASE_PATH, str)),
        queue_cleaner=queue_settings,
        download_cleaner=download_settings,
        raw=cfg,
    )
