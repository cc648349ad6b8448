from __future__ import annotations

import re
from typing import Any, Iterable, Optional
from urllib.parse import urlparse

_SIZE_RE = re.compile(r'^\s*([0-9]*\.?[0-9]+)\s*([a-zA-Z]*)\s*$')

_SIZE_UNITS = {
    '': 1,
    'b': 1,
    'kb': 1000,
    'mb': 1000 ** 2,
    'gb': 1000 ** 3,
    'tb': 1000 ** 4,
    'kib': 1024,
    'mib': 1024 ** 2,
    'gib': 1024 ** 3,
    'tib': 1024 ** 4,
}


def to_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def clamp_percent(pct: float) -> float:
    return max(0.0, min(100.0, pct))


def normalize_hash(value: Any) -> str:
    return str(value or '').strip().lower()


def parse_byte_size(value: Any) -> Optional[int]:
    """Parse '500KB', '1.5 GB', '10MiB' or a plain number into bytes.

    Returns None for empty or unparseable input.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    m = _SIZE_RE.match(str(value))
    if not m:
        return None
    unit = m.group(2).lower()
    if unit in ('k', 'm', 'g', 't'):
        unit += 'b'
    mult = _SIZE_UNITS.get(unit)
    if mult is None:
        return None
    return int(float(m.group(1)) * mult)


def tracker_host(tracker: str) -> str:
    tracker = str(tracker or '').strip().lower()
    if '://' in tracker:
        return urlparse(tracker).hostname or ''
    return tracker.split('/', 1)[0].split(':', 1)[0]


def is_ignored(torrent: Any, patterns: Iterable[str]) -> bool:
    """True when any pattern names the torrent's hash, category, a tag or a tracker domain."""
    pats = [str(p).strip().lower() for p in (patterns or []) if str(p).strip()]
    if not pats:
        return False
    category = str(getattr(torrent, 'category', None) or '').lower()
    tags = {str(t).lower() for t in (getattr(torrent, 'tags', None) or [])}
    hosts = [tracker_host(t) for t in (getattr(torrent, 'trackers', None) or [])]
    for pat in pats:
        if pat == getattr(torrent, 'hash', None):
            return True
        if category and pat == category:
            return True
        if pat in tags:
            return True
        for host in hosts:
            if host and (host == pat or host.endswith('.' + pat)):
                return True
    return False
