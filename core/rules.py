from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from core.models import PrivacyType, TorrentView
from core.utils import parse_byte_size, to_float, to_int

MIN_MAX_STRIKES = 3
GAP_TOLERANCE = 0.01


@dataclass
class QueueRule:
    name: str
    enabled: bool = True
    max_strikes: int = MIN_MAX_STRIKES
    privacy_type: PrivacyType = PrivacyType.PUBLIC
    min_completion: float = 0.0
    max_completion: float = 100.0
    reset_strikes_on_progress: bool = True
    delete_private_torrents_from_client: bool = False

    def covers(self, pct: float) -> bool:
        if self.min_completion <= pct < self.max_completion:
            return True
        return pct >= 100.0 and self.max_completion >= 100.0

    def applies_to(self, torrent: TorrentView) -> bool:
        return self.enabled and self.privacy_type.includes(torrent.is_private)


@dataclass
class StallRule(QueueRule):
    minimum_progress_bytes: int = 0


@dataclass
class SlowRule(QueueRule):
    min_speed: int = 0
    min_sample_minutes: float = 0.0
    max_time_hours: float = 0.0
    ignore_above_size: Optional[int] = None

    def applies_to(self, torrent: TorrentView) -> bool:
        if not super().applies_to(torrent):
            return False
        if self.ignore_above_size and torrent.size >= self.ignore_above_size:
            return False
        return True


def _privacy(value: Any) -> PrivacyType:
    try:
        return PrivacyType(str(value or 'public').lower())
    except ValueError:
        logging.warning(f'Unknown privacy_type {value!r}; using public')
        return PrivacyType.PUBLIC


def _common_fields(raw: Dict[str, Any], idx: int, kind: str) -> Dict[str, Any]:
    name = str(raw.get('name') or f'{kind}-{idx + 1}')
    max_strikes = to_int(raw.get('max_strikes'), MIN_MAX_STRIKES)
    if max_strikes < MIN_MAX_STRIKES:
        logging.warning(f'Rule {name}: max_strikes {max_strikes} raised to {MIN_MAX_STRIKES}')
        max_strikes = MIN_MAX_STRIKES
    lo = max(0.0, min(100.0, to_float(raw.get('min_completion'), 0.0)))
    hi = max(0.0, min(100.0, to_float(raw.get('max_completion'), 100.0)))
    if hi <= lo:
        logging.warning(f'Rule {name}: empty completion range [{lo}, {hi}); rule will never match')
    return {
        'name': name,
        'enabled': bool(raw.get('enabled', True)),
        'max_strikes': max_strikes,
        'privacy_type': _privacy(raw.get('privacy_type')),
        'min_completion': lo,
        'max_completion': hi,
        'reset_strikes_on_progress': bool(raw.get('reset_strikes_on_progress', True)),
        'delete_private_torrents_from_client': bool(raw.get('delete_private_torrents_from_client', False)),
    }


def stall_rule_from_dict(raw: Dict[str, Any], idx: int = 0) -> StallRule:
    return StallRule(
        **_common_fields(raw, idx, 'stall'),
        minimum_progress_bytes=parse_byte_size(raw.get('minimum_progress_bytes')) or 0,
    )


def slow_rule_from_dict(raw: Dict[str, Any], idx: int = 0) -> SlowRule:
    return SlowRule(
        **_common_fields(raw, idx, 'slow'),
        min_speed=parse_byte_size(raw.get('min_speed')) or 0,
        min_sample_minutes=max(0.0, to_float(raw.get('min_sample_minutes'), 0.0)),
        max_time_hours=max(0.0, to_float(raw.get('max_time_hours'), 0.0)),
        ignore_above_size=parse_byte_size(raw.get('ignore_above_size')),
    )


R = TypeVar('R', bound=QueueRule)


def _find_matching(rules: Sequence[R], torrent: TorrentView) -> Optional[R]:
    pct = torrent.completion_percentage
    candidates = [
        (rule.min_completion, pos, rule)
        for pos, rule in enumerate(rules)
        if rule.applies_to(torrent) and rule.covers(pct)
    ]
    if not candidates:
        return None
    if len(candidates) > 1:
        logging.debug(
            f'Torrent {torrent.hash}: {len(candidates)} rules overlap at {pct:.2f}%; picking lowest min'
        )
    candidates.sort(key=lambda c: (c[0], c[1]))
    return candidates[0][2]


class RuleManager:
    """Holds configured stall and slow rules in creation order."""

    def __init__(self, stall_rules: Iterable[StallRule] = (), slow_rules: Iterable[SlowRule] = ()) -> None:
        self.stall_rules: List[StallRule] = list(stall_rules)
        self.slow_rules: List[SlowRule] = list(slow_rules)

    def find_matching_stall_rule(self, torrent: TorrentView) -> Optional[StallRule]:
        return _find_matching(self.stall_rules, torrent)

    def find_matching_slow_rule(self, torrent: TorrentView) -> Optional[SlowRule]:
        return _find_matching(self.slow_rules, torrent)

    def advisories(self) -> List[str]:
        out: List[str] = []
        for kind, rules in (('stall', self.stall_rules), ('slow', self.slow_rules)):
            if not any(r.enabled for r in rules):
                continue
            for privacy, lo, hi in find_coverage_gaps(rules):
                out.append(f'{kind} rules leave {privacy} torrents uncovered in [{lo:g}, {hi:g})')
            for privacy, a, b in find_overlaps(rules):
                out.append(f'{kind} rules {a.name!r} and {b.name!r} overlap for {privacy} torrents')
        return out


def _scoped(rules: Sequence[QueueRule], privacy: PrivacyType) -> List[QueueRule]:
    is_private = privacy is PrivacyType.PRIVATE
    return sorted(
        (r for r in rules if r.enabled and r.privacy_type.includes(is_private)),
        key=lambda r: (r.min_completion, r.max_completion),
    )


def find_coverage_gaps(rules: Sequence[QueueRule]) -> List[Tuple[str, float, float]]:
    gaps: List[Tuple[str, float, float]] = []
    for privacy in (PrivacyType.PUBLIC, PrivacyType.PRIVATE):
        cursor = 0.0
        for rule in _scoped(rules, privacy):
            if rule.min_completion > cursor + GAP_TOLERANCE:
                gaps.append((privacy.value, cursor, rule.min_completion))
            cursor = max(cursor, rule.max_completion)
        if cursor < 100.0 - GAP_TOLERANCE:
            gaps.append((privacy.value, cursor, 100.0))
    return gaps


def find_overlaps(rules: Sequence[QueueRule]) -> List[Tuple[str, QueueRule, QueueRule]]:
    overlaps: List[Tuple[str, QueueRule, QueueRule]] = []
    for privacy in (PrivacyType.PUBLIC, PrivacyType.PRIVATE):
        scoped = _scoped(rules, privacy)
        for i, a in enumerate(scoped):
            for b in scoped[i + 1:]:
                if b.min_completion < a.max_completion - GAP_TOLERANCE and a.min_completion < b.max_completion - GAP_TOLERANCE:
                    overlaps.append((privacy.value, a, b))
    return overlaps


@dataclass
class SeedingRule:
    """Per-category seeding limits. Seed times are hours; -1 disables a ceiling."""

    name: str
    privacy_type: PrivacyType = PrivacyType.BOTH
    max_ratio: float = -1.0
    min_seed_time: float = 0.0
    max_seed_time: float = -1.0
    delete_source_files: bool = False

    def matches_category(self, category: Optional[str]) -> bool:
        return bool(category) and self.name.lower() == str(category).lower()

    def is_violated(self, torrent: TorrentView) -> bool:
        hours = torrent.seeding_hours
        by_ratio = (
            self.max_ratio >= 0
            and torrent.ratio >= self.max_ratio
            and (self.min_seed_time <= 0 or hours >= self.min_seed_time)
        )
        by_time = self.max_seed_time >= 0 and hours >= self.max_seed_time
        return by_ratio or by_time


def seeding_rule_from_dict(raw: Dict[str, Any], idx: int = 0) -> SeedingRule:
    return SeedingRule(
        name=str(raw.get('name') or raw.get('category') or f'seeding-{idx + 1}'),
        privacy_type=_privacy(raw.get('privacy_type') or 'both'),
        max_ratio=to_float(raw.get('max_ratio'), -1.0),
        min_seed_time=max(0.0, to_float(raw.get('min_seed_time'), 0.0)),
        max_seed_time=to_float(raw.get('max_seed_time'), -1.0),
        delete_source_files=bool(raw.get('delete_source_files', False)),
    )
