from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core.models import StrikeType, TorrentView, Verdict
from core.rules import SlowRule, StallRule


@dataclass
class Evaluation:
    verdict: Verdict
    strike_type: Optional[StrikeType] = None
    reset: bool = False
    # slow rules: speed currently under the threshold (caller tracks since-when)
    below_threshold: bool = False
    reason: str = ''

    @property
    def is_violation(self) -> bool:
        return self.verdict is Verdict.VIOLATION


def _not_applicable(reason: str) -> Evaluation:
    return Evaluation(Verdict.NOT_APPLICABLE, reason=reason)


def evaluate_stall(torrent: TorrentView, rule: StallRule, previous_bytes: Optional[int]) -> Evaluation:
    if torrent.completion_percentage >= 100.0:
        return _not_applicable('complete')
    if not torrent.is_downloading:
        return _not_applicable(f'state={torrent.state}')

    delta = torrent.downloaded - previous_bytes if previous_bytes is not None else 0
    # a trickle below the minimum does not count as progress
    if delta > 0 and delta >= rule.minimum_progress_bytes:
        return Evaluation(
            Verdict.NO_VIOLATION, reset=rule.reset_strikes_on_progress, reason=f'progressed {delta} bytes'
        )

    if torrent.is_stalled:
        return Evaluation(Verdict.VIOLATION, StrikeType.STALLED, reason=f'client reports {torrent.state}')
    if previous_bytes is None:
        return Evaluation(Verdict.NO_VIOLATION, reason='first observation')
    if delta > 0:
        return Evaluation(
            Verdict.VIOLATION,
            StrikeType.STALLED,
            reason=f'progressed {delta} bytes, below {rule.minimum_progress_bytes}',
        )
    return Evaluation(Verdict.VIOLATION, StrikeType.STALLED, reason='no progress since last check')


def evaluate_slow(
    torrent: TorrentView,
    rule: SlowRule,
    below_since: Optional[float],
    now: float,
) -> Evaluation:
    """Slow verdict for one torrent.

    ``below_since`` is the first time this hash was seen under the rule's
    speed threshold, as tracked by the caller. Speed violations only count
    once the torrent has stayed below for ``min_sample_minutes``.
    """
    if torrent.completion_percentage >= 100.0:
        return _not_applicable('complete')
    if not torrent.is_downloading:
        return _not_applicable(f'state={torrent.state}')
    if torrent.download_speed <= 0 and not torrent.is_stalled:
        return _not_applicable('no declared speed')
    if not rule.min_speed and not rule.max_time_hours:
        return _not_applicable('rule has no thresholds')

    below = bool(rule.min_speed) and torrent.download_speed < rule.min_speed
    speed_violation = False
    if below:
        started = below_since if below_since is not None else now
        speed_violation = (now - started) >= rule.min_sample_minutes * 60.0

    time_violation = bool(rule.max_time_hours) and torrent.eta > rule.max_time_hours * 3600.0

    if speed_violation:
        return Evaluation(
            Verdict.VIOLATION,
            StrikeType.SLOW_SPEED,
            below_threshold=True,
            reason=f'speed {torrent.download_speed}B/s below {rule.min_speed}B/s',
        )
    if time_violation:
        return Evaluation(
            Verdict.VIOLATION,
            StrikeType.SLOW_TIME,
            below_threshold=below,
            reason=f'eta {torrent.eta}s above {rule.max_time_hours}h',
        )
    reset = bool(rule.min_speed) and not below and rule.reset_strikes_on_progress
    return Evaluation(Verdict.NO_VIOLATION, reset=reset, below_threshold=below, reason='within limits')
