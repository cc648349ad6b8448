from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Tuple

from core.models import StrikeType
from storage.strikes import StrikeOutcome, StrikeStore


class StrikeTracker:
    """Turns repeated violations into removal decisions.

    Writes for one hash are serialized with a per-hash lock; every
    strike-and-check runs in a single store transaction.
    """

    def __init__(self, store: StrikeStore, event_bus: Any = None) -> None:
        self.store = store
        self.event_bus = event_bus
        # hash -> (lock, number of tasks holding or waiting on it)
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _lock(self, download_id: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(download_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[download_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[download_id]
            if users <= 1:
                del self._locks[download_id]
            else:
                self._locks[download_id] = (lock, users - 1)

    async def record_strike_and_check_limit(
        self,
        download_id: str,
        title: str,
        strike_type: StrikeType,
        max_strikes: int,
        job_run_id: str,
        last_downloaded_bytes: Optional[int] = None,
    ) -> bool:
        if max_strikes <= 0:
            return False
        async with self._lock(download_id):
            outcome: StrikeOutcome = self.store.record_strike(
                download_id, title, strike_type.value, job_run_id, max_strikes, last_downloaded_bytes
            )
        if not outcome.recorded:
            logging.debug(f'Strike for {download_id} ({strike_type.value}) already recorded in run {job_run_id}')
            return outcome.condemned

        logging.info(
            f'Strike {outcome.count}/{max_strikes} ({strike_type.value}) for {title or download_id}'
        )
        if outcome.returning:
            logging.info(f'Item {title or download_id} is back in the queue after removal')
        await self._publish(
            'strike',
            f'Item {title} received a {strike_type.value} strike ({outcome.count}/{max_strikes})',
            'warning' if outcome.condemned else 'info',
            {
                'hash': download_id,
                'title': title,
                'strike_type': strike_type.value,
                'count': outcome.count,
                'max_strikes': max_strikes,
                'job_run_id': job_run_id,
            },
            strike_id=outcome.strike_id,
        )
        if outcome.count > max_strikes:
            logging.warning(
                f'Blocked item keeps coming back: {title or download_id} '
                f'({strike_type.value} {outcome.count}/{max_strikes})'
            )
            await self._publish(
                'recurring_item',
                f'Blocked item keeps coming back: {title}',
                'important',
                {'hash': download_id, 'title': title, 'strike_type': strike_type.value, 'count': outcome.count},
            )
        return outcome.condemned

    async def reset_strikes(self, download_id: str, strike_type: StrikeType, job_run_id: str) -> int:
        async with self._lock(download_id):
            cleared = self.store.reset_strikes(download_id, strike_type.value, job_run_id)
        if cleared:
            logging.info(f'Reset {cleared} {strike_type.value} strike(s) for {download_id}')
            await self._publish(
                'strike_reset',
                f'Cleared {cleared} {strike_type.value} strike(s)',
                'info',
                {'hash': download_id, 'strike_type': strike_type.value, 'cleared': cleared},
            )
        return cleared

    def live_count(self, download_id: str, strike_type: StrikeType) -> int:
        return self.store.live_strike_count(download_id, strike_type.value)

    # Observation state consumed by the rule evaluator.

    def last_seen_bytes(self, download_id: str, strike_type: StrikeType) -> Optional[int]:
        return self.store.get_observation(download_id, strike_type.value)[0]

    def below_threshold_since(self, download_id: str) -> Optional[float]:
        return self.store.get_observation(download_id, StrikeType.SLOW_SPEED.value)[1]

    def observe(
        self,
        download_id: str,
        strike_type: StrikeType,
        downloaded: Optional[int],
        below_since: Optional[float] = None,
    ) -> None:
        self.store.set_observation(download_id, strike_type.value, downloaded, below_since)

    def observation(self, download_id: str, strike_type: StrikeType) -> Tuple[Optional[int], Optional[float]]:
        return self.store.get_observation(download_id, strike_type.value)

    async def mark_removed(self, download_id: str) -> None:
        async with self._lock(download_id):
            self.store.mark_removed(download_id)

    def purge(self) -> Tuple[int, int]:
        return self.store.delete_all_strikes_and_orphaned_items()

    async def _publish(self, event_type: str, message: str, severity: str, data: Dict[str, Any], strike_id=None) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(event_type, message, severity, data, strike_id=strike_id)
