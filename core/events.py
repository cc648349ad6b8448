from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import aiohttp

# Events that go out to notification destinations as well as the event log.
NOTIFY_EVENTS = {
    'queue_item_deleted',
    'download_cleaned',
    'category_changed',
    'recurring_item',
    'job_failed',
}


class EventBus:
    def __init__(
        self,
        config: Dict[str, Any],
        *,
        structured_logs: bool,
        dry_run: bool,
        debug_logging: bool,
        logger,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config
        self.structured_logs = structured_logs
        self.dry_run = dry_run
        self.debug_logging = debug_logging
        self.logger = logger
        self.session = session

    def log(self, event: str, **fields) -> None:
        payload = {"event": event, **fields}
        try:
            if self.structured_logs:
                self.logger.info(json.dumps(payload, ensure_ascii=False, default=str))
            else:
                self.logger.info(f"{event}: {fields}")
        except Exception:
            self.logger.info(str(payload))

    async def publish(
        self,
        event_type: str,
        message: str,
        severity: str = 'info',
        data: Optional[Dict[str, Any]] = None,
        strike_id: Optional[int] = None,
        *,
        dry_run: Optional[bool] = None,
    ) -> None:
        dry = self.dry_run if dry_run is None else dry_run
        fields: Dict[str, Any] = {'message': message, 'severity': severity}
        if data:
            fields.update(data)
        if strike_id is not None:
            fields['strike_id'] = strike_id
        if dry:
            fields['dry_run'] = True
        self.log(event_type, **fields)

        if event_type not in NOTIFY_EVENTS or self.session is None:
            return
        try:
            from integrations import notifications as notif

            await notif.handle(
                self.session, event_type, message, fields, self.config, dry, self.debug_logging
            )
        except Exception as e:
            logging.warning(f"Notify: {event_type} delivery error: {e}")

    async def flush(self) -> None:
        if self.session is None:
            return
        try:
            from integrations import notifications as notif

            await notif.flush(self.session, self.config, self.dry_run, self.debug_logging)
        except Exception as e:
            logging.warning(f"Notify: flush error: {e}")
