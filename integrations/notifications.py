from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List

import aiohttp

# Batched lines per destination, drained by flush()
notify_queues: Dict[str, List[str]] = {}
notify_dests: Dict[str, Dict[str, Any]] = {}

VALID_TYPES = {'discord', 'slack', 'generic'}
DEFAULT_TEMPLATE = '[{event}] {message}'

DISCORD_LIMIT = 1900
SLACK_LIMIT = 38000


def destinations(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    notif = config.get('notifications') if isinstance(config.get('notifications'), dict) else {}
    dests = notif.get('destinations') if isinstance(notif.get('destinations'), list) else []
    return [
        d for d in dests
        if isinstance(d, dict) and d.get('url') and str(d.get('type') or 'generic').lower() in VALID_TYPES
    ]


def wants_event(dest: Dict[str, Any], event_type: str) -> bool:
    events = dest.get('events')
    if not isinstance(events, list) or not events:
        return True
    return '*' in events or event_type in events


class _Fields(dict):
    def __missing__(self, key: str) -> str:
        return ''


def format_line(dest: Dict[str, Any], event_type: str, message: str, fields: Dict[str, Any]) -> str:
    template = dest.get('template') if isinstance(dest.get('template'), str) and dest.get('template') else DEFAULT_TEMPLATE
    values = _Fields({k: v for k, v in fields.items() if v is not None})
    values['event'] = event_type
    values['message'] = message
    if bool(dest.get('raw_json', False)):
        # str.format would trip over the JSON braces
        line = template
        for key, val in values.items():
            line = line.replace('{' + key + '}', str(val))
        return line
    try:
        return template.format_map(values)
    except (ValueError, IndexError, AttributeError) as e:
        logging.debug(f'Notify: bad template {template!r}: {e}')
        return DEFAULT_TEMPLATE.format(event=event_type, message=message)


def _body(dest: Dict[str, Any], text: str, dry_run: bool, batched: bool) -> Dict[str, Any]:
    typ = str(dest.get('type') or 'generic').lower()
    if dry_run:
        text = ('[DRY RUN]\n' if batched else '[DRY RUN] ') + text
    if typ == 'discord':
        if len(text) > DISCORD_LIMIT:
            text = text[:DISCORD_LIMIT] + '\n...'
        return {'content': text}
    if typ == 'slack':
        if len(text) > SLACK_LIMIT:
            text = text[:SLACK_LIMIT] + '\n...'
        return {'text': text}
    return {'message': text}


async def _post(session: aiohttp.ClientSession, dest: Dict[str, Any], body: Dict[str, Any], debug_logging: bool) -> None:
    headers = dest.get('headers') if isinstance(dest.get('headers'), dict) else None
    timeout = aiohttp.ClientTimeout(total=5)
    typ = str(dest.get('type') or 'generic').lower()
    try:
        async with session.post(dest['url'], json=body, headers=headers, timeout=timeout) as resp:
            if resp.status >= 400:
                logging.warning(f'Notify({typ}): destination returned HTTP {resp.status}')
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logging.warning(f'Notify({typ}): send failed: {e}')
    else:
        if debug_logging:
            logging.debug(f'Notify({typ}): delivered to {dest.get("name") or dest["url"]}')


async def send_immediate(
    session: aiohttp.ClientSession,
    dest: Dict[str, Any],
    line: str,
    dry_run: bool,
    debug_logging: bool,
) -> None:
    if bool(dest.get('raw_json', False)) and str(dest.get('type') or 'generic').lower() == 'generic':
        try:
            doc = json.loads(line)
        except ValueError:
            doc = {'message': line}
        if dry_run and isinstance(doc, dict):
            doc.setdefault('dryRun', True)
        await _post(session, dest, doc, debug_logging)
        return
    await _post(session, dest, _body(dest, line, dry_run, batched=False), debug_logging)


def enqueue(dest: Dict[str, Any], line: str) -> None:
    key = str(dest.get('name') or dest.get('url'))
    notify_dests[key] = dest
    notify_queues.setdefault(key, []).append(line)


async def handle(
    session: aiohttp.ClientSession,
    event_type: str,
    message: str,
    fields: Dict[str, Any],
    config: Dict[str, Any],
    dry_run: bool,
    debug_logging: bool,
) -> None:
    for dest in destinations(config):
        if not wants_event(dest, event_type):
            continue
        line = format_line(dest, event_type, message, fields)
        if bool(dest.get('batch', False)):
            enqueue(dest, line)
        else:
            await send_immediate(session, dest, line, dry_run, debug_logging)


async def flush(
    session: aiohttp.ClientSession,
    config: Dict[str, Any],
    dry_run: bool,
    debug_logging: bool,
) -> None:
    for key, lines in list(notify_queues.items()):
        if not lines:
            continue
        dest = notify_dests.get(key) or {}
        try:
            if bool(dest.get('raw_json', False)) and str(dest.get('type') or 'generic').lower() == 'generic':
                events = []
                for ln in lines:
                    try:
                        events.append(json.loads(ln))
                    except ValueError:
                        events.append({'message': ln})
                body: Dict[str, Any] = {'events': events}
                if dry_run:
                    body['dryRun'] = True
            else:
                body = _body(dest, '\n'.join(lines), dry_run, batched=True)
            await _post(session, dest, body, debug_logging)
        finally:
            lines.clear()
