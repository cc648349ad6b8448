"""Adapter boundary for arr managers and torrent clients.

Concrete backends live outside this package. They subclass ``ArrClient`` or
``DownloadClient`` and are referenced from the config as
``adapter: "package.module:ClassName"`` with ``options`` passed as keyword
arguments to the constructor.
"""
from __future__ import annotations

import asyncio
import importlib
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, Iterable, List, Optional, TypeVar

from core.models import FileEntry, QueuePage, TorrentView


class AdapterError(Exception):
    pass


class ArrClient:
    async def get_queue_page(self, page: int, page_size: int) -> QueuePage:
        raise NotImplementedError

    async def remove_from_queue(self, queue_record_id: int, remove_from_client: bool) -> None:
        raise NotImplementedError

    async def trigger_search(self, item_ids: List[int]) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class DownloadClient:
    async def list_torrents(self, hashes: Optional[Iterable[str]] = None) -> List[TorrentView]:
        raise NotImplementedError

    async def get_files(self, torrent_hash: str) -> List[FileEntry]:
        raise NotImplementedError

    async def set_file_priority(self, torrent_hash: str, file_index: int, skip: bool) -> None:
        raise NotImplementedError

    async def delete_torrent(self, torrent_hash: str, delete_files: bool) -> None:
        raise NotImplementedError

    async def change_category(self, torrent_hash: str, category: str) -> None:
        raise NotImplementedError

    async def add_tag(self, torrent_hash: str, tag: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


@dataclass
class ArrInstance:
    name: str
    client: ArrClient
    kind: str = 'arr'


@dataclass
class DownloadClientInstance:
    name: str
    client: DownloadClient


def load_adapter(ref: str, options: Optional[Dict[str, Any]] = None) -> Any:
    module_name, sep, attr = str(ref or '').partition(':')
    if not sep or not module_name or not attr:
        raise AdapterError(f"adapter reference must look like 'module:Class', got {ref!r}")
    try:
        module = importlib.import_module(module_name)
        cls = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise AdapterError(f'cannot load adapter {ref!r}: {e}') from e
    return cls(**(options or {}))


T = TypeVar('T')


async def call(coro: Awaitable[T], timeout: float, what: str) -> T:
    """Await an adapter call with a timeout; failures surface as AdapterError."""
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise AdapterError(f'{what}: timed out after {timeout}s') from e
    except AdapterError:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise AdapterError(f'{what}: {e}') from e
