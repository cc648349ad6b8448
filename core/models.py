from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.utils import clamp_percent, normalize_hash, to_float, to_int


class Verdict(str, Enum):
    VIOLATION = 'violation'
    NO_VIOLATION = 'no_violation'
    NOT_APPLICABLE = 'not_applicable'


class StrikeType(str, Enum):
    STALLED = 'stalled'
    SLOW_SPEED = 'slow_speed'
    SLOW_TIME = 'slow_time'
    FAILED_IMPORT = 'failed_import'
    DOWNLOAD_BLOCKED = 'download_blocked'


class PrivacyType(str, Enum):
    PUBLIC = 'public'
    PRIVATE = 'private'
    BOTH = 'both'

    def includes(self, is_private: bool) -> bool:
        if self is PrivacyType.BOTH:
            return True
        return (self is PrivacyType.PRIVATE) == bool(is_private)


class JobType(str, Enum):
    QUEUE_CLEANER = 'queue_cleaner'
    DOWNLOAD_CLEANER = 'download_cleaner'


class JobRunStatus(str, Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'


# Raw client states (qBittorrent, Transmission, Deluge spellings) mapped to
# the canonical state vocabulary.
_STATE_ALIASES = {
    'downloading': 'downloading',
    'forceddl': 'downloading',
    'download': 'downloading',
    'stalleddl': 'stalled',
    'stalled': 'stalled',
    'metadl': 'metadata',
    'forcedmetadl': 'metadata',
    'metadata': 'metadata',
    'queueddl': 'queued',
    'queued': 'queued',
    'download_wait': 'queued',
    'pauseddl': 'paused',
    'stoppeddl': 'paused',
    'paused': 'paused',
    'stopped': 'paused',
    'checkingdl': 'checking',
    'checkingup': 'checking',
    'checkingresumedata': 'checking',
    'checking': 'checking',
    'check_wait': 'checking',
    'moving': 'checking',
    'uploading': 'seeding',
    'stalledup': 'seeding',
    'forcedup': 'seeding',
    'queuedup': 'seeding',
    'seeding': 'seeding',
    'seed': 'seeding',
    'seed_wait': 'seeding',
    'pausedup': 'completed',
    'stoppedup': 'completed',
    'completed': 'completed',
    'error': 'error',
    'missingfiles': 'error',
}


def normalize_state(raw: Any) -> str:
    if raw is None:
        return 'unknown'
    return _STATE_ALIASES.get(str(raw).strip().lower(), 'unknown')


@dataclass
class FileEntry:
    index: int
    path: str
    size: int = 0
    priority: int = 1
    completed_chunks: int = 0

    @property
    def is_skipped(self) -> bool:
        return self.priority == 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileEntry':
        return cls(
            index=to_int(data.get('index'), 0),
            path=str(data.get('path') or data.get('name') or ''),
            size=to_int(data.get('size'), 0),
            priority=to_int(data.get('priority'), 1),
            completed_chunks=to_int(data.get('completed_chunks', data.get('completedChunks')), 0),
        )


@dataclass
class TorrentView:
    hash: str
    name: str = ''
    category: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    trackers: List[str] = field(default_factory=list)
    is_private: bool = False
    size: int = 0
    downloaded: int = 0
    download_speed: int = 0
    ratio: float = 0.0
    eta: int = 0
    seeding_time: int = 0
    save_path: str = ''
    state: str = 'unknown'
    files: List[FileEntry] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.hash = normalize_hash(self.hash)

    @property
    def completion_percentage(self) -> float:
        if self.size <= 0:
            return 0.0
        return clamp_percent(self.downloaded / self.size * 100.0)

    @property
    def is_downloading(self) -> bool:
        return self.state in ('downloading', 'stalled', 'metadata')

    @property
    def is_stalled(self) -> bool:
        return self.state in ('stalled', 'metadata')

    @property
    def is_seeding(self) -> bool:
        return self.state in ('seeding', 'completed')

    @property
    def seeding_hours(self) -> float:
        return self.seeding_time / 3600.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TorrentView':
        files = [
            f if isinstance(f, FileEntry) else FileEntry.from_dict(f)
            for f in (data.get('files') or [])
        ]
        tags = data.get('tags') or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(',') if t.strip()]
        return cls(
            hash=str(data.get('hash') or ''),
            name=str(data.get('name') or ''),
            category=data.get('category'),
            tags=list(tags),
            trackers=list(data.get('trackers') or []),
            is_private=bool(data.get('is_private', data.get('private', False))),
            size=to_int(data.get('size'), 0),
            downloaded=to_int(data.get('downloaded'), 0),
            download_speed=to_int(data.get('download_speed', data.get('dlspeed')), 0),
            ratio=to_float(data.get('ratio'), 0.0),
            eta=to_int(data.get('eta'), 0),
            seeding_time=to_int(data.get('seeding_time'), 0),
            save_path=str(data.get('save_path') or ''),
            state=normalize_state(data.get('state')),
            files=files,
        )


@dataclass
class QueueRecord:
    id: int
    download_id: str
    title: str = ''
    status: str = ''
    protocol: str = 'torrent'
    tracked_download_status: str = ''
    tracked_download_state: str = ''
    status_messages: List[str] = field(default_factory=list)
    item_ids: List[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.download_id = normalize_hash(self.download_id)

    @property
    def is_torrent(self) -> bool:
        return str(self.protocol or '').lower() == 'torrent'

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QueueRecord':
        messages: List[str] = []
        for msg in data.get('statusMessages') or data.get('status_messages') or []:
            if isinstance(msg, dict):
                messages.append(str(msg.get('title') or ''))
                messages.extend(str(m) for m in (msg.get('messages') or []))
            else:
                messages.append(str(msg))
        item_ids = data.get('item_ids')
        if item_ids is None:
            item_ids = [
                data[k] for k in ('episodeId', 'movieId', 'albumId', 'bookId') if data.get(k) is not None
            ]
        return cls(
            id=to_int(data.get('id'), 0),
            download_id=str(data.get('downloadId') or data.get('download_id') or ''),
            title=str(data.get('title') or ''),
            status=str(data.get('status') or ''),
            protocol=str(data.get('protocol') or 'torrent'),
            tracked_download_status=str(
                data.get('trackedDownloadStatus') or data.get('tracked_download_status') or ''
            ),
            tracked_download_state=str(
                data.get('trackedDownloadState') or data.get('tracked_download_state') or ''
            ),
            status_messages=[m for m in messages if m],
            item_ids=[to_int(i, 0) for i in item_ids],
        )


@dataclass
class QueuePage:
    records: List[QueueRecord]
    total_records: int
