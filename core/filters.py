from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Pattern

from core.models import FileEntry

REGEX_PREFIX = 'regex:'


@dataclass
class FilterDecision:
    # index -> unwanted (already-skipped files included)
    unwanted: dict = field(default_factory=dict)
    # indexes that still need a skip request at the client
    to_skip: List[int] = field(default_factory=list)
    all_files_blocked: bool = False

    @property
    def has_unwanted(self) -> bool:
        return any(self.unwanted.values())


def load_patterns_file(path: str) -> List[str]:
    if not path or not os.path.exists(path):
        return []
    out: List[str] = []
    with open(path, 'r', encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#'):
                out.append(line)
    return out


class ContentFilter:
    def __init__(
        self,
        patterns: Iterable[str],
        *,
        mode: str = 'blacklist',
        literal_match: str = 'exact',
    ) -> None:
        self.mode = 'whitelist' if str(mode).lower() == 'whitelist' else 'blacklist'
        self.literal_match = 'substring' if str(literal_match).lower() == 'substring' else 'exact'
        self.literals: List[str] = []
        self.regexes: List[Pattern[str]] = []
        for raw in patterns or []:
            pat = str(raw).strip()
            if not pat:
                continue
            if pat.lower().startswith(REGEX_PREFIX):
                expr = pat[len(REGEX_PREFIX):]
                try:
                    self.regexes.append(re.compile(expr, re.IGNORECASE))
                except re.error as e:
                    logging.warning(f'Content filter: invalid regex {expr!r} ignored: {e}')
                continue
            self.literals.append(pat.lower())

    @property
    def is_empty(self) -> bool:
        return not self.literals and not self.regexes

    def _literal_matches(self, pattern: str, name: str) -> bool:
        starts = pattern.startswith('*')
        ends = pattern.endswith('*') and len(pattern) > 1
        core = pattern.strip('*')
        if not core:
            return starts
        if starts and ends:
            return core in name
        if starts:
            return name.endswith(core)
        if ends:
            return name.startswith(core)
        if self.literal_match == 'substring':
            return core in name
        return name == core

    def matches(self, path: str) -> bool:
        name = os.path.basename(str(path).replace('\\', '/')).lower()
        if any(self._literal_matches(p, name) for p in self.literals):
            return True
        return any(rx.search(name) for rx in self.regexes)

    def is_unwanted(self, path: str) -> bool:
        matched = self.matches(path)
        return matched if self.mode == 'blacklist' else not matched

    def evaluate(self, files: List[FileEntry]) -> FilterDecision:
        decision = FilterDecision()
        if not files:
            return decision
        for entry in files:
            if entry.is_skipped:
                decision.unwanted[entry.index] = True
                continue
            unwanted = self.is_unwanted(entry.path)
            decision.unwanted[entry.index] = unwanted
            if unwanted:
                decision.to_skip.append(entry.index)
        decision.all_files_blocked = all(decision.unwanted.values())
        return decision


def build_content_filter(cfg: dict) -> Optional[ContentFilter]:
    if not cfg or not cfg.get('enabled'):
        return None
    patterns = list(cfg.get('patterns') or [])
    patterns.extend(load_patterns_file(cfg.get('patterns_path') or ''))
    return ContentFilter(
        patterns,
        mode=cfg.get('mode') or 'blacklist',
        literal_match=cfg.get('literal_match') or 'exact',
    )
