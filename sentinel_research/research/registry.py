"""
Source Registry and Evidence Store for one research run.

The registry is a per-URL state machine::

    QUEUED -> PROCESSING -> COMPLETED
                         -> FAILED

Every transition is a compare-and-set. All mutations happen on the event
loop thread without an intervening ``await``, so a check-and-set on one URL
can never interleave with another task's check-and-set on the same URL.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sentinel_research.models import (
    EvidenceRecord, FailedSource, SourceEntry, SourceReference, SourceStatus,
)
from sentinel_research.utils import format_source_title

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    SourceStatus.QUEUED: {SourceStatus.PROCESSING},
    SourceStatus.PROCESSING: {SourceStatus.COMPLETED, SourceStatus.FAILED},
    SourceStatus.COMPLETED: set(),
    SourceStatus.FAILED: set(),
}


class InvalidTransitionError(RuntimeError):
    pass


class SourceRegistry:
    """Discovered sources keyed by exact URL string, in first-discovery order."""

    def __init__(self):
        self._entries: Dict[str, SourceEntry] = {}
        self._failed: Dict[str, FailedSource] = {}

    def __contains__(self, url: str) -> bool:
        return url in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, url: str) -> Optional[SourceEntry]:
        return self._entries.get(url)

    def register(self, url: str, title: str = "", summary: str = "") -> bool:
        """Add ``url`` as QUEUED if it has never been seen. Returns True when added."""
        if not url or url in self._entries:
            return False
        self._entries[url] = SourceEntry(url=url, title=title, summary=summary)
        return True

    def claim(self, urls: Iterable[str]) -> List[str]:
        """Register every unseen URL and return them, de-duplicated, in input order."""
        return [url for url in urls if self.register(url)]

    def queued(self) -> List[str]:
        return [e.url for e in self._entries.values() if e.status == SourceStatus.QUEUED]

    def transition(self, url: str, expected: SourceStatus, new: SourceStatus) -> bool:
        """Move ``url`` from ``expected`` to ``new``.

        Returns False (and changes nothing) if the entry is not currently in
        ``expected``. Raises InvalidTransitionError for edges outside the
        state machine.
        """
        if new not in _ALLOWED_TRANSITIONS[expected]:
            raise InvalidTransitionError(f"{expected.value} -> {new.value} is not a valid transition")
        entry = self._entries.get(url)
        if entry is None or entry.status != expected:
            return False
        entry.status = new
        return True

    def complete(self, url: str, title: str, summary: str) -> bool:
        if not self.transition(url, SourceStatus.PROCESSING, SourceStatus.COMPLETED):
            return False
        entry = self._entries[url]
        entry.title = title or entry.title or format_source_title(url)
        entry.summary = summary or entry.summary
        return True

    def fail(self, url: str, reason: str, is_high_value: bool = True) -> bool:
        if not self.transition(url, SourceStatus.PROCESSING, SourceStatus.FAILED):
            return False
        self._entries[url].last_error = reason
        if url not in self._failed:
            self._failed[url] = FailedSource(url=url, reason=reason, is_high_value=is_high_value)
        return True

    def entries(self) -> List[SourceEntry]:
        return list(self._entries.values())

    def sources(self) -> List[SourceReference]:
        """Every non-failed entry as a title/url/summary reference."""
        return [
            SourceReference(url=e.url, title=e.title or format_source_title(e.url), summary=e.summary)
            for e in self._entries.values()
            if e.status != SourceStatus.FAILED
        ]

    def failed(self) -> List[FailedSource]:
        return list(self._failed.values())


class EvidenceStore:
    """Evidence Records for completed sources. Repeated records merge facts."""

    def __init__(self, max_facts: int):
        self.max_facts = max_facts
        self._records: Dict[str, EvidenceRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, url: str) -> Optional[EvidenceRecord]:
        return self._records.get(url)

    def record(self, url: str, title: str, summary: str, facts: List[str]) -> EvidenceRecord:
        existing = self._records.get(url)
        if existing is None:
            existing = EvidenceRecord(url=url, title=title, summary=summary)
            self._records[url] = existing
        else:
            existing.title = existing.title or title
            existing.summary = existing.summary or summary
        existing.merge_facts(facts, self.max_facts)
        return existing

    def records(self) -> List[EvidenceRecord]:
        return list(self._records.values())
