"""Bounded history of analysis snapshots."""

from __future__ import annotations

from threading import Lock
from typing import Optional, Tuple

from models.records import AnalysisSnapshot


class SnapshotHistory:
    """Ring of the most recent snapshots, oldest first.

    Appends build a new tuple and swap the reference, so readers always see
    either the whole pre-append or the whole post-append history.
    """

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("History limit must be positive.")
        self.limit = limit
        self._snapshots: Tuple[AnalysisSnapshot, ...] = ()
        self._write_lock = Lock()

    def __len__(self) -> int:
        return len(self._snapshots)

    def append(self, snapshot: AnalysisSnapshot) -> None:
        with self._write_lock:
            self._snapshots = (*self._snapshots, snapshot)[-self.limit :]

    def latest(self) -> Optional[AnalysisSnapshot]:
        snapshots = self._snapshots
        return snapshots[-1] if snapshots else None

    def recent(self, limit: Optional[int] = None) -> Tuple[AnalysisSnapshot, ...]:
        snapshots = self._snapshots
        if limit is None:
            return snapshots
        if limit < 1:
            return ()
        return snapshots[-limit:]

    def counts(self) -> Tuple[int, ...]:
        """Per-period bottleneck counts, oldest first."""
        return tuple(snapshot.bottleneck_count for snapshot in self._snapshots)
