"""Analysis run records keyed by run id, optionally mirrored to a JSON file."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

from app.schemas import AnalysisRunRecord, RunStatus
from settings import get_settings

logger = logging.getLogger(__name__)

_UNFINISHED = (RunStatus.queued, RunStatus.running)
INTERRUPTED_MESSAGE = "Run was interrupted by a service restart before it finished."


class AnalysisRunTable:
    """Thread-safe run records; every read hands out a deep copy.

    Records restored from disk that were still queued or running belong to a
    worker pool that no longer exists, so they are loaded as failed.
    """

    def __init__(self, name: str, persistence_path: Optional[Path] = None) -> None:
        self.name = name
        self.persistence_path = persistence_path
        self._runs: Dict[str, AnalysisRunRecord] = {}
        self._lock = Lock()
        if persistence_path:
            persistence_path.parent.mkdir(parents=True, exist_ok=True)
            self._restore()

    def put_item(self, item: AnalysisRunRecord) -> None:
        with self._lock:
            self._runs[item.run_id] = item.model_copy(deep=True)
            self._write()

    def get_item(self, run_id: str) -> Optional[AnalysisRunRecord]:
        with self._lock:
            record = self._runs.get(run_id)
            return record.model_copy(deep=True) if record is not None else None

    def scan(
        self, status: Optional[RunStatus] = None, limit: Optional[int] = None
    ) -> List[AnalysisRunRecord]:
        """Runs newest first by request time, optionally filtered by status."""
        with self._lock:
            records = [
                record
                for record in self._runs.values()
                if status is None or record.status == status
            ]
            records.sort(key=lambda record: (record.requested_at, record.run_id), reverse=True)
            if limit is not None:
                records = records[:limit]
            return [record.model_copy(deep=True) for record in records]

    def _write(self) -> None:
        if not self.persistence_path:
            return
        payload = {run_id: record.model_dump(mode="json") for run_id, record in self._runs.items()}
        self.persistence_path.write_text(json.dumps(payload, indent=2, sort_keys=True))

    def _restore(self) -> None:
        if not self.persistence_path.exists():
            return
        try:
            data = json.loads(self.persistence_path.read_text() or "{}")
        except (OSError, json.JSONDecodeError):
            logger.warning(
                "Ignoring unreadable run table file",
                extra={"reason": str(self.persistence_path)},
            )
            return

        interrupted = 0
        restored_at = datetime.now(timezone.utc)
        for run_id, payload in data.items():
            record = AnalysisRunRecord.model_validate(payload)
            if record.status in _UNFINISHED:
                record = record.model_copy(
                    update={
                        "status": RunStatus.failed,
                        "finished_at": restored_at,
                        "error": INTERRUPTED_MESSAGE,
                    }
                )
                interrupted += 1
            self._runs[run_id] = record
        if interrupted:
            logger.warning(
                "Marked interrupted runs as failed",
                extra={"skipped_count": interrupted},
            )
            self._write()


@lru_cache
def build_default_run_table(
    name: Optional[str] = None,
    path: Optional[str] = None,
) -> AnalysisRunTable:
    settings = get_settings()
    table_name = settings.run_table_name if name is None else name
    table_path = settings.run_table_persistence_path if path is None else path
    persistence = Path(table_path) if table_path else None
    return AnalysisRunTable(name=table_name, persistence_path=persistence)
