import threading
from datetime import datetime, timedelta, timezone

import pytest

from datastore.snapshot_history import SnapshotHistory
from models.records import AnalysisSnapshot

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _snapshot(index: int) -> AnalysisSnapshot:
    start = T0 + timedelta(hours=index)
    return AnalysisSnapshot(
        run_id=f"run-{index}",
        run_timestamp=start + timedelta(hours=1),
        window_start=start,
        window_end=start + timedelta(hours=1),
        events=(),
        efficiency_estimate=1.0,
        scored_station_count=1,
    )


def test_history_keeps_most_recent_snapshots_oldest_first() -> None:
    history = SnapshotHistory(limit=3)
    assert history.latest() is None

    for index in range(5):
        history.append(_snapshot(index))

    assert len(history) == 3
    assert [s.run_id for s in history.recent()] == ["run-2", "run-3", "run-4"]
    assert [s.run_id for s in history.recent(2)] == ["run-3", "run-4"]
    assert history.recent(0) == ()
    assert history.latest().run_id == "run-4"
    assert history.counts() == (0, 0, 0)


def test_history_limit_must_be_positive() -> None:
    with pytest.raises(ValueError):
        SnapshotHistory(limit=0)


def test_readers_never_see_partial_history() -> None:
    history = SnapshotHistory(limit=50)
    observed = []

    def writer() -> None:
        for index in range(300):
            history.append(_snapshot(index))

    def reader() -> None:
        for _ in range(300):
            ids = [int(s.run_id.split("-")[1]) for s in history.recent()]
            observed.append(ids)

    threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(history) == 50
    for ids in observed:
        assert len(ids) <= 50
        if ids:
            assert ids == list(range(ids[0], ids[0] + len(ids)))
