import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeClock:
    """Deterministic clock for streak and timestamp assertions."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, days: int = 0, hours: int = 0) -> None:
        self.now += timedelta(days=days, hours=hours)


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Fresh pool per test so connections never point at another test's file
    db.reset_pool(str(db_path))
    db.init()
    yield str(db_path)
    db._pool.close_all()


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 4, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def tracker(clock):
    from progress import ProgressTracker
    from progress_store import ProgressPersistence

    return ProgressTracker(
        "learner",
        persistence=ProgressPersistence("learner", enabled=False),
        clock=clock,
        tz=timezone.utc,
    )
