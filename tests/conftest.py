import datetime

import pytest


class FakeClock:
    def __init__(self, start: datetime.datetime) -> None:
        self.now = start

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += datetime.timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(
        datetime.datetime(2024, 3, 10, 9, 0, 0, tzinfo=datetime.timezone.utc)
    )


@pytest.fixture
def db_file(tmp_path):
    return str(tmp_path / "workout.db")
