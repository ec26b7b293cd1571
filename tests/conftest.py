"""Shared fixtures: AtCoder history rows shaped like the real API output."""

import pytest

from dashboard import parse_history


def history_row(end_time, new_rating, performance=None, is_rated=True, old_rating=0, contest="abc001"):
    return {
        "IsRated": is_rated,
        "Place": 100,
        "OldRating": old_rating,
        "NewRating": new_rating,
        "Performance": new_rating if performance is None else performance,
        "InnerPerformance": new_rating if performance is None else performance,
        "ContestScreenName": f"{contest}.contest.atcoder.jp",
        "ContestName": f"AtCoder Beginner Contest {contest[3:]}",
        "ContestNameEn": "",
        "EndTime": end_time,
    }


@pytest.fixture
def alice_rows():
    return [
        history_row("2023-01-01T22:40:00+09:00", 1200, performance=1500, contest="abc280"),
        history_row("2023-06-01T22:40:00+09:00", 1400, performance=1700, old_rating=1200, contest="abc300"),
    ]


@pytest.fixture
def alice(alice_rows):
    return parse_history(alice_rows)


@pytest.fixture
def bob():
    return parse_history(
        [
            history_row("2022-12-30T22:40:00+09:00", 800, performance=900, contest="abc279"),
            history_row("2023-01-01T22:40:00+09:00", 850, performance=1000, old_rating=800, contest="abc280"),
            history_row("2023-03-04T22:40:00+09:00", 850, is_rated=False, old_rating=850, contest="arc150"),
        ]
    )
