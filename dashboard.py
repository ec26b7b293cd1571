"""
Dashboard state, fetch cycle and chart derivations.

Everything here is independent of Flask so it can be driven by the routes in
app.py or by tests with a fake fetcher:

- ContestRecord       -> one row of https://atcoder.jp/users/{user}/history/json
- DashboardState      -> form inputs, fetched data, error, loading flag
- ProxyFetcher        -> default per-user fetcher going through /api/users/<username>
- build_* / summarize -> pure derivations recomputed on every render
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from concurrent.futures import ALL_COMPLETED, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, List, Optional, Union

import requests
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

logger = logging.getLogger(__name__)

EMPTY_INPUT_ERROR = "Please enter at least one username."
FETCH_FAILED_ERROR = "Failed to fetch data"
UNEXPECTED_ERROR = "An unexpected error occurred"

# Displayed in place of a number when a statistic has no value.
NO_DATA = "no data"
INSUFFICIENT_DATA = "insufficient data"

CHART_FIELDS = ("new_rating", "performance")


class FetchError(RuntimeError):
    pass


# -----------------------------
# Data model
# -----------------------------
class ContestRecord(BaseModel):
    """One contest participation as returned by the AtCoder history API."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    is_rated: bool = Field(alias="IsRated")
    place: int = Field(alias="Place")
    old_rating: int = Field(alias="OldRating")
    new_rating: int = Field(alias="NewRating")
    performance: int = Field(alias="Performance")
    inner_performance: int = Field(alias="InnerPerformance")
    contest_screen_name: str = Field(alias="ContestScreenName")
    contest_name: str = Field(alias="ContestName")
    contest_name_en: str = Field(default="", alias="ContestNameEn")
    end_time: dt.datetime = Field(alias="EndTime")

    @property
    def end_date(self) -> dt.date:
        # Calendar day in the offset AtCoder reports (JST).
        return self.end_time.date()


_HISTORY_ADAPTER = TypeAdapter(List[ContestRecord])

UserDataset = Dict[str, List[ContestRecord]]
Fetcher = Callable[[str], List[ContestRecord]]


def parse_history(payload: Any) -> List[ContestRecord]:
    """Validate a decoded history body. Raises pydantic.ValidationError on drift."""
    return _HISTORY_ADAPTER.validate_python(payload)


# -----------------------------
# Fetching through the proxy
# -----------------------------
class ProxyFetcher:
    """Fetches one user's history from the same-origin proxy endpoint."""

    def __init__(self, base_url: str, timeout: Optional[float] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def url_for(self, username: str) -> str:
        return f"{self.base_url}/api/users/{requests.utils.quote(username, safe='')}"

    def __call__(self, username: str) -> List[ContestRecord]:
        # Timestamp parameter + no-cache headers so no layer serves a stale copy.
        params = {"t": int(time.time() * 1000)}
        headers = {"Cache-Control": "no-cache", "Pragma": "no-cache"}
        try:
            resp = requests.get(self.url_for(username), params=params, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("Proxy request for %s failed: %s", username, e)
            raise FetchError(FETCH_FAILED_ERROR) from e

        if not resp.ok:
            logger.warning("Proxy returned %s for %s", resp.status_code, username)
            raise FetchError(FETCH_FAILED_ERROR)

        try:
            return parse_history(resp.json())
        except ValueError as e:
            # ValidationError is a ValueError, as is a JSON decode failure.
            logger.error("Unexpected history payload for %s: %s", username, e)
            raise FetchError(f"Unexpected contest history format for '{username}'") from e


# -----------------------------
# View state
# -----------------------------
def clean_usernames(usernames: List[str]) -> List[str]:
    """Trimmed, non-blank usernames in input order, each once."""
    out: List[str] = []
    for name in usernames:
        name = (name or "").strip()
        if name and name not in out:
            out.append(name)
    return out


class DashboardState:
    """Form inputs and fetched data owned by one dashboard render."""

    def __init__(self) -> None:
        self.usernames: List[str] = [""]
        self.data: UserDataset = {}
        self.error: Optional[str] = None
        # True only while fetch_data is running.
        self.loading: bool = False

    def set_username(self, index: int, value: str) -> None:
        """Write one input slot; a non-blank last slot grows the form by one blank input."""
        if index == len(self.usernames):
            self.usernames.append(value)
        elif 0 <= index < len(self.usernames):
            self.usernames[index] = value
        else:
            raise IndexError(f"username slot {index} out of range")

        if index == len(self.usernames) - 1 and (value or "").strip():
            self.usernames.append("")

    def load_usernames(self, values: List[str]) -> None:
        values = list(values)
        while values and not values[-1].strip():
            values.pop()
        self.usernames = [""]
        for i, value in enumerate(values):
            self.set_username(i, value)

    def fetch_data(self, fetch_one: Fetcher, max_workers: int = 8) -> None:
        """
        Fetch every non-blank username concurrently and commit all-or-nothing.

        Data is only committed after every request settled; a single failure
        discards the whole batch and leaves one error message.
        """
        names = clean_usernames(self.usernames)
        if not names:
            self.error = EMPTY_INPUT_ERROR
            return

        self.loading = True
        self.error = None
        self.data = {}
        try:
            with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(names)))) as executor:
                futures = [executor.submit(fetch_one, name) for name in names]
                wait(futures, return_when=ALL_COMPLETED)

            failures = [f.exception() for f in futures if f.exception() is not None]
            if failures:
                self.error = _error_message(failures[0])
                logger.warning("Fetch cycle failed for %d of %d users: %s", len(failures), len(names), self.error)
                return

            self.data = {name: f.result() for name, f in zip(names, futures)}
            logger.info("Fetched contest history for %d users", len(names))
        finally:
            self.loading = False

    def to_context(self) -> Dict[str, Any]:
        """Everything the template (or the JSON endpoint) needs for one render."""
        return {
            "usernames": list(self.usernames),
            "error": self.error,
            "loading": self.loading,
            "charts": build_charts(self.data),
            "stats": {name: summarize(records) for name, records in self.data.items()},
        }


def _error_message(exc: BaseException) -> str:
    if isinstance(exc, FetchError):
        return str(exc) or FETCH_FAILED_ERROR
    logger.error("Unexpected error during fetch: %r", exc)
    return UNEXPECTED_ERROR


# -----------------------------
# Derivations
# -----------------------------
def rated_history(records: List[ContestRecord]) -> List[ContestRecord]:
    return sorted((r for r in records if r.is_rated), key=lambda r: r.end_time)


def format_label(d: dt.date) -> str:
    return f"{d.month}/{d.day}/{d.year}"


def build_labels(data: UserDataset) -> List[str]:
    """Sorted, duplicate-free calendar dates of every user's rated contests."""
    dates = {r.end_date for records in data.values() for r in records if r.is_rated}
    return [format_label(d) for d in sorted(dates)]


def build_series(data: UserDataset, labels: List[str], field: str) -> List[Dict[str, Any]]:
    if field not in CHART_FIELDS:
        raise ValueError(f"Unsupported chart field: {field}")

    series: List[Dict[str, Any]] = []
    for name, records in data.items():
        by_label: Dict[str, int] = {}
        for r in rated_history(records):
            # First contest of the day wins when a user has several.
            by_label.setdefault(format_label(r.end_date), getattr(r, field))
        series.append({"label": name, "data": [by_label.get(label) for label in labels]})
    return series


def build_chart(data: UserDataset, field: str, labels: Optional[List[str]] = None) -> Dict[str, Any]:
    if labels is None:
        labels = build_labels(data)
    return {"labels": labels, "datasets": build_series(data, labels, field)}


def build_charts(data: UserDataset) -> Dict[str, Dict[str, Any]]:
    labels = build_labels(data)
    return {
        "rating": build_chart(data, "new_rating", labels),
        "performance": build_chart(data, "performance", labels),
    }


# -----------------------------
# Summary statistics
# -----------------------------
def max_rating(records: List[ContestRecord]) -> Union[int, str]:
    if not records:
        return NO_DATA
    return max(r.new_rating for r in records)


def latest_rating(records: List[ContestRecord]) -> Union[int, str]:
    if not records:
        return NO_DATA
    return records[-1].new_rating


def latest_rating_change(records: List[ContestRecord]) -> Union[int, str]:
    if len(records) < 2:
        return INSUFFICIENT_DATA
    return records[-1].new_rating - records[-2].new_rating


def summarize(records: List[ContestRecord]) -> Dict[str, Any]:
    return {
        "contest_count": len(records),
        "max_rating": max_rating(records),
        "latest_rating": latest_rating(records),
        "latest_change": latest_rating_change(records),
        "invalid_username": not records,
    }
