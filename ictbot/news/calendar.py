"""High-impact economic news calendar.

Fetches the weekly ForexFactory calendar and answers whether a moment
falls inside the blackout window around a high-impact release.  Events
are cached and concurrent refreshes share one request.  While the feed
is unreachable the last good events are kept, and with none the window
is reported clear.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

import httpx

from ictbot.config import Config

logger = logging.getLogger("ictbot.news")

# Wait this long before retrying after a failed refresh.
FAILURE_BACKOFF_SECONDS = 60.0

LOOKAHEAD = timedelta(hours=48)

_USER_AGENT = "Mozilla/5.0"
_IMPORTANCE_LABELS = {
    "high": 3,
    "medium": 2,
    "low": 1,
    "high impact expected": 3,
    "med impact expected": 2,
    "low impact expected": 1,
}
_MONTHS = ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec")
_TIME_LABEL = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap]m)$", re.IGNORECASE)


@dataclass(frozen=True)
class NewsEvent:
    """One scheduled release.  ``at`` is tz-aware UTC."""

    title: str
    at: datetime
    currency: str
    importance: int


# ── Parsing ──────────────────────────────────────────────────────────────


def normalize_importance(value) -> int:
    """Map ``"High"``/``"Medium"``/``"Low"`` labels or numbers to 3/2/1."""
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value or "").strip().lower()
    if text in _IMPORTANCE_LABELS:
        return _IMPORTANCE_LABELS[text]
    try:
        return int(float(text))
    except ValueError:
        return 0


def _parse_local(day_text: str, label: str, offset_hours: int) -> Optional[datetime]:
    # "Jan 8 2025" + "8:30am"; "All Day" and "Tentative" have no time.
    match = _TIME_LABEL.match(label.strip())
    parts = day_text.split()
    if match is None or len(parts) != 3:
        return None
    month = parts[0][:3].lower()
    if month not in _MONTHS:
        return None
    try:
        day, year = int(parts[1].rstrip(",")), int(parts[2])
        hour = int(match.group(1)) % 12 + (12 if match.group(3).lower() == "pm" else 0)
        local = datetime(
            year, _MONTHS.index(month) + 1, day, hour, int(match.group(2) or 0),
            tzinfo=timezone.utc,
        )
    except ValueError:
        return None
    return local - timedelta(hours=offset_hours)


def parse_event_time(raw: dict, offset_hours: int = 0) -> Optional[datetime]:
    """Event time from a unix timestamp, an ISO datetime or a date plus time label."""
    stamp = raw.get("timestamp", raw.get("ts"))
    if isinstance(stamp, (int, float)) and not isinstance(stamp, bool):
        seconds = stamp / 1000 if stamp > 1e12 else stamp
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    text = raw.get("date") or raw.get("datetime")
    if isinstance(text, str) and "T" in text:
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    label = raw.get("time") or raw.get("timeLabel")
    if not isinstance(text, str) or not isinstance(label, str):
        return None
    return _parse_local(text, label, offset_hours)


def parse_calendar(
    payload,
    now: datetime,
    min_importance: int = 3,
    countries: Iterable[str] = (),
    offset_hours: int = 0,
) -> list[NewsEvent]:
    """Keep events within 48 hours of *now* at or above *min_importance*.

    *payload* is the feed's JSON: a list of events or ``{"calendar": [...]}``.
    An empty *countries* keeps every currency.
    """
    if isinstance(payload, dict):
        payload = payload.get("calendar", [])
    if not isinstance(payload, list):
        return []

    wanted = {c.strip() for c in countries if c.strip()}
    events: list[NewsEvent] = []
    for raw in payload:
        if not isinstance(raw, dict):
            continue
        at = parse_event_time(raw, offset_hours)
        if at is None or abs(at - now) > LOOKAHEAD:
            continue
        importance = normalize_importance(raw.get("importance", raw.get("impact")))
        if importance < min_importance:
            continue
        codes = {str(raw.get(k)) for k in ("currency", "country") if raw.get(k)}
        if wanted and not codes & wanted:
            continue
        events.append(
            NewsEvent(
                title=str(raw.get("title") or raw.get("event") or ""),
                at=at,
                currency=str(raw.get("currency") or raw.get("country") or ""),
                importance=importance,
            )
        )
    events.sort(key=lambda e: e.at)
    return events


# ── Service ──────────────────────────────────────────────────────────────


class NewsCalendar:
    """Cached, coalescing news-window lookup.

    Args:
        config: Application configuration (news settings).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, config: Config, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock
        self._events: list[NewsEvent] = []
        self._fetched_at: Optional[float] = None
        self._ttl = float(config.news_cache_ttl_seconds)
        self._in_flight: Optional[asyncio.Task] = None
        self.fetch_count = 0

    @property
    def enabled(self) -> bool:
        return self._config.news_enabled

    async def is_high_impact_window(self, now: Optional[datetime] = None) -> bool:
        """True from ``news_pre_minutes`` before a release to ``news_post_minutes`` after."""
        return bool(await self.active_events(now))

    async def active_events(self, now: Optional[datetime] = None) -> list[NewsEvent]:
        if not self.enabled:
            return []
        now = now or datetime.now(timezone.utc)
        await self._ensure_fresh(now)
        before = timedelta(minutes=self._config.news_pre_minutes)
        after = timedelta(minutes=self._config.news_post_minutes)
        return [e for e in self._events if e.at - before <= now <= e.at + after]

    async def _ensure_fresh(self, now: datetime) -> None:
        if self._fetched_at is not None and self._clock() - self._fetched_at < self._ttl:
            return
        task = self._in_flight
        if task is None:
            task = asyncio.create_task(self._refresh(now))
            self._in_flight = task
            task.add_done_callback(self._forget)
        await asyncio.shield(task)

    def _forget(self, task: asyncio.Task) -> None:
        if self._in_flight is task:
            self._in_flight = None

    async def _refresh(self, now: datetime) -> None:
        try:
            self.fetch_count += 1
            async with httpx.AsyncClient() as client:
                resp = await client.get(
                    self._config.news_url,
                    headers={"User-Agent": _USER_AGENT},
                    timeout=self._config.news_request_timeout_seconds,
                )
            resp.raise_for_status()
            events = parse_calendar(
                resp.json(),
                now,
                self._config.news_importance,
                self._config.news_countries,
                self._config.news_timezone_offset_hours,
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("News calendar refresh failed: %s", exc)
            self._fetched_at = self._clock()
            self._ttl = FAILURE_BACKOFF_SECONDS
            return

        self._events = events
        self._fetched_at = self._clock()
        self._ttl = float(self._config.news_cache_ttl_seconds)
        logger.info("News calendar: %d high-impact events within 48h", len(events))
