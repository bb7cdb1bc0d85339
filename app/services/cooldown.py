"""
Mio Backend — Search cooldown tracker

A per-user progressive delay between match searches.  The delay schedule
cycles: with ``[1, 2, 5]`` minutes the first search locks the user out for
one minute, the second for two, the third for five, the fourth for one
again, and so on.

State is two fields on the user document:

  last_search_at  — time of the last accepted search (absent = never)
  search_count    — index into the schedule of the delay now in effect

``next_allowed = last_search_at + schedule[search_count]``.  Evaluation is a
pure function of (state, now); persisting the new state is the Match
Writer's job, atomically with the search's match records.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Sequence

from app.utils.timestamps import TimestampError, isoformat, to_datetime


def schedule_from_minutes(minutes: Sequence[float]) -> tuple[timedelta, ...]:
    return tuple(timedelta(minutes=m) for m in minutes)


@dataclass(frozen=True)
class CooldownState:
    last_search_at: datetime | None = None
    search_count: int = 0

    @classmethod
    def from_document(cls, data: dict[str, Any]) -> "CooldownState":
        raw = data.get("last_search_at")
        try:
            last = to_datetime(raw) if raw is not None else None
        except TimestampError:
            last = None
        count = data.get("search_count") or 0
        if not isinstance(count, int) or count < 0:
            count = 0
        return cls(last_search_at=last, search_count=count)

    def to_fields(self) -> dict[str, Any]:
        return {
            "last_search_at": isoformat(self.last_search_at) if self.last_search_at else None,
            "search_count": self.search_count,
        }

    def next_allowed(self, schedule: Sequence[timedelta]) -> datetime | None:
        if self.last_search_at is None:
            return None
        return self.last_search_at + schedule[self.search_count % len(schedule)]


@dataclass(frozen=True)
class CooldownDecision:
    allowed: bool
    state: CooldownState
    next_allowed_at: datetime
    retry_after: timedelta


def evaluate(
    state: CooldownState,
    now: datetime,
    schedule: Sequence[timedelta],
) -> CooldownDecision:
    """Gate a search attempt at ``now``.

    Denied attempts return the unchanged state and the remaining wait.
    Allowed attempts return the advanced state and the time from which the
    following search will be accepted.
    """
    if not schedule:
        raise ValueError("cooldown schedule must not be empty")

    next_allowed = state.next_allowed(schedule)
    if next_allowed is not None and now < next_allowed:
        return CooldownDecision(
            allowed=False,
            state=state,
            next_allowed_at=next_allowed,
            retry_after=next_allowed - now,
        )

    if state.last_search_at is None:
        counter = 0
    else:
        counter = (state.search_count + 1) % len(schedule)

    new_state = CooldownState(last_search_at=now, search_count=counter)
    return CooldownDecision(
        allowed=True,
        state=new_state,
        next_allowed_at=now + schedule[counter],
        retry_after=timedelta(0),
    )
