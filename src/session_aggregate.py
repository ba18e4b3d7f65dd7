"""Merge the per-session fetch results into one combined view.

The same view backs the single-session page, multi-session links and the
hover preview, so every rule for combining sessions lives here.
"""

import math
import re
from dataclasses import dataclass

import pandas as pd

from tracker_client import safe_int

INFINITE_KD = "∞"
UNKNOWN_DURATION = "N/A"

_ZONE_RE = re.compile(r"(?:Z|[+-]\d{2}:?\d{2})$", re.IGNORECASE)


@dataclass(frozen=True)
class LeaderboardEntry:
    name: str
    kills: int
    deaths: int

    @property
    def kd(self) -> str:
        return format_kd(self.kills, self.deaths)

    def to_dict(self) -> dict:
        return {"name": self.name, "kills": self.kills, "deaths": self.deaths, "kd": self.kd}


@dataclass(frozen=True)
class AggregateView:
    session_ids: tuple
    earliest_start: pd.Timestamp | None = None
    latest_end: pd.Timestamp | None = None
    total_duration: int = 0
    maps: tuple = ()
    server_ips: tuple = ()
    players: tuple = ()
    total_players: int = 0
    total_kills: int = 0
    total_deaths: int = 0

    @property
    def session_count(self) -> int:
        return len(self.session_ids)

    @property
    def is_multi_session(self) -> bool:
        return self.session_count > 1

    def to_dict(self) -> dict:
        return {
            "session_count": self.session_count,
            "session_ids": list(self.session_ids),
            "is_multi_session": self.is_multi_session,
            "earliest_start": format_iso(self.earliest_start),
            "latest_end": format_iso(self.latest_end),
            "total_duration": self.total_duration,
            "total_duration_display": format_duration(self.total_duration),
            "maps": list(self.maps),
            "server_ips": list(self.server_ips),
            "total_players": self.total_players,
            "total_kills": self.total_kills,
            "total_deaths": self.total_deaths,
            "players": [player.to_dict() for player in self.players],
        }


def normalize_timestamp(value: str) -> str:
    """Rewrite the legacy ``YYYY-MM-DD HH:MM:SS`` form as ISO-8601 in UTC."""
    text = value.strip()
    if " " in text and "T" not in text:
        text = text.replace(" ", "T", 1)
        # a '-' after the date part is a zone offset
        if not _ZONE_RE.search(text) and "+" not in text and "-" not in text[10:]:
            text += "Z"
    return text


def parse_timestamp(value) -> pd.Timestamp | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    ts = pd.to_datetime(normalize_timestamp(text), utc=True, errors="coerce")
    if pd.isna(ts):
        return None
    return ts


def format_iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def format_duration(seconds) -> str:
    """Render whole seconds as ``1h 2m 5s``, dropping leading zero units."""
    try:
        if seconds is None or pd.isna(seconds):
            return UNKNOWN_DURATION
        seconds = int(seconds)
    except (TypeError, ValueError, OverflowError):
        return UNKNOWN_DURATION
    if seconds <= 0:
        return UNKNOWN_DURATION

    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}h {minutes}m {secs}s"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_kd(kills, deaths) -> str:
    kills = kills or 0
    deaths = deaths or 0
    if deaths == 0:
        return INFINITE_KD if kills > 0 else "0.00"
    return f"{kills / deaths:.2f}"


def distinct_values(values) -> tuple:
    seen = []
    for value in values:
        if value is None:
            continue
        text = str(value)
        if text.strip() and text not in seen:
            seen.append(text)
    return tuple(seen)


def build_leaderboard(rosters) -> tuple:
    """Sum kills and deaths per player name across rosters, most kills first.

    ``rosters`` is an iterable of player lists in session order. Players
    with equal kills keep the order they were first seen in.
    """
    rows = [
        {"name": player.name, "kills": safe_int(player.kills), "deaths": safe_int(player.deaths)}
        for roster in rosters
        for player in roster
    ]
    if not rows:
        return ()

    df = pd.DataFrame(rows, columns=["name", "kills", "deaths"])
    df["kills"] = pd.to_numeric(df["kills"], errors="coerce").fillna(0).astype("int64")
    df["deaths"] = pd.to_numeric(df["deaths"], errors="coerce").fillna(0).astype("int64")

    totals = df.groupby("name", sort=False)[["kills", "deaths"]].sum()
    totals = totals.sort_values("kills", ascending=False, kind="stable")

    return tuple(
        LeaderboardEntry(name=str(name), kills=int(row["kills"]), deaths=int(row["deaths"]))
        for name, row in totals.iterrows()
    )


def aggregate_sessions(outcomes: dict) -> AggregateView | None:
    """Build the combined view, or None when no session record came back."""
    records = [outcome.record for outcome in outcomes.values() if outcome.record is not None]
    if not records:
        return None

    starts = [ts for ts in (parse_timestamp(r.time_started) for r in records) if ts is not None]
    ends = [ts for ts in (parse_timestamp(r.time_finished) for r in records) if ts is not None]
    earliest_start = min(starts) if starts else None
    latest_end = max(ends) if ends else None

    total_duration = 0
    if earliest_start is not None and latest_end is not None:
        total_duration = max(0, math.floor((latest_end - earliest_start).total_seconds()))

    rosters = [outcome.players for outcome in outcomes.values()]
    players = build_leaderboard(rosters)

    analytics = [outcome.analytics for outcome in outcomes.values() if outcome.analytics is not None]

    return AggregateView(
        session_ids=tuple(sid for sid, outcome in outcomes.items() if outcome.record is not None),
        earliest_start=earliest_start,
        latest_end=latest_end,
        total_duration=total_duration,
        maps=distinct_values(r.map for r in records),
        server_ips=distinct_values(r.server_ip for r in records),
        players=players,
        total_players=len(players),
        total_kills=sum(a.total_kills or 0 for a in analytics),
        total_deaths=sum(a.total_deaths or 0 for a in analytics),
    )
