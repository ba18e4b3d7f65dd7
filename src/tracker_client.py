import asyncio
from dataclasses import dataclass, field
from urllib.parse import quote

from aiohttp import ClientError, ClientResponseError, ClientSession, ClientTimeout

import settings

RECORD_KINDS = ("session", "players", "analytics")
# kills and deaths above this are clamped so leaderboard sums fit in int64
STAT_LIMIT = 2**31 - 1


class TrackerPayloadError(ValueError):
    """The tracker answered, but not with something usable."""


@dataclass(frozen=True)
class SessionRecord:
    session_id: str
    time_started: str | None = None
    time_finished: str | None = None
    server_ip: str | None = None
    map: str | None = None
    peak_players: int | None = None
    duration: int | None = None


@dataclass(frozen=True)
class PlayerStatLine:
    name: str
    kills: int = 0
    deaths: int = 0
    player_honor: int | None = None


@dataclass(frozen=True)
class SessionAnalytics:
    total_kills: int | None = None
    total_deaths: int | None = None
    player_count: int | None = None
    duration: int | None = None


@dataclass
class FetchOutcome:
    """Everything retrieved for one session id; each part may be missing."""

    record: SessionRecord | None = None
    players: list = field(default_factory=list)
    analytics: SessionAnalytics | None = None
    # record kind -> short reason, only for retrievals that failed
    errors: dict = field(default_factory=dict)


def clamp_stat(value: int) -> int:
    """Keep a per-player counter within STAT_LIMIT either way."""
    return max(-STAT_LIMIT, min(STAT_LIMIT, value))


def safe_int(value) -> int:
    try:
        if value is None:
            return 0
        return clamp_stat(int(float(value)))
    except (TypeError, ValueError, OverflowError):
        return 0


def optional_int(value) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def optional_str(value) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def parse_session_record(payload, session_id: str) -> SessionRecord:
    if not isinstance(payload, dict):
        raise TrackerPayloadError(f"expected an object, got {type(payload).__name__}")
    return SessionRecord(
        session_id=optional_str(payload.get("session_id")) or session_id,
        time_started=optional_str(payload.get("time_started")),
        time_finished=optional_str(payload.get("time_finished")),
        server_ip=optional_str(payload.get("server_ip")),
        map=optional_str(payload.get("map")),
        peak_players=optional_int(payload.get("peak_players")),
        duration=optional_int(payload.get("duration")),
    )


def parse_player(entry) -> PlayerStatLine | None:
    if not isinstance(entry, dict):
        return None
    name = entry.get("name")
    if name is None or not str(name).strip():
        return None
    return PlayerStatLine(
        name=str(name),
        kills=safe_int(entry.get("kills")),
        deaths=safe_int(entry.get("deaths")),
        player_honor=optional_int(entry.get("player_honor")),
    )


def normalize_roster(payload) -> list[PlayerStatLine]:
    """Accept a bare list or ``{"players": [...]}``; anything else is an error."""
    if isinstance(payload, list):
        entries = payload
    elif isinstance(payload, dict) and isinstance(payload.get("players"), list):
        entries = payload["players"]
    else:
        raise TrackerPayloadError(f"unexpected roster shape: {type(payload).__name__}")

    players = []
    for entry in entries:
        player = parse_player(entry)
        if player is not None:
            players.append(player)
    return players


def parse_analytics(payload) -> SessionAnalytics:
    if not isinstance(payload, dict):
        raise TrackerPayloadError(f"expected an object, got {type(payload).__name__}")
    return SessionAnalytics(
        total_kills=optional_int(payload.get("total_kills")),
        total_deaths=optional_int(payload.get("total_deaths")),
        player_count=optional_int(payload.get("player_count")),
        duration=optional_int(payload.get("duration")),
    )


async def get_json(session: ClientSession, url: str, timeout: float, params=None):
    async with session.get(url, params=params, timeout=ClientTimeout(total=timeout)) as response:
        response.raise_for_status()
        payload = await response.json(content_type=None)
    if isinstance(payload, dict) and payload.get("error"):
        raise TrackerPayloadError(str(payload["error"]))
    return payload


async def retrieve(session, url, timeout, kind, session_id, errors, parse):
    """Fetch and parse one record; failures are recorded and become None."""
    try:
        payload = await get_json(session, url, timeout)
        return parse(payload)
    except ClientResponseError as e:
        reason = f"HTTP {e.status}"
    except asyncio.TimeoutError:
        reason = f"timed out after {timeout}s"
    except (ClientError, ValueError) as e:
        reason = str(e) or e.__class__.__name__

    print(f"❌ Failed to fetch {kind} for session {session_id}: {reason}")
    errors[kind] = reason
    return None


async def fetch_session(session: ClientSession, base_url: str, session_id: str, timeout: float) -> FetchOutcome:
    encoded = quote(session_id, safe="")
    errors = {}
    record, players, analytics = await asyncio.gather(
        retrieve(
            session, f"{base_url}/sessions/{encoded}", timeout, "session", session_id, errors,
            lambda payload: parse_session_record(payload, session_id),
        ),
        retrieve(
            session, f"{base_url}/sessions/{encoded}/players", timeout, "players", session_id, errors,
            normalize_roster,
        ),
        retrieve(
            session, f"{base_url}/analytics/sessions/{encoded}", timeout, "analytics", session_id, errors,
            parse_analytics,
        ),
    )
    return FetchOutcome(record=record, players=players or [], analytics=analytics, errors=errors)


async def fetch_sessions(session_ids, *, base_url=None, timeout=None, session=None) -> dict:
    """Fetch record, roster and analytics for every id concurrently.

    Returns ``{session_id: FetchOutcome}`` in the order the ids were given.
    Only returns once every retrieval has finished or failed. A failed
    retrieval never affects its siblings, so the call is safe to retry.
    """
    ids = list(dict.fromkeys(session_ids))
    if not ids:
        return {}

    base_url = (base_url or settings.get_tracker_api()).rstrip("/")
    timeout = settings.get_fetch_timeout() if timeout is None else timeout

    if session is None:
        async with ClientSession() as own_session:
            outcomes = await asyncio.gather(
                *(fetch_session(own_session, base_url, session_id, timeout) for session_id in ids)
            )
    else:
        outcomes = await asyncio.gather(
            *(fetch_session(session, base_url, session_id, timeout) for session_id in ids)
        )

    missing = [session_id for session_id, outcome in zip(ids, outcomes) if outcome.record is None]
    if missing:
        print(f"⚠️ No session record for: {', '.join(missing)}")
    return dict(zip(ids, outcomes))


def fetch_sessions_sync(session_ids, **kwargs) -> dict:
    return asyncio.run(fetch_sessions(session_ids, **kwargs))


def list_query_params(limit, *, map=None, server_ip=None, start_time=None, end_time=None) -> dict:
    """Query string for the tracker's session list; unset filters are left out.

    Datetimes go out as ISO-8601, strings are passed through as given.
    """
    params = {}
    for key, value in (("start_time", start_time), ("end_time", end_time)):
        if value is None or value == "":
            continue
        params[key] = value.isoformat() if hasattr(value, "isoformat") else str(value)
    if map:
        params["map"] = str(map)
    if server_ip:
        params["server_ip"] = str(server_ip)
    params["limit"] = str(limit)
    return params


async def fetch_recent_sessions(
    limit=None,
    *,
    map=None,
    server_ip=None,
    start_time=None,
    end_time=None,
    base_url=None,
    timeout=None,
    session=None,
) -> list:
    """List the most recent sessions from the tracker, newest first.

    ``map``, ``server_ip``, ``start_time`` and ``end_time`` are forwarded to
    the tracker as list filters.
    """
    base_url = (base_url or settings.get_tracker_api()).rstrip("/")
    timeout = settings.get_fetch_timeout() if timeout is None else timeout
    limit = settings.get_recent_limit() if limit is None else limit
    params = list_query_params(
        limit, map=map, server_ip=server_ip, start_time=start_time, end_time=end_time
    )

    async def _load(client):
        try:
            payload = await get_json(client, f"{base_url}/sessions", timeout, params=params)
        except ClientResponseError as e:
            print(f"❌ Failed to list sessions: HTTP {e.status}")
            return []
        except asyncio.TimeoutError:
            print(f"❌ Failed to list sessions: timed out after {timeout}s")
            return []
        except (ClientError, ValueError) as e:
            print(f"❌ Failed to list sessions: {e}")
            return []

        if isinstance(payload, dict):
            payload = payload.get("sessions")
        if not isinstance(payload, list):
            print("⚠️ Unexpected session list shape, ignoring")
            return []

        records = []
        for entry in payload:
            if not isinstance(entry, dict) or not optional_str(entry.get("session_id")):
                continue
            records.append(parse_session_record(entry, str(entry["session_id"])))
        return records[:limit]

    if session is None:
        async with ClientSession() as own_session:
            return await _load(own_session)
    return await _load(session)


def fetch_recent_sessions_sync(limit=None, **kwargs) -> list:
    return asyncio.run(fetch_recent_sessions(limit, **kwargs))
