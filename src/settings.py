import json
import os
from pathlib import Path

from sqlalchemy import create_engine

DATA_DIR = Path(os.getenv("SCRIM_DATA_DIR", ".")).resolve()
SETTINGS_PATH = DATA_DIR / "settings.json"
TRACKER_API_DEFAULT = os.getenv("SCRIM_TRACKER_API", "https://server-details.ej.workers.dev")
FETCH_TIMEOUT_DEFAULT = float(os.getenv("SCRIM_FETCH_TIMEOUT", "10"))
RECENT_LIMIT_DEFAULT = int(os.getenv("SCRIM_RECENT_LIMIT", "50"))
DATABASE_URL = os.getenv("SCRIM_DATABASE_URL")
DB_NAME = os.getenv("SCRIM_DB_NAME", "scrimstats")
DB_USER = os.getenv("SCRIM_DB_USER", "postgres")
DB_PASSWORD = os.getenv("SCRIM_DB_PASSWORD")
DB_HOST = os.getenv("SCRIM_DB_HOST", "localhost")
DB_PORT = os.getenv("SCRIM_DB_PORT", "5432")

_RUNTIME_SETTINGS_CACHE: dict = {"mtime": None, "settings": {}}


def _read_settings_file(path: Path) -> dict:
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        print(f"⚠️ Could not load settings file: {e}")
        return {}
    if not isinstance(data, dict):
        print(f"⚠️ {path.name} is not a JSON object, ignoring it")
        return {}
    return data


def load_runtime_settings() -> dict:
    """Overrides from settings.json, re-read whenever the file's mtime moves.

    Tracker URL, timeout and list limit are looked up per request, so an
    edited file applies to the next request. No file means no overrides.
    """
    try:
        mtime = SETTINGS_PATH.stat().st_mtime
    except OSError:
        _RUNTIME_SETTINGS_CACHE.update(mtime=None, settings={})
        return {}

    if _RUNTIME_SETTINGS_CACHE["mtime"] != mtime:
        _RUNTIME_SETTINGS_CACHE.update(mtime=mtime, settings=_read_settings_file(SETTINGS_PATH))
    return _RUNTIME_SETTINGS_CACHE["settings"]


def get_tracker_api() -> str:
    chosen = load_runtime_settings().get("tracker_api") or TRACKER_API_DEFAULT
    return str(chosen).rstrip("/")


def get_fetch_timeout() -> float:
    """Per-request timeout in seconds; settings.json wins over the env."""
    chosen = load_runtime_settings().get("fetch_timeout", FETCH_TIMEOUT_DEFAULT)
    try:
        timeout = float(chosen)
    except (TypeError, ValueError):
        timeout = FETCH_TIMEOUT_DEFAULT
    if timeout <= 0:
        timeout = FETCH_TIMEOUT_DEFAULT
    return timeout


def get_recent_limit() -> int:
    chosen = load_runtime_settings().get("recent_limit", RECENT_LIMIT_DEFAULT)
    try:
        return max(1, int(chosen))
    except (TypeError, ValueError):
        return RECENT_LIMIT_DEFAULT


def database_url() -> str:
    if DATABASE_URL:
        return DATABASE_URL
    return f"postgresql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"


def get_engine():
    return create_engine(database_url(), pool_pre_ping=True)
