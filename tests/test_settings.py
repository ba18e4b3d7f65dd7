import json
import os

import pytest

import settings


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    path = tmp_path / "settings.json"
    monkeypatch.setattr(settings, "SETTINGS_PATH", path)
    monkeypatch.setitem(settings._RUNTIME_SETTINGS_CACHE, "mtime", None)
    monkeypatch.setitem(settings._RUNTIME_SETTINGS_CACHE, "settings", {})
    return path


def test_defaults_without_settings_file(settings_file):
    assert settings.load_runtime_settings() == {}
    assert settings.get_fetch_timeout() == settings.FETCH_TIMEOUT_DEFAULT
    assert settings.get_tracker_api() == settings.TRACKER_API_DEFAULT.rstrip("/")
    assert settings.get_recent_limit() == settings.RECENT_LIMIT_DEFAULT


def test_settings_file_overrides_env(settings_file):
    settings_file.write_text(json.dumps({
        "fetch_timeout": 2.5,
        "tracker_api": "http://tracker.local/",
        "recent_limit": "20",
    }))
    assert settings.get_fetch_timeout() == 2.5
    assert settings.get_tracker_api() == "http://tracker.local"
    assert settings.get_recent_limit() == 20


def test_bad_values_fall_back(settings_file):
    settings_file.write_text(json.dumps({"fetch_timeout": -3, "recent_limit": "many"}))
    assert settings.get_fetch_timeout() == settings.FETCH_TIMEOUT_DEFAULT
    assert settings.get_recent_limit() == settings.RECENT_LIMIT_DEFAULT


def test_unreadable_settings_file_is_ignored(settings_file):
    settings_file.write_text("{not json")
    assert settings.load_runtime_settings() == {}


def test_database_url_prefers_explicit_url(monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", "sqlite:///scrims.db")
    assert settings.database_url() == "sqlite:///scrims.db"


def test_database_url_from_parts(monkeypatch):
    monkeypatch.setattr(settings, "DATABASE_URL", None)
    monkeypatch.setattr(settings, "DB_PASSWORD", "pw")
    expected = f"postgresql://{settings.DB_USER}:pw@{settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME}"
    assert settings.database_url() == expected


def test_settings_are_reread_when_the_file_changes(settings_file):
    settings_file.write_text(json.dumps({"recent_limit": 20}))
    assert settings.get_recent_limit() == 20

    settings_file.write_text(json.dumps({"recent_limit": 30}))
    mtime = settings_file.stat().st_mtime + 10
    os.utime(settings_file, (mtime, mtime))
    assert settings.get_recent_limit() == 30


def test_non_object_settings_file_is_ignored(settings_file):
    settings_file.write_text("[1, 2]")
    assert settings.load_runtime_settings() == {}
