"""Tests for the JSON API in webapp.py."""

import pytest
from sqlalchemy import create_engine

import webapp
from consensus import add_player, create_scrim, ensure_scrim_schema
from tracker_client import FetchOutcome, PlayerStatLine, SessionRecord

SESSION_DATA = {
    "A": FetchOutcome(
        record=SessionRecord("A", time_started="2025-01-05 20:00:00", time_finished="2025-01-05 20:30:00", map="Dust"),
        players=[PlayerStatLine("Alice", 3, 1), PlayerStatLine("Bob", 0, 0)],
    ),
    "B": FetchOutcome(
        record=SessionRecord("B", time_started="2025-01-05T20:40:00Z", time_finished="2025-01-05T21:02:05Z", map="Aztec"),
        players=[PlayerStatLine("Alice", 2, 4), PlayerStatLine("Cara", 6, 0)],
    ),
}


@pytest.fixture
def client(monkeypatch, tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'web.db'}")
    ensure_scrim_schema(engine)
    monkeypatch.setattr(webapp, "ENGINE", engine)

    calls = []

    def fake_fetch(session_ids):
        calls.append(list(session_ids))
        return {sid: SESSION_DATA.get(sid, FetchOutcome(errors={"session": "HTTP 404"})) for sid in session_ids}

    monkeypatch.setattr(webapp, "fetch_sessions_sync", fake_fetch)
    webapp.app.config["TESTING"] = True
    with webapp.app.test_client() as test_client:
        test_client.fetch_calls = calls
        yield test_client
    engine.dispose()


def test_routes():
    """All API routes are registered."""
    expected_routes = [
        '/api/session/<path:token>',
        '/api/sessions/recent',
        '/api/scrim/<scrim_id>/consensus',
        '/api/scrim/<scrim_id>/submissions',
        '/api/scrim/<scrim_id>/scores',
    ]
    app_routes = {str(rule) for rule in webapp.app.url_map.iter_rules()}
    missing = [route for route in expected_routes if route not in app_routes]
    assert not missing


def test_multi_session_view(client):
    response = client.get('/api/session/A%2BB+A')
    assert response.status_code == 200
    assert client.fetch_calls == [["A", "B"]]

    data = response.get_json()
    assert data['session_ids'] == ['A', 'B']
    assert data['is_multi_session'] is True
    assert data['maps'] == ['Dust', 'Aztec']
    assert data['total_duration'] == 3725
    assert data['total_duration_display'] == '1h 2m 5s'
    assert data['session_path'] == '/tracker/session/A+B'
    assert [p['name'] for p in data['players']] == ['Cara', 'Alice', 'Bob']
    assert data['players'][0]['kd'] == '∞'
    assert data['players'][1]['kills'] == 5
    assert data['players'][2]['kd'] == '0.00'


def test_partial_sessions_still_render(client):
    response = client.get('/api/session/A~missing')
    assert response.status_code == 200
    data = response.get_json()
    assert data['session_ids'] == ['A']
    assert data['requested_ids'] == ['A', 'missing']


def test_separator_only_token_is_no_session(client):
    response = client.get('/api/session/~~')
    assert response.status_code == 400
    assert response.get_json() == {'error': 'No session specified'}
    assert client.fetch_calls == []


def test_unknown_session_is_not_found(client):
    response = client.get('/api/session/nope')
    assert response.status_code == 404
    assert response.get_json() == {'error': 'Session not found'}


def test_recent_sessions(client, monkeypatch):
    monkeypatch.setattr(
        webapp,
        "fetch_recent_sessions_sync",
        lambda limit, **filters: [SessionRecord("room&7", time_started="2025-01-05T22:00:00Z")][:limit],
    )
    response = client.get('/api/sessions/recent?limit=5')
    assert response.status_code == 200
    rows = response.get_json()['sessions']
    assert rows[0]['session_id'] == 'room&7'
    assert rows[0]['session_path'] == '/tracker/session/room%267'


def test_recent_sessions_pass_filters_through(client, monkeypatch):
    seen = []

    def fake_recent(limit, **filters):
        seen.append((limit, filters))
        return []

    monkeypatch.setattr(webapp, "fetch_recent_sessions_sync", fake_recent)
    response = client.get('/api/sessions/recent?limit=7&map=Dust&server_ip=&end_time=2025-01-06T00:00:00Z')
    assert response.status_code == 200
    assert response.get_json() == {'sessions': []}
    assert seen == [(7, {'map': 'Dust', 'end_time': '2025-01-06T00:00:00Z'})]


def test_score_reporting_flow(client):
    create_scrim(webapp.ENGINE, 's1')
    for n in range(1, 5):
        add_player(webapp.ENGINE, 's1', f'P{n}', f'Player {n}')

    response = client.post('/api/scrim/s1/scores', json={'user_id': 'P1', 'team_a_score': 3, 'team_b_score': 1})
    assert response.status_code == 201
    assert response.get_json()['status'] == 'reporting'

    response = client.post('/api/scrim/s1/scores', json={'user_id': 'P2', 'team_a_score': '3', 'team_b_score': '1'})
    data = response.get_json()
    assert data['has_consensus'] is True
    assert (data['team_a_score'], data['team_b_score']) == (3, 1)
    assert data['submission_count'] == 2
    assert data['player_count'] == 4
    assert data['winner'] == 'team_a'

    response = client.get('/api/scrim/s1/consensus')
    assert response.get_json()['status'] == 'consensus'

    response = client.get('/api/scrim/s1/submissions')
    assert [s['user_id'] for s in response.get_json()['submissions']] == ['P1', 'P2']


def test_score_reporting_errors(client):
    create_scrim(webapp.ENGINE, 's2')
    add_player(webapp.ENGINE, 's2', 'P1', 'Player 1')

    ok = client.post('/api/scrim/s2/scores', json={'user_id': 'P1', 'team_a_score': 1, 'team_b_score': 0})
    assert ok.status_code == 201

    duplicate = client.post('/api/scrim/s2/scores', json={'user_id': 'P1', 'team_a_score': 0, 'team_b_score': 1})
    assert duplicate.status_code == 409

    stranger = client.post('/api/scrim/s2/scores', json={'user_id': 'X', 'team_a_score': 1, 'team_b_score': 0})
    assert stranger.status_code == 400

    bad_score = client.post('/api/scrim/s2/scores', json={'user_id': 'P1', 'team_a_score': 'lots', 'team_b_score': 0})
    assert bad_score.status_code == 400

    not_an_object = client.post('/api/scrim/s2/scores', json=[1, 2])
    assert not_an_object.status_code == 400
    assert not_an_object.get_json() == {'error': 'Expected a JSON object'}

    missing = client.post('/api/scrim/none/scores', json={'user_id': 'P1', 'team_a_score': 1, 'team_b_score': 0})
    assert missing.status_code == 404
    assert client.get('/api/scrim/none/consensus').status_code == 404
