from dataclasses import asdict

from flask import Flask, jsonify, request

from consensus import (
    DuplicateSubmission,
    InvalidSubmission,
    ScrimNotFound,
    ensure_scrim_schema,
    evaluate_consensus,
    load_submissions,
    record_submission,
)
from session_aggregate import aggregate_sessions
from session_ids import build_session_path, resolve_session_ids
from settings import get_engine, get_recent_limit
from tracker_client import fetch_recent_sessions_sync, fetch_sessions_sync

app = Flask(__name__)

ENGINE = get_engine()


def error_response(message: str, status: int):
    return jsonify({"error": message}), status


def parse_score(value):
    if isinstance(value, bool):
        raise InvalidSubmission("Scores must be whole numbers")
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise InvalidSubmission("Scores must be whole numbers") from None


@app.route('/api/session/<path:token>')
def session_view(token):
    session_ids = resolve_session_ids(token)
    if not session_ids:
        return error_response('No session specified', 400)

    outcomes = fetch_sessions_sync(session_ids)
    view = aggregate_sessions(outcomes)
    if view is None:
        return error_response('Session not found', 404)

    payload = view.to_dict()
    payload['requested_ids'] = session_ids
    payload['session_path'] = build_session_path(view.session_ids)
    payload['session_links'] = [build_session_path([session_id]) for session_id in view.session_ids]
    return jsonify(payload)


@app.route('/api/sessions/recent')
def recent_sessions():
    try:
        limit = int(request.args.get('limit', get_recent_limit()))
    except ValueError:
        limit = get_recent_limit()
    limit = max(1, min(limit, 200))
    filters = {
        key: request.args.get(key, '').strip()
        for key in ('map', 'server_ip', 'start_time', 'end_time')
    }
    filters = {key: value for key, value in filters.items() if value}

    rows = []
    for record in fetch_recent_sessions_sync(limit, **filters):
        row = asdict(record)
        row['session_path'] = build_session_path([record.session_id])
        rows.append(row)
    return jsonify({'sessions': rows})


@app.route('/api/scrim/<scrim_id>/consensus')
def scrim_consensus(scrim_id):
    ensure_scrim_schema(ENGINE)
    try:
        result = evaluate_consensus(ENGINE, scrim_id)
    except ScrimNotFound:
        return error_response('Scrim not found', 404)
    return jsonify(result.to_dict())


@app.route('/api/scrim/<scrim_id>/submissions')
def scrim_submissions(scrim_id):
    ensure_scrim_schema(ENGINE)
    try:
        result = evaluate_consensus(ENGINE, scrim_id)
    except ScrimNotFound:
        return error_response('Scrim not found', 404)
    submissions = [s.to_dict() for s in load_submissions(ENGINE, scrim_id)]
    return jsonify({'submissions': submissions, 'consensus': result.to_dict()})


@app.route('/api/scrim/<scrim_id>/scores', methods=['POST'])
def submit_score(scrim_id):
    ensure_scrim_schema(ENGINE)
    payload = request.get_json(silent=True)
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        return error_response('Expected a JSON object', 400)
    try:
        result = record_submission(
            ENGINE,
            scrim_id,
            user_id=str(payload.get('user_id') or '').strip(),
            user_name=payload.get('user_name'),
            team_a_score=parse_score(payload.get('team_a_score')),
            team_b_score=parse_score(payload.get('team_b_score')),
        )
    except ScrimNotFound:
        return error_response('Scrim not found', 404)
    except DuplicateSubmission as e:
        return error_response(str(e), 409)
    except InvalidSubmission as e:
        return error_response(str(e), 400)
    return jsonify(result.to_dict()), 201


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=8090, debug=False)
