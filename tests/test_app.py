import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from attendance_checkin.modules.token_generator import StudentIdentity, TokenGenerator
from config import TestingConfig

HEADERS = {'X-Actor-Id': 'prof-hopper'}


class ApiTestConfig(TestingConfig):
    CLEAR_PASSWORD_HASH = generate_password_hash('wipe-it')


@pytest.fixture
def app():
    application = create_app(ApiTestConfig)
    yield application
    application.extensions['checkin']['db_manager'].close()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def envelope_for(app):
    generator = TokenGenerator(app.extensions['checkin']['codec'])

    def _mint(subject_id):
        return generator.mint(StudentIdentity(subject_id, 'Katherine', 'Johnson', 'kj@students.example.edu'))

    return _mint


def _start(client, class_id='CS101', roster=('S1', 'S2', 'S3')):
    return client.post('/api/sessions/start', json={'classId': class_id, 'roster': list(roster)}, headers=HEADERS)


def test_start_session(client):
    response = _start(client)

    assert response.status_code == 201
    body = response.get_json()
    assert body['success'] is True
    assert body['session']['state'] == 'active'
    assert body['session']['startedBy'] == 'prof-hopper'
    assert body['stats'] == {
        'enrolledCount': 3,
        'markedCount': 0,
        'remainingCount': 3,
        'statusCounts': {'present': 0, 'late': 0, 'excused': 0, 'absent': 0},
    }


def test_start_twice_conflicts(client):
    _start(client)

    response = _start(client)

    assert response.status_code == 409
    assert response.get_json()['error_type'] == 'ALREADY_ACTIVE'


@pytest.mark.parametrize('payload', [{}, {'classId': 'CS101'}, {'classId': 'CS101', 'roster': 'S1,S2'}])
def test_start_validates_input(client, payload):
    response = client.post('/api/sessions/start', json=payload, headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_actor_header_is_required(client):
    response = client.post('/api/sessions/start', json={'classId': 'CS101', 'roster': ['S1']})

    assert response.status_code == 401
    assert response.get_json()['error_type'] == 'UNAUTHORIZED'


def test_check_in_flow(client, envelope_for):
    session_id = _start(client).get_json()['session']['sessionId']

    accepted = client.post('/api/checkin', json={'envelope': envelope_for('S1'), 'classId': 'CS101'},
                           headers=HEADERS)
    duplicate = client.post('/api/checkin', json={'envelope': envelope_for('S1'), 'classId': 'CS101'},
                            headers=HEADERS)
    stranger = client.post('/api/checkin', json={'envelope': envelope_for('S42'), 'classId': 'CS101'},
                           headers=HEADERS)

    assert accepted.status_code == 200
    assert accepted.get_json()['accepted'] is True
    assert accepted.get_json()['stats']['markedCount'] == 1
    assert accepted.get_json()['record']['markedBy'] == 'prof-hopper'

    assert duplicate.status_code == 200
    assert duplicate.get_json()['accepted'] is False
    assert duplicate.get_json()['reason'] == 'ALREADY_MARKED'
    assert duplicate.get_json()['informational'] is True

    assert stranger.status_code == 403
    assert stranger.get_json()['reason'] == 'NOT_ENROLLED'

    stats = client.get(f'/api/sessions/{session_id}/stats').get_json()
    assert stats['stats']['markedCount'] == 1
    assert stats['stats']['remainingCount'] == 2


def test_check_in_with_late_status_and_session_id(client, envelope_for):
    session_id = _start(client).get_json()['session']['sessionId']

    response = client.post('/api/checkin',
                           json={'envelope': envelope_for('S2'), 'sessionId': session_id, 'status': 'late'},
                           headers=HEADERS)

    assert response.status_code == 200
    assert response.get_json()['record']['status'] == 'late'


def test_check_in_rejections(client, envelope_for):
    no_session = client.post('/api/checkin', json={'envelope': envelope_for('S1'), 'classId': 'CS101'},
                             headers=HEADERS)
    _start(client)
    garbage = client.post('/api/checkin', json={'envelope': 'hello', 'classId': 'CS101'}, headers=HEADERS)
    empty = client.post('/api/checkin', json={'classId': 'CS101'}, headers=HEADERS)
    bad_status = client.post('/api/checkin',
                             json={'envelope': envelope_for('S1'), 'classId': 'CS101', 'status': 'absent'},
                             headers=HEADERS)

    assert no_session.status_code == 404
    assert no_session.get_json()['reason'] == 'NO_ACTIVE_SESSION'
    assert garbage.status_code == 400
    assert garbage.get_json()['message'] == 'Invalid QR code'
    assert empty.status_code == 400
    assert bad_status.status_code == 400
    assert bad_status.get_json()['reason'] == 'INVALID_STATUS'


def test_end_session_then_scan_is_closed(client, envelope_for):
    session_id = _start(client).get_json()['session']['sessionId']
    client.post('/api/checkin', json={'envelope': envelope_for('S1'), 'classId': 'CS101'}, headers=HEADERS)

    ended = client.post(f'/api/sessions/{session_id}/end', headers=HEADERS)
    late_scan = client.post('/api/checkin', json={'envelope': envelope_for('S2'), 'sessionId': session_id},
                            headers=HEADERS)
    again = client.post(f'/api/sessions/{session_id}/end', headers=HEADERS)

    assert ended.status_code == 200
    assert ended.get_json()['session']['state'] == 'ended'
    assert ended.get_json()['autoAbsentCount'] == 2
    assert late_scan.status_code == 409
    assert late_scan.get_json()['reason'] == 'SESSION_CLOSED'
    assert again.status_code == 409


def test_active_session_lookup(client):
    assert client.get('/api/sessions/active').status_code == 400
    assert client.get('/api/sessions/active?classId=CS101').get_json()['session'] is None

    session_id = _start(client).get_json()['session']['sessionId']

    body = client.get('/api/sessions/active?classId=CS101').get_json()
    assert body['success'] is True
    assert body['session']['sessionId'] == session_id


def test_records_and_status_correction(client, envelope_for):
    session_id = _start(client).get_json()['session']['sessionId']
    client.post('/api/checkin', json={'envelope': envelope_for('S3'), 'classId': 'CS101', 'status': 'late'},
                headers=HEADERS)

    corrected = client.post(f'/api/sessions/{session_id}/records/S3',
                            json={'status': 'excused', 'notes': 'bus strike'}, headers=HEADERS)
    missing = client.post(f'/api/sessions/{session_id}/records/S1', json={'status': 'excused'}, headers=HEADERS)
    no_status = client.post(f'/api/sessions/{session_id}/records/S3', json={}, headers=HEADERS)
    records = client.get(f'/api/sessions/{session_id}/records').get_json()['records']

    assert corrected.status_code == 200
    assert corrected.get_json()['record']['status'] == 'excused'
    assert corrected.get_json()['record']['updatedBy'] == 'prof-hopper'
    assert missing.status_code == 404
    assert missing.get_json()['error_type'] == 'RECORD_NOT_FOUND'
    assert no_status.status_code == 400
    assert [(record['subjectId'], record['status']) for record in records] == [('S3', 'excused')]


def test_clear_session(client, envelope_for):
    session_id = _start(client).get_json()['session']['sessionId']
    client.post('/api/checkin', json={'envelope': envelope_for('S1'), 'classId': 'CS101'}, headers=HEADERS)

    refused = client.post(f'/api/sessions/{session_id}/clear', json={'password': 'guess'}, headers=HEADERS)
    cleared = client.post(f'/api/sessions/{session_id}/clear', json={'password': 'wipe-it'}, headers=HEADERS)

    assert refused.status_code == 401
    assert refused.get_json()['error_type'] == 'UNAUTHORIZED'
    assert cleared.status_code == 200
    assert cleared.get_json()['recordsDeleted'] == 1
    assert client.get(f'/api/sessions/{session_id}/stats').get_json()['stats']['markedCount'] == 0


def test_unknown_session_is_404(client):
    response = client.get('/api/sessions/9999/stats')

    assert response.status_code == 404
    assert response.get_json()['error_type'] == 'SESSION_NOT_FOUND'


def test_unexpected_errors_become_500(app, client, monkeypatch, caplog):
    session_id = _start(client).get_json()['session']['sessionId']

    def boom(session_id):
        raise RuntimeError('disk on fire')

    monkeypatch.setattr(app.extensions['checkin']['registry'], 'stats', boom)
    response = client.get(f'/api/sessions/{session_id}/stats')

    assert response.status_code == 500
    assert response.get_json()['error'] == 'An error occurred while processing the request'
    assert 'disk on fire' not in response.get_data(as_text=True)
    assert 'Session stats error: disk on fire' in caplog.text


@pytest.mark.parametrize('flag', ['false', 0, 'no', None])
def test_end_session_rejects_non_boolean_mark_absent(client, flag):
    session_id = _start(client).get_json()['session']['sessionId']

    response = client.post(f'/api/sessions/{session_id}/end', json={'markAbsent': flag}, headers=HEADERS)

    assert response.status_code == 400
    assert response.get_json()['error'] == 'markAbsent must be true or false'
    assert client.get('/api/sessions/active?classId=CS101').get_json()['session']['state'] == 'active'


def test_end_session_without_absent_records(client):
    session_id = _start(client).get_json()['session']['sessionId']

    response = client.post(f'/api/sessions/{session_id}/end', json={'markAbsent': False}, headers=HEADERS)

    assert response.status_code == 200
    assert response.get_json()['autoAbsentCount'] == 0
    assert client.get(f'/api/sessions/{session_id}/records').get_json()['records'] == []


def test_manual_record(client, envelope_for):
    session_id = _start(client).get_json()['session']['sessionId']
    url = f'/api/sessions/{session_id}/records'

    created = client.post(url, json={'subjectId': 'S2', 'status': 'late'}, headers=HEADERS)
    duplicate = client.post(url, json={'subjectId': 'S2'}, headers=HEADERS)
    scan = client.post('/api/checkin', json={'envelope': envelope_for('S2'), 'sessionId': session_id},
                       headers=HEADERS)

    assert created.status_code == 201
    body = created.get_json()
    assert body['message'] == 'Attendance recorded as late'
    assert body['record']['status'] == 'late'
    assert body['record']['markedBy'] == 'prof-hopper'
    assert body['stats']['markedCount'] == 1
    assert duplicate.status_code == 200
    assert duplicate.get_json()['error_type'] == 'ALREADY_MARKED'
    assert scan.status_code == 200
    assert scan.get_json()['reason'] == 'ALREADY_MARKED'
    records = client.get(url).get_json()['records']
    assert [(record['subjectId'], record['status']) for record in records] == [('S2', 'late')]


def test_manual_record_rejections(client):
    session_id = _start(client).get_json()['session']['sessionId']
    url = f'/api/sessions/{session_id}/records'

    missing = client.post(url, json={'status': 'present'}, headers=HEADERS)
    stranger = client.post(url, json={'subjectId': 'S99'}, headers=HEADERS)
    invalid = client.post(url, json={'subjectId': 'S1', 'status': 'asleep'}, headers=HEADERS)
    anonymous = client.post(url, json={'subjectId': 'S1'})

    assert missing.status_code == 400
    assert stranger.status_code == 403
    assert stranger.get_json()['error_type'] == 'NOT_ENROLLED'
    assert invalid.status_code == 400
    assert invalid.get_json()['error_type'] == 'INVALID_STATUS'
    assert anonymous.status_code == 401
    assert client.get(url).get_json()['records'] == []
