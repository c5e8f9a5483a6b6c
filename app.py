"""
QR Check-In Attendance - HTTP API
Author: QR Attendance Team

This module exposes the check-in protocol to the surrounding academic
application as JSON endpoints: session control for lecturers (start, end,
stats, clear, corrections) and the scan endpoint the scanner posts envelopes
to. Authentication of the caller belongs to the host application; it passes
the acting user in the ``X-Actor-Id`` header.

Endpoints:
- POST /api/sessions/start
- POST /api/sessions/<id>/end
- GET  /api/sessions/<id>/stats
- GET  /api/sessions/active?classId=
- POST /api/sessions/<id>/clear
- GET  /api/sessions/<id>/records
- POST /api/sessions/<id>/records
- POST /api/sessions/<id>/records/<subjectId>
- POST /api/checkin
"""

from flask import Flask, Blueprint, request, jsonify, current_app
from functools import wraps
import logging

import config as app_config
from attendance_checkin.modules.errors import CheckInError, Rejection, describe
from attendance_checkin.modules.token_codec import KeyRing, TokenCodec
from attendance_checkin.modules.token_validator import TokenValidator
from attendance_checkin.modules.database_manager import DatabaseManager
from attendance_checkin.modules.session_registry import SessionRegistry
from attendance_checkin.modules.checkin_coordinator import CheckInCoordinator
from attendance_checkin.modules.notification_system import StatsNotifier
from attendance_checkin.modules.auth_manager import ClearAuthorization, ClearAuthorizer

logger = logging.getLogger(__name__)

api = Blueprint('checkin_api', __name__, url_prefix='/api')

# HTTP status for each rejection; ALREADY_MARKED is informational, not an error
HTTP_STATUS = {
    Rejection.MALFORMED: 400,
    Rejection.WRONG_PURPOSE: 400,
    Rejection.INVALID_TIMESTAMP: 400,
    Rejection.EXPIRED: 400,
    Rejection.INVALID_STATUS: 400,
    Rejection.NOT_ENROLLED: 403,
    Rejection.UNAUTHORIZED: 401,
    Rejection.NO_ACTIVE_SESSION: 404,
    Rejection.SESSION_NOT_FOUND: 404,
    Rejection.RECORD_NOT_FOUND: 404,
    Rejection.SESSION_CLOSED: 409,
    Rejection.ALREADY_ACTIVE: 409,
    Rejection.ALREADY_MARKED: 200,
}


def build_components(config_class):
    """Wire the protocol components from a configuration class"""
    key_ring = KeyRing.from_string(config_class.QR_SECRET_KEYS, config_class.QR_ACTIVE_KEY_ID)
    codec = TokenCodec(key_ring)
    validator = TokenValidator(
        codec,
        max_age_ms=config_class.TOKEN_MAX_AGE_MS,
        rotation_interval_ms=config_class.TOKEN_ROTATION_INTERVAL_MS
    )
    db_manager = DatabaseManager(config_class.DATABASE_PATH)
    notifier = StatsNotifier(async_dispatch=config_class.NOTIFICATIONS_ASYNC)
    authorizer = ClearAuthorizer(
        config_class.CLEAR_PASSWORD_HASH,
        max_attempts=config_class.CLEAR_MAX_ATTEMPTS,
        lockout_minutes=config_class.CLEAR_LOCKOUT_MINUTES
    )
    registry = SessionRegistry(db_manager, authorizer=authorizer, notifier=notifier)
    coordinator = CheckInCoordinator(validator, registry, notifier=notifier)

    return {
        'codec': codec,
        'validator': validator,
        'db_manager': db_manager,
        'notifier': notifier,
        'authorizer': authorizer,
        'registry': registry,
        'coordinator': coordinator,
        'config': config_class,
    }


def create_app(config_name=None):
    """Application factory"""
    app = Flask(__name__)
    config_class = app_config.init_config(app, config_name)
    app_config.configure_logging(config_class)

    app.extensions['checkin'] = build_components(config_class)
    app.register_blueprint(api)

    logger.info("QR Check-In Attendance startup")
    return app


def components():
    return current_app.extensions['checkin']


def actor_required(f):
    """Decorator requiring the X-Actor-Id header set by the host application"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor = request.headers.get('X-Actor-Id', '').strip()
        if not actor:
            return jsonify({
                'success': False,
                'error': 'Missing X-Actor-Id header',
                'error_type': Rejection.UNAUTHORIZED.value
            }), 401
        return f(actor, *args, **kwargs)
    return decorated_function


def error_response(error: CheckInError):
    return jsonify(error.to_dict()), HTTP_STATUS.get(error.reason, 400)


def server_error(action: str, e: Exception):
    logger.error(f"{action} error: {str(e)}")
    return jsonify({
        'success': False,
        'error': 'An error occurred while processing the request'
    }), 500


def bad_request(message: str):
    return jsonify({'success': False, 'error': message}), 400


@api.route('/sessions/start', methods=['POST'])
@actor_required
def start_session(actor):
    """Start taking attendance for a class"""
    try:
        data = request.get_json(silent=True) or {}
        class_id = str(data.get('classId') or '').strip()
        roster = data.get('roster')

        if not class_id:
            return bad_request('Class ID is required')
        if not isinstance(roster, list):
            return bad_request('Roster must be a list of student IDs')

        registry = components()['registry']
        session = registry.start(class_id, roster, date_key=data.get('dateKey'), started_by=actor)

        return jsonify({
            'success': True,
            'message': 'Attendance session started successfully',
            'session': session.to_dict(),
            'stats': registry.stats(session.session_id).to_dict()
        }), 201

    except CheckInError as e:
        return error_response(e)
    except ValueError as e:
        return bad_request(str(e))
    except Exception as e:
        return server_error('Start session', e)


@api.route('/sessions/<int:session_id>/end', methods=['POST'])
@actor_required
def end_session(actor, session_id):
    """End an active session"""
    try:
        data = request.get_json(silent=True) or {}
        registry = components()['registry']
        mark_absent = data.get('markAbsent', components()['config'].ATTENDANCE_MARK_ABSENT_ON_END)
        if not isinstance(mark_absent, bool):
            return bad_request('markAbsent must be true or false')

        session = registry.end(session_id, ended_by=actor, mark_absent=mark_absent)
        stats = registry.stats(session_id)

        return jsonify({
            'success': True,
            'message': 'Attendance session completed successfully',
            'session': session.to_dict(),
            'stats': stats.to_dict(),
            'autoAbsentCount': stats.status_counts.get('absent', 0)
        })

    except CheckInError as e:
        return error_response(e)
    except Exception as e:
        return server_error('End session', e)


@api.route('/sessions/<int:session_id>/stats', methods=['GET'])
def session_stats(session_id):
    """Live counts for a session"""
    try:
        registry = components()['registry']
        return jsonify({
            'success': True,
            'session': registry.get(session_id).to_dict(),
            'stats': registry.stats(session_id).to_dict()
        })

    except CheckInError as e:
        return error_response(e)
    except Exception as e:
        return server_error('Session stats', e)


@api.route('/sessions/active', methods=['GET'])
def active_session():
    """Active session of a class, if any"""
    try:
        class_id = request.args.get('classId', '').strip()
        if not class_id:
            return bad_request('Class ID is required')

        registry = components()['registry']
        session = registry.get_active(class_id)
        if session is None:
            return jsonify({
                'success': False,
                'session': None,
                'message': describe(Rejection.NO_ACTIVE_SESSION)
            })

        return jsonify({
            'success': True,
            'session': session.to_dict(),
            'stats': registry.stats(session.session_id).to_dict()
        })

    except Exception as e:
        return server_error('Active session', e)


@api.route('/sessions/<int:session_id>/clear', methods=['POST'])
@actor_required
def clear_session(actor, session_id):
    """Delete all records of a session after re-authorization"""
    try:
        data = request.get_json(silent=True) or {}
        authorization = ClearAuthorization(actor=actor, password=str(data.get('password') or ''))

        deleted = components()['registry'].clear(session_id, authorization)

        return jsonify({
            'success': True,
            'message': 'Session cleared successfully',
            'recordsDeleted': deleted
        })

    except CheckInError as e:
        return error_response(e)
    except Exception as e:
        return server_error('Clear session', e)


@api.route('/sessions/<int:session_id>/records', methods=['GET'])
def session_records(session_id):
    """Full attendance list of a session"""
    try:
        records = components()['registry'].records(session_id)
        return jsonify({
            'success': True,
            'records': [record.to_dict() for record in records]
        })

    except CheckInError as e:
        return error_response(e)
    except Exception as e:
        return server_error('Session records', e)


@api.route('/sessions/<int:session_id>/records', methods=['POST'])
@actor_required
def record_manually(actor, session_id):
    """Mark a student who has no scannable QR code"""
    try:
        data = request.get_json(silent=True) or {}
        subject_id = str(data.get('subjectId') or '').strip()
        if not subject_id:
            return bad_request('Student ID is required')

        registry = components()['registry']
        record = registry.mark_manual(
            session_id, subject_id, data.get('status') or 'present',
            marked_by=actor, notes=data.get('notes')
        )

        return jsonify({
            'success': True,
            'message': f"Attendance recorded as {record.status.value}",
            'record': record.to_dict(),
            'stats': registry.stats(session_id).to_dict()
        }), 201

    except CheckInError as e:
        return error_response(e)
    except Exception as e:
        return server_error('Manual attendance', e)


@api.route('/sessions/<int:session_id>/records/<subject_id>', methods=['POST'])
@actor_required
def correct_record(actor, session_id, subject_id):
    """Correct the status of an attendance record"""
    try:
        data = request.get_json(silent=True) or {}
        if not data.get('status'):
            return bad_request('Status is required')

        record = components()['registry'].update_status(
            session_id, subject_id, data['status'], updated_by=actor, notes=data.get('notes')
        )

        return jsonify({
            'success': True,
            'message': f"Attendance changed to {record.status.value}",
            'record': record.to_dict()
        })

    except CheckInError as e:
        return error_response(e)
    except Exception as e:
        return server_error('Status correction', e)


@api.route('/checkin', methods=['POST'])
@actor_required
def check_in(actor):
    """Process a scanned envelope and record attendance"""
    try:
        data = request.get_json(silent=True) or {}
        envelope = data.get('envelope')
        class_id = str(data.get('classId') or '').strip()
        status = data.get('status') or 'present'

        if not envelope:
            return bad_request('No QR code data provided')

        coordinator = components()['coordinator']
        if data.get('sessionId') is not None:
            try:
                session_id = int(data['sessionId'])
            except (TypeError, ValueError):
                return bad_request('Session ID must be a number')
            result = coordinator.check_in(envelope, session_id, status, marked_by=actor)
        elif class_id:
            result = coordinator.check_in_for_class(envelope, class_id, status, marked_by=actor)
        else:
            return bad_request('Class ID is required')

        http_status = 200 if result.accepted else HTTP_STATUS.get(result.reason, 400)
        return jsonify(result.to_dict()), http_status

    except Exception as e:
        return server_error('Scan processing', e)


if __name__ == '__main__':
    application = create_app()
    application.run(debug=application.config.get('DEBUG', False), host='0.0.0.0', port=5000)
