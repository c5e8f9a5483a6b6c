# QR Check-In Attendance - Package
"""
Attendance check-in protocol.
Students show a rotating encrypted QR code; the lecturer's scanner validates
it and marks each student at most once per live session.
"""

__version__ = "1.0.0"
__author__ = "QR Attendance Team"
__description__ = "Encrypted rotating QR check-in protocol with an at-most-once attendance session registry"

# Import core components for easy access
from .modules.errors import CheckInError, Rejection
from .modules.token_codec import DecodeError, IdentityToken, KeyRing, TokenCodec
from .modules.token_generator import PeriodicTask, StudentIdentity, TokenGenerator, TokenStream
from .modules.token_validator import TokenValidator, ValidIdentity, ValidationResult
from .modules.database_manager import DatabaseManager
from .modules.session_registry import (
    AttendanceRecord,
    AttendanceSession,
    AttendanceStatus,
    SessionRegistry,
    SessionState,
    SessionStats,
)
from .modules.checkin_coordinator import CheckInCoordinator, CheckInResult
from .modules.notification_system import StatsChangeEvent, StatsNotifier
from .modules.auth_manager import ClearAuthorization, ClearAuthorizer

__all__ = [
    'CheckInError',
    'Rejection',
    'DecodeError',
    'IdentityToken',
    'KeyRing',
    'TokenCodec',
    'PeriodicTask',
    'StudentIdentity',
    'TokenGenerator',
    'TokenStream',
    'TokenValidator',
    'ValidIdentity',
    'ValidationResult',
    'DatabaseManager',
    'AttendanceRecord',
    'AttendanceSession',
    'AttendanceStatus',
    'SessionRegistry',
    'SessionState',
    'SessionStats',
    'CheckInCoordinator',
    'CheckInResult',
    'StatsChangeEvent',
    'StatsNotifier',
    'ClearAuthorization',
    'ClearAuthorizer',
]
