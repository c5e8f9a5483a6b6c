# QR Check-In Attendance - Modules Package
"""
Core modules of the attendance check-in protocol.
"""

__version__ = "1.0.0"
__description__ = "Core modules for the QR check-in protocol"

# Module descriptions
MODULES = {
    'errors': 'Rejection taxonomy and check-in errors',
    'token_codec': 'Envelope encryption and decryption',
    'token_generator': 'Rotating token minting on the student device',
    'token_validator': 'Envelope freshness and structure validation',
    'database_manager': 'SQLite connection and schema management',
    'session_registry': 'Attendance session lifecycle and marked set',
    'checkin_coordinator': 'Per-scan orchestration and live stats',
    'notification_system': 'Session change notifications',
    'auth_manager': 'Re-authorization for clearing sessions'
}

def get_module_info():
    """Get information about available modules"""
    return MODULES
