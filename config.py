# QR Check-In Attendance Configuration

import os
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_flag(name, default='false'):
    return os.environ.get(name, default).lower() in ['true', 'on', '1']


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'qr-checkin-secret-key-2025'
    JSON_SORT_KEYS = False

    # Database Configuration
    DATABASE_PATH = BASE_DIR / 'database' / 'attendance.db'

    # Token Configuration
    # Comma separated "keyId:secret" pairs; the active key seals new tokens,
    # every listed key can still open them.
    QR_SECRET_KEYS = os.environ.get('QR_SECRET_KEYS')
    QR_ACTIVE_KEY_ID = os.environ.get('QR_ACTIVE_KEY_ID')
    TOKEN_ROTATION_INTERVAL_MS = int(os.environ.get('TOKEN_ROTATION_INTERVAL_MS') or 30000)
    TOKEN_MAX_AGE_MS = int(os.environ.get('TOKEN_MAX_AGE_MS') or 35000)

    # Session Clear Configuration (werkzeug password hash)
    CLEAR_PASSWORD_HASH = os.environ.get('CLEAR_PASSWORD_HASH')
    CLEAR_MAX_ATTEMPTS = 5
    CLEAR_LOCKOUT_MINUTES = 15

    # Attendance Configuration
    ATTENDANCE_MARK_ABSENT_ON_END = True

    # Notification Configuration
    NOTIFICATIONS_ASYNC = True

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'attendance.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5
    LOG_FORMAT = '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'

    # Development Configuration
    DEBUG = _env_flag('DEBUG')
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        if str(cls.DATABASE_PATH) != ':memory:':
            Path(cls.DATABASE_PATH).parent.mkdir(parents=True, exist_ok=True)

        app.config.update({
            'SECRET_KEY': cls.SECRET_KEY,
            'JSON_SORT_KEYS': cls.JSON_SORT_KEYS,
            'TESTING': cls.TESTING,
            'DEBUG': cls.DEBUG,
        })


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_dev.db'

    # Development-only secret; production must provide QR_SECRET_KEYS
    QR_SECRET_KEYS = os.environ.get('QR_SECRET_KEYS') or 'dev:qr-checkin-development-secret'

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    # Use in-memory database for testing
    DATABASE_PATH = ':memory:'

    QR_SECRET_KEYS = 'test:qr-checkin-test-secret'
    QR_ACTIVE_KEY_ID = 'test'

    # Deliver notifications inline so tests can observe them immediately
    NOTIFICATIONS_ASYNC = False

    # Log to the console only
    LOG_FILE = None


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'attendance_prod.db'

    # Production logging
    LOG_LEVEL = 'WARNING'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Get configuration based on environment variable"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')
    return config.get(config_name, DevelopmentConfig)


def validate_config(config_class):
    """Validate configuration settings; returns a list of error strings"""
    errors = []

    if not config_class.QR_SECRET_KEYS:
        errors.append("QR_SECRET_KEYS is required")
    else:
        key_ids = [
            item.split(':', 1)[0].strip() if ':' in item else 'v1'
            for item in config_class.QR_SECRET_KEYS.split(',') if item.strip()
        ]
        if not key_ids:
            errors.append("QR_SECRET_KEYS does not contain any key")
        elif config_class.QR_ACTIVE_KEY_ID and config_class.QR_ACTIVE_KEY_ID not in key_ids:
            errors.append(f"QR_ACTIVE_KEY_ID {config_class.QR_ACTIVE_KEY_ID!r} is not one of QR_SECRET_KEYS")

    if config_class.TOKEN_ROTATION_INTERVAL_MS <= 0:
        errors.append("TOKEN_ROTATION_INTERVAL_MS must be positive")
    if config_class.TOKEN_MAX_AGE_MS <= config_class.TOKEN_ROTATION_INTERVAL_MS:
        errors.append("TOKEN_MAX_AGE_MS must exceed TOKEN_ROTATION_INTERVAL_MS")

    return errors


def configure_logging(config_class):
    """Install console and rotating file handlers on the root logger"""
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(config_class.LOG_LEVEL).upper(), logging.INFO))
    formatter = logging.Formatter(config_class.LOG_FORMAT)

    if not any(getattr(h, '_checkin_handler', False) for h in root.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        stream_handler._checkin_handler = True
        root.addHandler(stream_handler)

        if config_class.LOG_FILE:
            Path(config_class.LOG_FILE).parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                config_class.LOG_FILE,
                maxBytes=config_class.LOG_MAX_BYTES,
                backupCount=config_class.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(formatter)
            file_handler.setLevel(logging.INFO)
            file_handler._checkin_handler = True
            root.addHandler(file_handler)


# Initialize configuration
def init_config(app, config_name=None):
    """Initialize application with configuration"""
    config_class = config_name if isinstance(config_name, type) else get_config(config_name)
    config_class.init_app(app)

    errors = validate_config(config_class)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    return config_class
