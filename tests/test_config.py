import pytest
from flask import Flask

import config as app_config


def test_get_config_follows_flask_env(monkeypatch):
    monkeypatch.setenv('FLASK_ENV', 'testing')
    assert app_config.get_config() is app_config.TestingConfig

    monkeypatch.setenv('FLASK_ENV', 'unknown')
    assert app_config.get_config() is app_config.DevelopmentConfig

    assert app_config.get_config('production') is app_config.ProductionConfig


def test_testing_config_is_valid():
    assert app_config.validate_config(app_config.TestingConfig) == []


def test_validate_config_reports_problems():
    class Broken(app_config.TestingConfig):
        QR_SECRET_KEYS = 'v1:alpha'
        QR_ACTIVE_KEY_ID = 'v7'
        TOKEN_ROTATION_INTERVAL_MS = 30000
        TOKEN_MAX_AGE_MS = 30000

    errors = app_config.validate_config(Broken)

    assert len(errors) == 2
    assert any('QR_ACTIVE_KEY_ID' in error for error in errors)
    assert any('TOKEN_MAX_AGE_MS' in error for error in errors)


def test_missing_keys_fail_initialization():
    class NoKeys(app_config.TestingConfig):
        QR_SECRET_KEYS = None

    with pytest.raises(RuntimeError):
        app_config.init_config(Flask(__name__), NoKeys)


def test_init_config_accepts_names_and_classes():
    app = Flask(__name__)

    assert app_config.init_config(app, app_config.TestingConfig) is app_config.TestingConfig
    assert app.config['TESTING'] is True
    assert app_config.init_config(Flask(__name__), 'testing') is app_config.TestingConfig
