"""
Application Configuration
Loads environment variables and provides configuration classes for different environments
"""

import os
from datetime import timedelta
from dotenv import load_dotenv

# Load environment variables from .env file
basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


class Config:
    """Base configuration class"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'fiscal_pos.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ECHO = False

    # ZIMRA Fiscal Device Management System
    ZIMRA_API_URL = os.environ.get('ZIMRA_API_URL', 'https://fdmsapitest.zimra.co.zw')
    ZIMRA_API_KEY = os.environ.get('ZIMRA_API_KEY', '')
    ZIMRA_DEVICE_ID = os.environ.get('ZIMRA_DEVICE_ID', '')
    ZIMRA_OPERATOR_ID = os.environ.get('ZIMRA_OPERATOR_ID', '')
    ZIMRA_ACTIVATION_KEY = os.environ.get('ZIMRA_ACTIVATION_KEY', '')
    ZIMRA_QR_URL = os.environ.get('ZIMRA_QR_URL', 'https://fdmstest.zimra.co.zw')
    ZIMRA_REQUEST_TIMEOUT = int(os.environ.get('ZIMRA_REQUEST_TIMEOUT', 30))

    # Cutoff time (24-hour clock) after which sessions are closed
    CUTOFF_HOUR = int(os.environ.get('CUTOFF_HOUR', 20))
    CUTOFF_TESTING_MODE = os.environ.get('CUTOFF_TESTING_MODE', 'False').lower() == 'true'
    ENFORCE_CUTOFF = os.environ.get('ENFORCE_CUTOFF', 'False').lower() == 'true'

    # Budget alerts
    BUDGET_ALERTS_ENABLED = os.environ.get('BUDGET_ALERTS_ENABLED', 'True').lower() == 'true'
    BUDGET_ALERT_INTERVAL_SECONDS = int(os.environ.get('BUDGET_ALERT_INTERVAL_SECONDS', 60))

    # Loyverse
    LOYVERSE_API_URL = os.environ.get('LOYVERSE_API_URL', 'https://api.loyverse.com/v1.0')

    # Loyverse webhook queue
    WEBHOOK_QUEUE_ENABLED = os.environ.get('WEBHOOK_QUEUE_ENABLED', 'True').lower() == 'true'
    WEBHOOK_QUEUE_INTERVAL_SECONDS = int(os.environ.get('WEBHOOK_QUEUE_INTERVAL_SECONDS', 30))
    WEBHOOK_MAX_ATTEMPTS = int(os.environ.get('WEBHOOK_MAX_ATTEMPTS', 5))

    # Receipts
    DEFAULT_RECEIPT_SIZE = os.environ.get('DEFAULT_RECEIPT_SIZE', 'A4')
    CURRENCY_SYMBOL = os.environ.get('CURRENCY_SYMBOL', '$')
    STANDARD_VAT_RATE = float(os.environ.get('STANDARD_VAT_RATE', 15.0))

    # Session Configuration
    PERMANENT_SESSION_LIFETIME = timedelta(
        seconds=int(os.environ.get('PERMANENT_SESSION_LIFETIME', 3600))
    )
    SESSION_COOKIE_SECURE = os.environ.get('SESSION_COOKIE_SECURE', 'False').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Pagination
    ITEMS_PER_PAGE = int(os.environ.get('ITEMS_PER_PAGE', 50))

    # CSRF Configuration
    WTF_CSRF_TIME_LIMIT = None  # CSRF token doesn't expire (valid for session lifetime)
    WTF_CSRF_SSL_STRICT = False
    WTF_CSRF_HEADERS = ['X-CSRFToken', 'X-CSRF-Token']

    # Rate limiting
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    LOGIN_RATE_LIMIT = os.environ.get('LOGIN_RATE_LIMIT', '10 per minute')

    # Logging
    LOG_FOLDER = os.path.join(basedir, 'logs')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Sentry Error Tracking (optional)
    SENTRY_DSN = os.environ.get('SENTRY_DSN', '')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False  # Set to True to see SQL queries


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SESSION_COOKIE_SECURE = os.environ.get('SESSION_COOKIE_SECURE', 'True').lower() == 'true'
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    SQLALCHEMY_ECHO = False

    PREFERRED_URL_SCHEME = 'https' if SESSION_COOKIE_SECURE else 'http'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    WTF_CSRF_ENABLED = False
    RATELIMIT_ENABLED = False
    BUDGET_ALERTS_ENABLED = False
    WEBHOOK_QUEUE_ENABLED = False
    ZIMRA_API_URL = 'https://fdms.test'
    ZIMRA_API_KEY = 'test-api-key'
    ZIMRA_DEVICE_ID = '12345'
    ZIMRA_OPERATOR_ID = 'OP-1'
    ZIMRA_QR_URL = 'https://verify.test'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
