import os

basedir = os.path.abspath(os.path.dirname(__file__))


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-production'

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # API
    LEDGER_API_KEY = os.environ.get('LEDGER_API_KEY') or 'ledger-api-key'

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Engine
    CURRENCY = os.environ.get('CURRENCY', 'ر.س')
    DEFAULT_PRORATION_POLICY = 'proportional'
    MAX_FREEZE_DAYS = 365
    INSTALLMENT_LATE_FEE_PERCENTAGE = 2.0
    INSTALLMENT_GRACE_PERIOD_DAYS = 7
    DEFAULT_INSTALLMENT_COUNT = 12


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, '..', 'instance', 'gym_ledger.db')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, '..', 'instance', 'gym_ledger.db')

    # Fix for Railway/Render PostgreSQL URL
    if SQLALCHEMY_DATABASE_URI and SQLALCHEMY_DATABASE_URI.startswith('postgres://'):
        SQLALCHEMY_DATABASE_URI = SQLALCHEMY_DATABASE_URI.replace('postgres://', 'postgresql://', 1)


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LEDGER_API_KEY = 'test-api-key'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
