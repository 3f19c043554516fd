"""
Configuration for the Examination Lifecycle & Results Analytics Engine
"""

import os
from urllib.parse import quote_plus
import dotenv
dotenv.load_dotenv()  # Load environment variables from .env file


def _env_flag(name, default='False'):
    return os.environ.get(name, default).lower() in ('true', '1', 'yes')


class Config:
    """Base configuration for single database multi-tenancy"""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'supersecretkey'
    TESTING = False

    # Database settings (a full DATABASE_URL wins over the individual parts)
    DATABASE_URL = os.environ.get('DATABASE_URL')
    MYSQL_HOST = os.environ.get('DB_HOST', 'localhost')
    MYSQL_PORT = int(os.environ.get('DB_PORT', 3306))
    MYSQL_USERNAME = os.environ.get('DB_USER', 'root')
    MYSQL_PASSWORD = os.environ.get('DB_PASS', '')
    MYSQL_DATABASE = os.environ.get('DB_NAME', 'school_exams')
    MYSQL_CHARSET = 'utf8mb4'

    # Transaction budgets for multi-row writes (seconds)
    EXAM_TRANSACTION_WAIT_SECONDS = int(os.environ.get('EXAM_TRANSACTION_WAIT_SECONDS', 5))
    EXAM_TRANSACTION_TIMEOUT_SECONDS = int(os.environ.get('EXAM_TRANSACTION_TIMEOUT_SECONDS', 30))

    # SQLAlchemy settings
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_recycle': 280,
        'pool_pre_ping': True,
        'pool_timeout': EXAM_TRANSACTION_WAIT_SECONDS,
    }

    # Examination engine settings
    EXAM_DEFAULT_PASSING_PERCENTAGE = float(os.environ.get('EXAM_DEFAULT_PASSING_PERCENTAGE', 33))
    EXAM_RANK_TIE_POLICY = os.environ.get('EXAM_RANK_TIE_POLICY', 'sequential')  # sequential, competition, dense
    HALL_TICKET_REPORTING_MINUTES = int(os.environ.get('HALL_TICKET_REPORTING_MINUTES', 30))
    CREDENTIAL_MAX_ATTEMPTS_FACTOR = int(os.environ.get('CREDENTIAL_MAX_ATTEMPTS_FACTOR', 20))
    EXAM_NOTIFICATIONS_ENABLED = _env_flag('EXAM_NOTIFICATIONS_ENABLED', 'True')

    def _encoded_password(self) -> str:
        """Percent-encode special characters for URL usage."""
        return quote_plus(self.MYSQL_PASSWORD) if self.MYSQL_PASSWORD else ''

    def get_database_uri(self) -> str:
        """Get single database URI for all tenants."""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = self.MYSQL_USERNAME
        pwd = self._encoded_password()
        host = self.MYSQL_HOST
        port = self.MYSQL_PORT
        database = self.MYSQL_DATABASE

        if pwd:
            return f"mysql+pymysql://{user}:{pwd}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"
        return f"mysql+pymysql://{user}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    EXAM_NOTIFICATIONS_ENABLED = False
    # Use in-memory SQLite for testing
    def get_database_uri(self) -> str:
        return 'sqlite:///:memory:'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config(config_name=None):
    """Return a config instance for the given name (or FLASK_CONFIG)."""
    name = config_name or os.environ.get('FLASK_CONFIG', 'default')
    return config.get(name, DevelopmentConfig)()
