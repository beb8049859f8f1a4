"""
Flask API Configuration Management
Handles different environments (development, testing, production)
"""
import os
from pathlib import Path
from typing import List, Optional
from dotenv import load_dotenv
from dynaconf import Dynaconf

# Load environment variables from .env file
load_dotenv()

# Base directory
BASE_DIR = Path(__file__).parent

# Dynaconf settings for configuration management
settings = Dynaconf(
    envvar_prefix="DASHBOARD",
    settings_files=[BASE_DIR / "settings.toml", BASE_DIR / "settings.local.toml"],
    environments=True,
    env_switcher="FLASK_ENV",
    load_dotenv=False,  # Already loaded above
    merge_enabled=True,
)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == 'true'


def _env_list(name: str, default: str = '') -> List[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(',') if item.strip()]


class Config:
    """Base configuration class"""

    # Application settings
    SECRET_KEY = os.environ.get('FLASK_SECRET_KEY') or settings.get('SECRET_KEY', 'dev-secret-key-change-in-production')
    DEBUG = _env_bool('DEBUG', 'False')
    TESTING = _env_bool('TESTING', 'False')
    ENV = os.environ.get('FLASK_ENV', 'development')

    # Document store backing database
    SQLALCHEMY_DATABASE_URI = (
        os.environ.get('DATABASE_URL')
        or settings.get('DATABASE_URL', 'sqlite:///' + str(BASE_DIR / 'dashboard.db'))
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
    }

    # Redis: JWT blocklist and relay wake-up notifications (optional)
    REDIS_URL = os.environ.get('REDIS_URL') or settings.get('REDIS_URL', None)

    # Discord settings
    DISCORD_CLIENT_ID = os.environ.get('DISCORD_CLIENT_ID')
    DISCORD_CLIENT_SECRET = os.environ.get('DISCORD_CLIENT_SECRET')
    DISCORD_REDIRECT_URI = os.environ.get('DISCORD_REDIRECT_URI', 'http://localhost:5000/api/auth/callback')
    DISCORD_API_BASE_URL = 'https://discord.com/api/v10'

    # OAuth2 settings for Discord authentication
    OAUTH2_SCOPES = ['identify', 'guilds']

    # Where the browser lands after a successful login
    FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:3000/dashboard')

    # Admin allow-list (Discord user IDs)
    ADMIN_USER_IDS = _env_list('ADMIN_USER_IDS')

    # JWT settings
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or settings.get('JWT_SECRET_KEY', SECRET_KEY)
    JWT_ACCESS_TOKEN_EXPIRES = int(os.environ.get('JWT_ACCESS_TOKEN_EXPIRES', 3600))
    JWT_REFRESH_TOKEN_EXPIRES = int(os.environ.get('JWT_REFRESH_TOKEN_EXPIRES', 2592000))
    JWT_ALGORITHM = 'HS256'
    JWT_TOKEN_LOCATION = tuple(os.environ.get('JWT_TOKEN_LOCATION', 'headers,cookies').split(','))
    JWT_COOKIE_SECURE = _env_bool('JWT_COOKIE_SECURE', 'True')
    JWT_COOKIE_SAMESITE = os.environ.get('JWT_COOKIE_SAMESITE', 'Lax')
    JWT_COOKIE_CSRF_PROTECT = _env_bool('JWT_COOKIE_CSRF_PROTECT', 'True')

    # Rate limiting settings
    RATELIMIT_STORAGE_URI = os.environ.get('RATE_LIMIT_STORAGE_URL', 'memory://')
    RATELIMIT_DEFAULT = os.environ.get('RATE_LIMIT_DEFAULT', '100 per minute')
    RATELIMIT_ENABLED = True
    RELAY_RATE_LIMIT = os.environ.get('RELAY_RATE_LIMIT', '30 per minute')

    # Caching (dashboard stats)
    CACHE_TYPE = os.environ.get('CACHE_TYPE', 'SimpleCache')
    CACHE_DEFAULT_TIMEOUT = 300
    CACHE_KEY_PREFIX = 'dashboard:'
    STATS_CACHE_TIMEOUT = int(os.environ.get('STATS_CACHE_TIMEOUT', 60))

    # Command relay wait policies
    RELAY_PLAYBACK_INTERVAL = float(os.environ.get('RELAY_PLAYBACK_INTERVAL', 0.5))
    RELAY_PLAYBACK_TIMEOUT = float(os.environ.get('RELAY_PLAYBACK_TIMEOUT', 5.0))
    RELAY_PROCESS_INTERVAL = float(os.environ.get('RELAY_PROCESS_INTERVAL', 1.0))
    RELAY_PROCESS_TIMEOUT = float(os.environ.get('RELAY_PROCESS_TIMEOUT', 30.0))
    RELAY_PUSH_ENABLED = _env_bool('RELAY_PUSH_ENABLED', 'False')
    RELAY_CHANNEL_PREFIX = os.environ.get('RELAY_CHANNEL_PREFIX', 'relay')

    # Premium and custom command limits
    PREMIUM_MONTHLY_DAYS = int(os.environ.get('PREMIUM_MONTHLY_DAYS', 30))
    STANDARD_MAX_COMMANDS = int(os.environ.get('STANDARD_MAX_COMMANDS', 1))
    STANDARD_MAX_TRACKS = int(os.environ.get('STANDARD_MAX_TRACKS', 8))

    # Dashboard stats fallbacks
    STATS_STALE_AFTER_SECONDS = int(os.environ.get('STATS_STALE_AFTER_SECONDS', 900))
    STATS_FALLBACK_SERVERS = int(os.environ.get('STATS_FALLBACK_SERVERS', 80))
    STATS_FALLBACK_USERS = int(os.environ.get('STATS_FALLBACK_USERS', 4000))

    # Music status older than this is reported as an idle player
    MUSIC_STATUS_FRESHNESS_SECONDS = 30

    # CORS settings
    CORS_ORIGINS = _env_list('CORS_ORIGINS', 'http://localhost:3000')
    CORS_ALLOW_HEADERS = ['Content-Type', 'Authorization', 'X-Requested-With', 'X-CSRF-TOKEN']
    CORS_EXPOSE_HEADERS = ['X-Request-ID']
    CORS_ALLOW_CREDENTIALS = True
    CORS_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'OPTIONS']

    # Logging settings
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('API_LOG_FILE')
    LOG_JSON = _env_bool('LOG_JSON', 'False')

    # Security settings
    FORCE_HTTPS = False
    MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1MB
    CONTENT_SECURITY_POLICY = os.environ.get(
        'CONTENT_SECURITY_POLICY',
        "default-src 'self'; img-src 'self' data: https:"
    )

    # API versioning
    API_VERSION = '1.0.0'
    API_PREFIX = '/api'

    def __repr__(self):
        return f'<Config {self.ENV}>'


class DevelopmentConfig(Config):
    """Development configuration"""

    DEBUG = True
    TESTING = False
    ENV = 'development'

    # Extended logging for development
    LOG_LEVEL = 'DEBUG'

    # Plain-http local frontend
    JWT_COOKIE_SECURE = False


class TestingConfig(Config):
    """Testing configuration"""

    DEBUG = False
    TESTING = True
    ENV = 'testing'

    SQLALCHEMY_DATABASE_URI = os.environ.get('TEST_DATABASE_URL') or 'sqlite://'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    REDIS_URL = None

    SECRET_KEY = 'testing-secret-key'
    JWT_SECRET_KEY = 'testing-jwt-secret-key-with-enough-length'
    JWT_COOKIE_SECURE = False
    JWT_COOKIE_CSRF_PROTECT = False

    ADMIN_USER_IDS = ['100000000000000001']

    # Disable rate limiting and caching for tests
    RATELIMIT_ENABLED = False
    CACHE_TYPE = 'NullCache'

    # Logging to console only
    LOG_LEVEL = 'WARNING'
    LOG_FILE = None


class ProductionConfig(Config):
    """Production configuration"""

    DEBUG = False
    TESTING = False
    ENV = 'production'

    FORCE_HTTPS = True

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
        'pool_size': 10,
        'max_overflow': 10,
        'pool_timeout': 30,
    }

    # Enable secure cookies in production
    SESSION_COOKIE_SECURE = True
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Production logging
    LOG_LEVEL = 'INFO'
    LOG_JSON = True

    # Shared storage for multi-worker deployments
    RATELIMIT_STORAGE_URI = os.environ.get('RATE_LIMIT_STORAGE_URL', 'redis://redis:6379/0')
    CACHE_TYPE = os.environ.get('CACHE_TYPE', 'RedisCache')
    CACHE_REDIS_URL = os.environ.get('REDIS_URL', 'redis://redis:6379/0')


# Configuration mapping
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


def get_config(env: Optional[str] = None) -> Config:
    """
    Get configuration based on environment variable or default to development.

    Args:
        env: Environment name (optional)

    Returns:
        Config instance
    """
    env = env or os.environ.get('FLASK_ENV', 'development')
    return config.get(env, config['default'])()
