"""
Configuration classes for the EducAfric backend
"""
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
INSTANCE_PATH = os.path.join(BASE_DIR, 'instance')


def database_uri(default_name='educafric.db'):
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith("postgres://"):
        # Render and Heroku still hand out the old scheme
        return database_url.replace("postgres://", "postgresql://", 1)
    if database_url:
        return database_url
    return f"sqlite:///{os.path.join(INSTANCE_PATH, default_name)}"


DEV_SECRET_KEY = 'dev-secret-key-change-me'


class Config:
    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY', DEV_SECRET_KEY)
    DEBUG = False
    TESTING = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Session
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'
    PERMANENT_SESSION_LIFETIME = 3600  # 1 hour

    # Database
    SQLALCHEMY_DATABASE_URI = database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Bearer tokens for mobile and offline clients
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY', SECRET_KEY)
    JWT_ALGORITHM = 'HS256'
    JWT_EXPIRES_MINUTES = int(os.environ.get('JWT_EXPIRES_MINUTES', 60 * 24 * 7))

    # Rate limiting; a shared store (redis://...) keeps counters across gunicorn workers
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', os.environ.get('REDIS_URL', 'memory://'))
    RATELIMIT_HEADERS_ENABLED = True
    # Number of trusted reverse proxies in front of the app, 0 when exposed directly
    PROXY_FIX = int(os.environ.get('PROXY_FIX', 0))

    # Public URL used in bulletin QR codes
    BASE_URL = os.environ.get('BASE_URL', 'https://www.educafric.com')

    # Messaging gateways
    VONAGE_API_KEY = os.environ.get('VONAGE_API_KEY')
    VONAGE_API_SECRET = os.environ.get('VONAGE_API_SECRET')
    VONAGE_SMS_FROM = os.environ.get('VONAGE_SMS_FROM', 'EDUCAFRIC')
    VONAGE_WHATSAPP_FROM = os.environ.get('VONAGE_WHATSAPP_FROM')
    VONAGE_MESSAGES_URL = os.environ.get('VONAGE_MESSAGES_URL', 'https://api.nexmo.com/v1/messages')
    FCM_SERVER_KEY = os.environ.get('FCM_SERVER_KEY')
    FCM_URL = os.environ.get('FCM_URL', 'https://fcm.googleapis.com/fcm/send')
    DEFAULT_COUNTRY_CODE = os.environ.get('DEFAULT_COUNTRY_CODE', '237')
    NOTIFICATION_MAX_ATTEMPTS = 3

    # Bulletin verification
    SIGNATURE_SALT = os.environ.get('SIGNATURE_SALT', 'educafric-bulletin')
    VERIFICATION_RATE_LIMIT = int(os.environ.get('VERIFICATION_RATE_LIMIT', 20))
    VERIFICATION_VALID_DAYS = int(os.environ.get('VERIFICATION_VALID_DAYS', 0))  # 0 means no expiry

    # Platform
    SITE_ADMIN_USERNAME = os.environ.get('SITE_ADMIN_USERNAME', 'siteadmin')
    SITE_ADMIN_PASSWORD = os.environ.get('SITE_ADMIN_PASSWORD', 'change-me-now')
    SANDBOX_SCHOOL_ID = os.environ.get('SANDBOX_SCHOOL_ID')
    TRIAL_DAYS = int(os.environ.get('TRIAL_DAYS', 30))
    OFFLINE_BATCH_LIMIT = int(os.environ.get('OFFLINE_BATCH_LIMIT', 100))

    @staticmethod
    def init_app(app):
        if not os.path.exists(INSTANCE_PATH):
            os.makedirs(INSTANCE_PATH)


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing-secret'
    JWT_SECRET_KEY = 'testing-jwt-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    WTF_CSRF_ENABLED = False
    RATELIMIT_STORAGE_URI = 'memory://'
    VONAGE_API_KEY = None
    VONAGE_API_SECRET = None
    FCM_SERVER_KEY = None
    SITE_ADMIN_PASSWORD = 'admin-pass'

    @staticmethod
    def init_app(app):
        pass


class ProductionConfig(Config):
    PREFERRED_URL_SCHEME = 'https'
    # Render terminates TLS in one proxy hop
    PROXY_FIX = int(os.environ.get('PROXY_FIX', 1))

    # Security
    SESSION_COOKIE_SECURE = True

    # Database
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_size': 10,
        'pool_timeout': 30,
        'pool_recycle': 1800,  # Recycle connections after 30 minutes
        'max_overflow': 2
    }

    @staticmethod
    def init_app(app):
        Config.init_app(app)
        if app.config['SECRET_KEY'] in (None, DEV_SECRET_KEY):
            app.config['SECRET_KEY'] = os.urandom(24).hex()
        # Bearer tokens are never signed with the key published in this file
        if app.config['JWT_SECRET_KEY'] in (None, DEV_SECRET_KEY):
            app.config['JWT_SECRET_KEY'] = app.config['SECRET_KEY']


config_by_name = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(name=None):
    name = name or os.environ.get('EDUCAFRIC_ENV', 'development')
    return config_by_name.get(name, DevelopmentConfig)
