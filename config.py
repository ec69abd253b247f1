import os
import re
from datetime import timedelta
from dotenv import load_dotenv

# Get the project base directory
BASE_DIR = os.path.abspath(os.path.dirname(__file__))

load_dotenv(os.path.join(BASE_DIR, '.env'))


def parse_expires_in(value, default=timedelta(days=7)):
    """Turns '7d', '12h', '30m' or plain seconds into a timedelta."""
    if not value:
        return default
    match = re.match(r'^(\d+)\s*([smhd]?)$', str(value).strip())
    if not match:
        return default
    amount, unit = int(match.group(1)), match.group(2) or 's'
    return {
        's': timedelta(seconds=amount),
        'm': timedelta(minutes=amount),
        'h': timedelta(hours=amount),
        'd': timedelta(days=amount),
    }[unit]


class Config:
    """Base configuration"""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'igbaja-agritech-dev-secret'
    ENVIRONMENT = os.environ.get('FLASK_ENV') or 'development'

    SQLALCHEMY_TRACK_MODIFICATIONS = False # Suppress overhead warning

    # JWT Configuration (header or the 'jwt' cookie)
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET') or 'igbaja-agritech-jwt-secret'
    JWT_ACCESS_TOKEN_EXPIRES = parse_expires_in(os.environ.get('JWT_EXPIRES_IN'))
    JWT_TOKEN_LOCATION = ['headers', 'cookies']
    JWT_ACCESS_COOKIE_NAME = 'jwt'
    JWT_COOKIE_CSRF_PROTECT = False
    JWT_COOKIE_SECURE = False

    # Client
    CLIENT_URL = os.environ.get('CLIENT_URL') or 'http://localhost:3000'
    CORS_ORIGINS = [CLIENT_URL, 'http://localhost:3000']

    # Paystack
    PAYSTACK_SECRET_KEY = os.environ.get('PAYSTACK_SECRET_KEY') or ''
    PAYSTACK_BASE_URL = os.environ.get('PAYSTACK_BASE_URL') or 'https://api.paystack.co'

    # Twilio SMS
    TWILIO_ACCOUNT_SID = os.environ.get('TWILIO_ACCOUNT_SID')
    TWILIO_AUTH_TOKEN = os.environ.get('TWILIO_AUTH_TOKEN')
    TWILIO_PHONE_NUMBER = os.environ.get('TWILIO_PHONE_NUMBER')

    # WhatsApp Business API
    WHATSAPP_BASE_URL = 'https://graph.facebook.com/v17.0'
    WHATSAPP_PHONE_ID = os.environ.get('WHATSAPP_PHONE_ID')
    WHATSAPP_ACCESS_TOKEN = os.environ.get('WHATSAPP_ACCESS_TOKEN')

    # Mail
    MAIL_SERVER = os.environ.get('MAIL_SERVER') or 'smtp.gmail.com'
    MAIL_PORT = int(os.environ.get('MAIL_PORT') or 587)
    MAIL_USE_TLS = True
    MAIL_USE_SSL = False
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER') or 'noreply@igbaja-agritech.ng'

    # Rate limiting (per user)
    RATE_LIMIT_MAX_REQUESTS = 100
    RATE_LIMIT_WINDOW = timedelta(minutes=15)

    # Background jobs
    SCHEDULER_ENABLED = True

    # File Upload Configuration
    UPLOAD_FOLDER = os.path.join(BASE_DIR, 'static', 'uploads')
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024  # 10MB max upload

    # Pagination
    ITEMS_PER_PAGE = 20

class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get('DEV_DATABASE_URL') or \
        'sqlite:///' + os.path.join(BASE_DIR, 'igbaja_agritech.db')

class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    ENVIRONMENT = 'production'
    JWT_COOKIE_SECURE = True
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'mysql+pymysql://user:@localhost/igbaja_agritech'

class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    ENVIRONMENT = 'test'
    SQLALCHEMY_DATABASE_URI = os.environ.get('TEST_DATABASE_URL') or 'sqlite://'
    SCHEDULER_ENABLED = False
    MAIL_SUPPRESS_SEND = True
    PAYSTACK_SECRET_KEY = 'sk_test_igbaja'
    TWILIO_ACCOUNT_SID = None
    TWILIO_AUTH_TOKEN = None

config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
