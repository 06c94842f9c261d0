import os

basedir = os.path.abspath(os.path.dirname(__file__))

class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or "sqlite:///" + os.path.join(basedir, "automations.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SECRET_KEY = os.environ.get("SECRET_KEY") or "a-dev-secret-key-that-is-not-so-secret"
    JWT_SECRET_KEY = os.environ.get("JWT_SECRET_KEY") or SECRET_KEY

    CORS_ORIGINS = [o.strip() for o in os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask-Mail configuration
    MAIL_SERVER = os.environ.get('MAIL_SERVER', 'smtp.gmail.com')
    MAIL_PORT = int(os.environ.get('MAIL_PORT', 587))
    MAIL_USE_TLS = os.environ.get('MAIL_USE_TLS', 'true').lower() in ['true', 'on', '1']
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER') or MAIL_USERNAME
    MAIL_REPLY_TO = os.environ.get('MAIL_REPLY_TO')

    # SMS provider (Twilio-compatible REST API)
    SMS_API_URL = os.environ.get('SMS_API_URL', 'https://api.twilio.com/2010-04-01')
    SMS_ACCOUNT_SID = os.environ.get('SMS_ACCOUNT_SID')
    SMS_AUTH_TOKEN = os.environ.get('SMS_AUTH_TOKEN')
    SMS_FROM_NUMBER = os.environ.get('SMS_FROM_NUMBER')

    # Automation engine
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'true').lower() in ['true', 'on', '1']
    AUTOMATION_TICK_SECONDS = int(os.environ.get('AUTOMATION_TICK_SECONDS', 60))
    AUTOMATION_TICK_WINDOW_MINUTES = int(os.environ.get('AUTOMATION_TICK_WINDOW_MINUTES', 5))
    AUTOMATION_MAX_ATTEMPTS = int(os.environ.get('AUTOMATION_MAX_ATTEMPTS', 5))
    AUTOMATION_RETRY_BASE_SECONDS = int(os.environ.get('AUTOMATION_RETRY_BASE_SECONDS', 60))
    AUTOMATION_RETRY_MAX_SECONDS = int(os.environ.get('AUTOMATION_RETRY_MAX_SECONDS', 6 * 3600))
    AUTOMATION_CLAIM_GRACE_MINUTES = int(os.environ.get('AUTOMATION_CLAIM_GRACE_MINUTES', 15))
    TRANSPORT_TIMEOUT_SECONDS = float(os.environ.get('TRANSPORT_TIMEOUT_SECONDS', 20))


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    JWT_SECRET_KEY = "test-jwt-secret-with-enough-length-for-hs256"
    MAIL_SUPPRESS_SEND = True
    MAIL_DEFAULT_SENDER = "studio@example.com"
    SCHEDULER_ENABLED = False
    AUTOMATION_RETRY_BASE_SECONDS = 60
    TRANSPORT_TIMEOUT_SECONDS = 2
