"""Environment-aware configuration for the Flask application."""
import os
import tempfile
from datetime import timedelta


class BaseConfig:
    def __init__(self) -> None:
        # Defaults for local dev: SQLite db and a non-empty secret. Override via env for production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret-key-change-me")
        self.JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-jwt-secret-change-me")
        self.JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
        self.JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", 60 * 24))
        self.JWT_COOKIE_NAME = os.getenv("JWT_COOKIE_NAME", "token")
        db_url = os.getenv("DATABASE_URL")
        if db_url and "db_host" not in db_url:
            self.SQLALCHEMY_DATABASE_URI = db_url
        else:
            self.SQLALCHEMY_DATABASE_URI = os.getenv(
                "SQLITE_URL",
                f"sqlite:///{os.path.join(os.getcwd(), 'instance', 'barangay.db')}",
            )
        self.SQLALCHEMY_TRACK_MODIFICATIONS = False
        if not self.SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
            self.SQLALCHEMY_ENGINE_OPTIONS = {
                "pool_size": int(os.getenv("DB_POOL_SIZE", 10)),
                "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", 20)),
                "pool_timeout": int(os.getenv("DB_POOL_TIMEOUT", 30)),
                "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", 1800)),
            }
        self.SESSION_COOKIE_HTTPONLY = True
        self.REMEMBER_COOKIE_HTTPONLY = True
        self.SESSION_COOKIE_SAMESITE = "Lax"
        self.PERMANENT_SESSION_LIFETIME = timedelta(days=7)
        self.PREFERRED_URL_SCHEME = os.getenv("PREFERRED_URL_SCHEME", "https")
        self.WTF_CSRF_TIME_LIMIT = 3600
        self.WTF_CSRF_ENABLED = True
        self.PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:5000").rstrip("/")
        self.MAIL_SERVER = os.getenv("MAIL_SERVER", "")
        self.MAIL_PORT = int(os.getenv("MAIL_PORT", 25))
        self.MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
        self.MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")
        self.MAIL_USE_TLS = os.getenv("MAIL_USE_TLS", "true").lower() == "true"
        self.MAIL_USE_SSL = os.getenv("MAIL_USE_SSL", "false").lower() == "true"
        self.MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "")
        self.SMS_ACCOUNT_SID = os.getenv("SMS_ACCOUNT_SID", "")
        self.SMS_AUTH_TOKEN = os.getenv("SMS_AUTH_TOKEN", "")
        self.SMS_FROM_NUMBER = os.getenv("SMS_FROM_NUMBER", "")
        self.SMS_API_BASE = os.getenv("SMS_API_BASE", "https://api.twilio.com/2010-04-01")
        self.SMS_TIMEOUT_SECONDS = int(os.getenv("SMS_TIMEOUT_SECONDS", 10))
        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
        self.LOG_DIR = os.getenv("LOG_DIR", os.path.join(os.getcwd(), "logs"))
        self.DEFAULT_ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "admin")
        self.DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@barangay.gov.ph")
        self.DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "Admin@12345!")
        self.BLOB_STORAGE_DIR = os.getenv(
            "BLOB_STORAGE_DIR",
            os.path.join(os.getcwd(), "instance", "blobs"),
        )
        self.MAX_TEMPLATE_BYTES = int(os.getenv("MAX_TEMPLATE_BYTES", 10 * 1024 * 1024))
        self.MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", 8 * 1024 * 1024))
        self.MAX_CONTENT_LENGTH = int(os.getenv("MAX_REQUEST_BYTES", 16 * 1024 * 1024))
        self.DOCUMENT_VALIDITY_DAYS = int(os.getenv("DOCUMENT_VALIDITY_DAYS", 180))
        self.TRANSACTION_CODE_ATTEMPTS = int(os.getenv("TRANSACTION_CODE_ATTEMPTS", 6))
        self.DOCUMENT_NUMBER_ATTEMPTS = int(os.getenv("DOCUMENT_NUMBER_ATTEMPTS", 5))
        self.GUEST_TTL_HOURS = int(os.getenv("GUEST_TTL_HOURS", 24))
        self.STATS_CACHE_SECONDS = int(os.getenv("STATS_CACHE_SECONDS", 60))
        self.SSE_HEARTBEAT_SECONDS = int(os.getenv("SSE_HEARTBEAT_SECONDS", 25))
        self.NOTIFICATIONS_PAGE_SIZE = int(os.getenv("NOTIFICATIONS_PAGE_SIZE", 20))
        self.LOGIN_ATTEMPT_LIMIT = int(os.getenv("LOGIN_ATTEMPT_LIMIT", 10))
        self.LOGIN_ATTEMPT_WINDOW_SECONDS = int(os.getenv("LOGIN_ATTEMPT_WINDOW_SECONDS", 15 * 60))
        self.PASSWORD_RESET_TTL_MINUTES = int(os.getenv("PASSWORD_RESET_TTL_MINUTES", 15))
        self.PASSWORD_RESET_OTP_TTL_MINUTES = int(os.getenv("PASSWORD_RESET_OTP_TTL_MINUTES", 10))
        self.DOCUMENT_FEES = {
            "barangay_clearance": float(os.getenv("FEE_BARANGAY_CLEARANCE", 50)),
            "residency_certificate": float(os.getenv("FEE_RESIDENCY_CERTIFICATE", 50)),
            "business_permit": float(os.getenv("FEE_BUSINESS_PERMIT", 100)),
            "indigency_certificate": float(os.getenv("FEE_INDIGENCY_CERTIFICATE", 0)),
            "id_application": float(os.getenv("FEE_ID_APPLICATION", 75)),
        }


class DevelopmentConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = True
        self.ENV = "development"
        self.SESSION_COOKIE_SECURE = False
        self.REMEMBER_COOKIE_SECURE = False


class ProductionConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.DEBUG = False
        self.ENV = "production"
        self.SESSION_COOKIE_SECURE = True
        self.REMEMBER_COOKIE_SECURE = True
        # No usable defaults for signing secrets in production.
        self.SECRET_KEY = os.getenv("SECRET_KEY", "")
        self.JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "")
        if not self.SECRET_KEY or not self.JWT_SECRET_KEY:
            raise RuntimeError("SECRET_KEY and JWT_SECRET_KEY must be set in production")
        self.USE_X_SENDFILE = os.getenv("USE_X_SENDFILE", "false").lower() == "true"


class TestingConfig(BaseConfig):
    def __init__(self) -> None:
        super().__init__()
        self.TESTING = True
        self.DEBUG = False
        self.ENV = "testing"
        scratch = tempfile.mkdtemp(prefix="barangay-test-")
        self.SQLALCHEMY_DATABASE_URI = f"sqlite:///{os.path.join(scratch, 'test.db')}"
        self.BLOB_STORAGE_DIR = os.path.join(scratch, "blobs")
        self.LOG_DIR = os.path.join(scratch, "logs")
        self.WTF_CSRF_ENABLED = False
        self.SESSION_COOKIE_SECURE = False
        self.PREFERRED_URL_SCHEME = "http"
        self.SECRET_KEY = "testing-secret"
        self.JWT_SECRET_KEY = "testing-jwt-secret"
        self.DEFAULT_ADMIN_PASSWORD = ""
        self.MAIL_SERVER = ""
        self.SMS_ACCOUNT_SID = ""
