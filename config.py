import os
import base64
from datetime import timedelta
from dotenv import load_dotenv
load_dotenv()

BASE_DIR = os.path.abspath(os.path.dirname(__file__))
UPLOAD_DIR = os.path.join(BASE_DIR, "uploads")


def _flag(name, default="false"):
    return (os.getenv(name) or default).strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev-secret")
    SQLALCHEMY_DATABASE_URI = os.getenv("DATABASE_URL") or f"sqlite:///{os.path.join(BASE_DIR, 'app.db')}"
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", UPLOAD_DIR)
    ALLOWED_EXT = {"pdf", "png", "jpg", "jpeg"}
    MAX_CONTENT_LENGTH = 10 * 1024 * 1024

    # Bearer tokens
    JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-jwt-secret")
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=int(os.getenv("JWT_EXPIRE_DAYS") or 30))

    # AES-256-GCM key in base64 (decode before use)
    ENCRYPTION_KEY_B64 = os.getenv("ENCRYPTION_KEY")

    OTP_EXPIRY_SECONDS = int(os.getenv("OTP_EXPIRY_SECONDS") or 300)

    # SMTP (optional)
    SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
    SMTP_PORT = int(os.getenv("SMTP_PORT") or 587)
    SMTP_USER = os.getenv("SMTP_USER")
    SMTP_PASS = os.getenv("SMTP_PASS")
    FROM_EMAIL = os.getenv("FROM_EMAIL") or os.getenv("SMTP_USER")
    FROM_NAME = os.getenv("FROM_NAME", "Govt Doc System")
    MAIL_SUPPRESS_SEND = _flag("MAIL_SUPPRESS_SEND")

    # Audit entries are written on the scheduler's worker threads
    AUDIT_ASYNC = _flag("AUDIT_ASYNC", "true")
    AUDIT_DRAIN_TIMEOUT = int(os.getenv("AUDIT_DRAIN_TIMEOUT") or 5)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    DOCUMENTS_PER_PAGE = 10
    LOGS_PER_PAGE = 50


class TestingConfig(Config):
    TESTING = True
    AUDIT_ASYNC = False
    MAIL_SUPPRESS_SEND = True
    ENCRYPTION_KEY_B64 = base64.b64encode(os.urandom(32)).decode()
    JWT_SECRET_KEY = "test-jwt-secret-with-enough-length-for-hs256"
