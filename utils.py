import os
import uuid
import base64
import logging
import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from email.utils import formataddr
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from datetime import date
from flask import current_app, request
from errors import ValidationError

logger = logging.getLogger(__name__)


# ==========================================================
# 🔐 ENCRYPTION / DECRYPTION
# ==========================================================
def _encryption_key() -> bytes:
    key_b64 = current_app.config.get("ENCRYPTION_KEY_B64")
    if not key_b64:
        raise RuntimeError("ENCRYPTION_KEY_B64 not set in .env; generate one with base64.b64encode(os.urandom(32))")
    return base64.b64decode(key_b64)


def encrypt_bytes(data: bytes):
    """Encrypt file bytes using AES-GCM (256-bit)."""
    aesgcm = AESGCM(_encryption_key())
    nonce = os.urandom(12)  # 96-bit nonce
    ciphertext = aesgcm.encrypt(nonce, data, None)
    return base64.b64encode(nonce).decode(), ciphertext


def decrypt_bytes(nonce_b64: str, ciphertext: bytes) -> bytes:
    """Decrypt file bytes using AES-GCM."""
    aesgcm = AESGCM(_encryption_key())
    nonce = base64.b64decode(nonce_b64)
    return aesgcm.decrypt(nonce, ciphertext, None)


# ==========================================================
# 💾 FILE STORE (key -> bytes)
# ==========================================================
def _stored_path(stored_name: str) -> str:
    return os.path.join(current_app.config["UPLOAD_FOLDER"], stored_name)


def save_file_bytes(ciphertext: bytes) -> str:
    """Write encrypted bytes under a fresh key and return the key."""
    os.makedirs(current_app.config["UPLOAD_FOLDER"], exist_ok=True)
    stored_name = str(uuid.uuid4()) + ".bin"
    with open(_stored_path(stored_name), "wb") as f:
        f.write(ciphertext)
    return stored_name


def read_file_bytes(stored_name: str) -> bytes:
    with open(_stored_path(stored_name), "rb") as f:
        return f.read()


def remove_file(stored_name: str):
    """Delete a stored file. A file that is already gone counts as removed."""
    try:
        os.remove(_stored_path(stored_name))
    except FileNotFoundError:
        logger.info("Stored file %s already absent", stored_name)


# ==========================================================
# 📧 EMAIL SENDING (UTF-8 SAFE)
# ==========================================================
def send_email(to_email, subject, body):
    """
    Sends an email over SMTP with UTF-8 support.
    Returns True on success, False on any delivery failure.
    """
    cfg = current_app.config
    if cfg.get("MAIL_SUPPRESS_SEND"):
        logger.info("Mail suppressed: %r to %s", subject, to_email)
        return True

    smtp_host = cfg["SMTP_HOST"]
    smtp_port = cfg["SMTP_PORT"]
    smtp_user = cfg["SMTP_USER"]
    from_email = cfg["FROM_EMAIL"] or smtp_user
    if not from_email:
        logger.error("Email not sent to %s: no FROM_EMAIL or SMTP_USER configured", to_email)
        return False

    logger.info("Attempting SMTP => host=%s user=%s port=%s", smtp_host, smtp_user, smtp_port)

    try:
        msg = MIMEMultipart()
        msg["From"] = formataddr((cfg["FROM_NAME"], from_email))
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.attach(MIMEText(body, "plain", "utf-8"))

        with smtplib.SMTP(smtp_host, smtp_port, timeout=20) as server:
            server.starttls()
            if smtp_user:
                server.login(smtp_user, cfg["SMTP_PASS"])
            server.send_message(msg)

        logger.info("Email successfully sent to %s", to_email)
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email send failed to %s: %s", to_email, e)
        return False


def send_otp_email(user, code):
    minutes = max(1, current_app.config["OTP_EXPIRY_SECONDS"] // 60)
    subject = "OTP Verification - Government Document Portal"
    body = (
        f"Hi {user.name},\n\n"
        f"Your One-Time Password (OTP) for secure access to your government documents is:\n\n"
        f"    {code}\n\n"
        f"This OTP is valid for {minutes} minutes. Do not share this code with anyone.\n\n"
        f"Government Document Management System\n"
        f"This is an automated message, please do not reply."
    )
    return send_email(user.email, subject, body)


# ==========================================================
# 📅 INPUT PARSING
# ==========================================================
def parse_iso_date(value, field, errors):
    """Parse YYYY-MM-DD, recording a field error instead of raising."""
    if value in (None, ""):
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        errors[field] = "Please use a valid date (YYYY-MM-DD)"
        return None


def int_arg(name, default):
    """Read a positive integer query-string argument."""
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value < 1:
        raise ValidationError(f"Invalid {name}", details={name: "Must be a positive integer"})
    return value
