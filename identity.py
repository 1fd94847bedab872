"""User records, password checks and the one-time-password lifecycle.

Nothing here commits except ``register``; callers that change a user (OTP
issue, verification, profile edits) commit once their whole operation is
done so a failed follow-up step leaves no half-written state behind.
"""
import re
import hmac
import secrets
import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError
from werkzeug.security import generate_password_hash, check_password_hash

from errors import DuplicateIdentity, InvalidCredentials, ValidationError
from models import db, User, utcnow
from utils import parse_iso_date

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^\w+([.-]?\w+)*@\w+([.-]?\w+)*(\.\w{2,3})+$")
NATIONAL_ID_RE = re.compile(r"^\d{12}$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{1,14}$")
PINCODE_RE = re.compile(r"^\d{6}$")

PROFILE_FIELDS = ("name", "phone", "date_of_birth", "address")
ADDRESS_FIELDS = ("street", "city", "state", "pincode")


def _clean_address(raw, errors):
    if raw in (None, ""):
        return None
    if not isinstance(raw, dict):
        errors["address"] = "Address must be an object"
        return None
    address = {k: str(raw[k]).strip() for k in ADDRESS_FIELDS if raw.get(k) not in (None, "")}
    if "pincode" in address and not PINCODE_RE.match(address["pincode"]):
        errors["address.pincode"] = "Please add a valid 6-digit pincode"
    return address


def _check_name(value, errors):
    name = str(value or "").strip()
    if not name:
        errors["name"] = "Please add a name"
    elif len(name) > 50:
        errors["name"] = "Name cannot be more than 50 characters"
    return name


def _check_phone(value, errors):
    phone = str(value or "").strip()
    if not phone:
        errors["phone"] = "Please add a phone number"
    elif not PHONE_RE.match(phone):
        errors["phone"] = "Please add a valid phone number"
    return phone


def validate_profile(data):
    errors = {}
    cleaned = {"name": _check_name(data.get("name"), errors)}

    email = str(data.get("email") or "").strip().lower()
    if not email:
        errors["email"] = "Please add an email"
    elif not EMAIL_RE.match(email):
        errors["email"] = "Please add a valid email"
    cleaned["email"] = email

    national_id = str(data.get("national_id") or "").strip()
    if not national_id:
        errors["national_id"] = "Please add national ID number"
    elif not NATIONAL_ID_RE.match(national_id):
        errors["national_id"] = "Please add a valid 12-digit national ID number"
    cleaned["national_id"] = national_id

    password = data.get("password") or ""
    if not isinstance(password, str):
        errors["password"] = "Password must be a string"
    elif not password:
        errors["password"] = "Please add a password"
    elif len(password) < 6:
        errors["password"] = "Password must be at least 6 characters"
    cleaned["password"] = password

    cleaned["phone"] = _check_phone(data.get("phone"), errors)

    dob = parse_iso_date(data.get("date_of_birth"), "date_of_birth", errors)
    if dob is None and "date_of_birth" not in errors:
        errors["date_of_birth"] = "Please add date of birth"
    cleaned["date_of_birth"] = dob

    cleaned["address"] = _clean_address(data.get("address"), errors)

    if errors:
        raise ValidationError("Invalid registration data", details=errors)
    return cleaned


def register(data):
    profile = validate_profile(data)

    taken = User.query.filter(
        (User.email == profile["email"]) | (User.national_id == profile["national_id"])
    ).first()
    if taken:
        raise DuplicateIdentity("A user with this email or national ID already exists")

    user = User(
        name=profile["name"],
        email=profile["email"],
        national_id=profile["national_id"],
        password_hash=generate_password_hash(profile["password"]),
        phone=profile["phone"],
        date_of_birth=profile["date_of_birth"],
        address=profile["address"],
    )
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        # lost a race against a concurrent registration
        db.session.rollback()
        raise DuplicateIdentity("A user with this email or national ID already exists")
    logger.info("Registered user %s", user.id)
    return user


def authenticate(email, password):
    if not email or not password:
        raise ValidationError("Please provide an email and password")
    if not isinstance(email, str) or not isinstance(password, str):
        raise ValidationError("Email and password must be strings")
    user = User.query.filter_by(email=email.strip().lower()).first()
    if not user or not check_password_hash(user.password_hash, password):
        raise InvalidCredentials()
    return user


def find_by_national_id(national_id):
    return User.query.filter_by(national_id=str(national_id).strip()).first()


# ==========================================================
# 🔑 ONE-TIME PASSWORDS
# ==========================================================
def issue_otp(user, now=None):
    """Attach a fresh 6-digit code to ``user``, replacing any pending one."""
    now = now or utcnow()
    code = str(secrets.randbelow(900000) + 100000)
    user.otp_code = code
    user.otp_expires_at = now + timedelta(seconds=current_app.config["OTP_EXPIRY_SECONDS"])
    return code


def verify_otp(user, candidate, now=None):
    if not user.otp_code or not user.otp_expires_at or not candidate:
        return False
    now = now or utcnow()
    if now > user.otp_expires_at:
        return False
    # compare_digest rejects non-ASCII str; bytes take any input
    return hmac.compare_digest(user.otp_code.encode(), str(candidate).strip().encode())


def mark_verified(user):
    user.is_verified = True
    user.otp_code = None
    user.otp_expires_at = None


# ==========================================================
# 👤 PROFILE
# ==========================================================
def update_profile(user, patch):
    errors = {}
    for key in patch:
        if key not in PROFILE_FIELDS:
            errors[key] = "Field cannot be modified"
    if "name" in patch:
        user.name = _check_name(patch["name"], errors)
    if "phone" in patch:
        user.phone = _check_phone(patch["phone"], errors)
    if "date_of_birth" in patch:
        dob = parse_iso_date(patch["date_of_birth"], "date_of_birth", errors)
        if dob is None and "date_of_birth" not in errors:
            errors["date_of_birth"] = "Please add date of birth"
        user.date_of_birth = dob
    if "address" in patch:
        user.address = _clean_address(patch["address"], errors)
    if errors:
        db.session.rollback()
        raise ValidationError("Invalid profile data", details=errors)
    return user


def serialize_user(user, private=True):
    data = {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "national_id": user.national_id,
        "phone": user.phone,
    }
    if private:
        data.update({
            "date_of_birth": user.date_of_birth.isoformat() if user.date_of_birth else None,
            "address": user.address or {},
            "is_verified": user.is_verified,
            "role": user.role,
            "created_at": user.created_at.isoformat() if user.created_at else None,
        })
    return data


def user_summary(user):
    return {"id": user.id, "name": user.name, "email": user.email, "national_id": user.national_id}
