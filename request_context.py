"""Resolve the bearer token on a request to the acting user."""
from dataclasses import dataclass
from functools import wraps

from flask_jwt_extended import JWTManager, create_access_token, get_jwt_identity, verify_jwt_in_request
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from errors import Forbidden, Unauthorized, error_response
from models import db, User

jwt = JWTManager()


@dataclass(frozen=True)
class RequestContext:
    user_id: int
    role: str
    is_verified: bool

    @property
    def is_admin(self):
        return self.role == "admin"


def issue_token(user):
    return create_access_token(identity=str(user.id), additional_claims={"role": user.role})


def resolve_request_context():
    """Verify the JWT and load the user so the verification flag is current."""
    try:
        verify_jwt_in_request()
        identity = get_jwt_identity()
    except (JWTExtendedException, PyJWTError):
        raise Unauthorized("Not authorized to access this route")
    try:
        user = db.session.get(User, int(identity))
    except (TypeError, ValueError):
        user = None
    if not user:
        raise Unauthorized("Not authorized to access this route")
    return RequestContext(user_id=user.id, role=user.role, is_verified=user.is_verified)


def login_required(func):
    """Ensures routes require a valid bearer token."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        return func(resolve_request_context(), *args, **kwargs)
    return wrapper


def verified_required(func):
    """Like login_required, and the account must have passed OTP verification."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        requester = resolve_request_context()
        if not requester.is_verified:
            raise Forbidden("Please verify your account first")
        return func(requester, *args, **kwargs)
    return wrapper


def admin_required(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        requester = resolve_request_context()
        if not requester.is_admin:
            raise Forbidden(f"User role {requester.role} is not authorized to access this route")
        return func(requester, *args, **kwargs)
    return wrapper


@jwt.unauthorized_loader
def _missing_token(reason):
    return error_response(Unauthorized("Not authorized to access this route"))


@jwt.invalid_token_loader
def _invalid_token(reason):
    return error_response(Unauthorized("Not authorized to access this route"))


@jwt.expired_token_loader
def _expired_token(jwt_header, jwt_payload):
    return error_response(Unauthorized("Token has expired"))
