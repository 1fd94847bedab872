from flask import Blueprint, request, jsonify

import identity
from audit import audit
from errors import UpstreamFailure, ValidationError
from models import db, User
from request_context import issue_token, login_required
from utils import send_otp_email

auth_bp = Blueprint("auth", __name__, url_prefix="/api/auth")


def _payload():
    data = request.get_json(silent=True)
    if data is None:
        data = request.form.to_dict()
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _token_response(user, status):
    return jsonify({
        "success": True,
        "token": issue_token(user),
        "data": {"user": identity.serialize_user(user)},
    }), status


# ==========================================================
# 🚪 AUTHENTICATION ROUTES
# ==========================================================
@auth_bp.route("/register", methods=["POST"])
def register():
    user = identity.register(_payload())
    audit(user.id, "register", resource_type="auth")
    return _token_response(user, 201)


@auth_bp.route("/login", methods=["POST"])
def login():
    data = _payload()
    user = identity.authenticate(data.get("email"), data.get("password"))
    audit(user.id, "login", resource_type="auth")
    return _token_response(user, 200)


@auth_bp.route("/logout", methods=["POST"])
@login_required
def logout(requester):
    # tokens are stateless; the client discards its copy
    audit(requester.user_id, "logout", resource_type="auth")
    return jsonify({"success": True, "message": "Logged out successfully"})


@auth_bp.route("/send-otp", methods=["POST"])
@login_required
def send_otp(requester):
    user = db.session.get(User, requester.user_id)
    code = identity.issue_otp(user)
    db.session.commit()
    if not send_otp_email(user, code):
        raise UpstreamFailure("Failed to send OTP")
    audit(user.id, "otp_generated", resource_type="auth")
    return jsonify({"success": True, "message": "OTP sent successfully"})


@auth_bp.route("/verify-otp", methods=["POST"])
@login_required
def verify_otp(requester):
    user = db.session.get(User, requester.user_id)
    if not identity.verify_otp(user, _payload().get("otp")):
        raise ValidationError("Invalid or expired OTP", details={"otp": "Invalid or expired OTP"})
    identity.mark_verified(user)
    db.session.commit()
    audit(user.id, "otp_verified", resource_type="auth")
    return jsonify({
        "success": True,
        "message": "OTP verified successfully",
        "data": {"user": identity.serialize_user(user)},
    })


@auth_bp.route("/me")
@login_required
def me(requester):
    user = db.session.get(User, requester.user_id)
    return jsonify({"success": True, "data": {"user": identity.serialize_user(user)}})
