from flask import Blueprint, request, jsonify

import access
import identity
from audit import audit
from errors import Forbidden, NotFound, ValidationError
from models import db, User
from request_context import admin_required, login_required

users_bp = Blueprint("users", __name__, url_prefix="/api/users")


def _load_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    return user


@users_bp.route("", methods=["GET"])
@admin_required
def list_users(requester):
    users = db.session.scalars(db.select(User).order_by(User.id)).all()
    return jsonify({
        "success": True,
        "count": len(users),
        "data": [identity.serialize_user(u) for u in users],
    })


@users_bp.route("/search", methods=["GET"])
@login_required
def search(requester):
    national_id = request.args.get("national_id")
    if not national_id:
        raise ValidationError("Please provide national ID to search", details={"national_id": "Required"})
    user = identity.find_by_national_id(national_id)
    if not user:
        raise NotFound("User not found with this national ID")
    return jsonify({"success": True, "data": identity.serialize_user(user, private=False)})


@users_bp.route("/<int:user_id>", methods=["GET"])
@login_required
def get_user(requester, user_id):
    if not access.can_manage_user(user_id, requester):
        raise Forbidden("Not authorized to view this user")
    return jsonify({"success": True, "data": identity.serialize_user(_load_user(user_id))})


@users_bp.route("/<int:user_id>", methods=["PUT"])
@login_required
def update_user(requester, user_id):
    if not access.can_manage_user(user_id, requester):
        raise Forbidden("Not authorized to update this user")
    patch = request.get_json(silent=True)
    if not isinstance(patch, dict):
        raise ValidationError("Request body must be a JSON object")
    user = identity.update_profile(_load_user(user_id), patch)
    db.session.commit()
    audit(requester.user_id, "profile_update", resource_type="user", resource_id=user.id,
          details={"fields": sorted(patch)})
    return jsonify({"success": True, "data": identity.serialize_user(user)})
