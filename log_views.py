from datetime import datetime

from flask import Blueprint, request, jsonify

import access
import audit
from errors import Forbidden, ValidationError
from models import AUDIT_ACTIONS
from request_context import admin_required, login_required
from utils import int_arg

logs_bp = Blueprint("logs", __name__, url_prefix="/api/logs")


def _datetime_arg(name):
    raw = request.args.get(name)
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"Invalid {name}", details={name: "Please use an ISO 8601 date"})


@logs_bp.route("", methods=["GET"])
@admin_required
def list_logs(requester):
    action = request.args.get("action")
    if action and action not in AUDIT_ACTIONS:
        raise ValidationError("Invalid action", details={"action": "Unknown audit action"})
    page = int_arg("page", 1)
    pagination = audit.query_logs(
        action=action,
        user_id=int_arg("user_id", None),
        start=_datetime_arg("start_date"),
        end=_datetime_arg("end_date"),
        page=page,
        limit=int_arg("limit", None),
    )
    return jsonify({
        "success": True,
        "count": len(pagination.items),
        "total": pagination.total,
        "pagination": {"page": page, "pages": pagination.pages},
        "data": [entry.to_dict() for entry in pagination.items],
    })


@logs_bp.route("/stats", methods=["GET"])
@admin_required
def stats(requester):
    return jsonify({"success": True, "data": audit.log_stats()})


@logs_bp.route("/user/<int:user_id>", methods=["GET"])
@login_required
def user_logs(requester, user_id):
    if not access.can_view_log(user_id, requester):
        raise Forbidden("Not authorized to view these logs")
    entries = audit.logs_for_user(user_id)
    return jsonify({
        "success": True,
        "count": len(entries),
        "data": [entry.to_dict() for entry in entries],
    })
