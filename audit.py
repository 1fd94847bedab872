"""Append-only audit trail.

Usage:
    from audit import audit

    audit(user.id, "upload_document", resource_type="document",
          resource_id=doc.id, details={"file_name": doc.file_name})

Entries are written after the business operation has committed, on the
scheduler's worker threads, in a session of their own. A failed write is
logged and dropped; it never reaches the caller.
"""
import time
import atexit
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from flask import current_app, has_request_context, request
from sqlalchemy import func
from sqlalchemy.orm import Session

from models import db, AuditLog, AUDIT_ACTIONS, RESOURCE_TYPES, utcnow

logger = logging.getLogger(__name__)


class AuditWriter:
    """Flask extension that owns the background writer."""

    def __init__(self, app=None):
        self.app = None
        self.scheduler = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        app.extensions["audit_writer"] = self
        if app.config.get("AUDIT_ASYNC", True):
            self.scheduler = BackgroundScheduler()
            self.scheduler.start()
            atexit.register(self.shutdown)

    def record(self, user_id, action, resource_type="user", resource_id=None,
               details=None, ip_address=None, user_agent=None):
        entry = {
            "user_id": user_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "details": details or {},
            "ip_address": ip_address,
            "user_agent": user_agent,
            "timestamp": utcnow(),
        }
        if self.scheduler is None:
            self._write(entry)
            return
        try:
            self.scheduler.add_job(self._write, args=[entry], misfire_grace_time=None)
        except Exception:
            logger.exception("Failed to schedule audit entry %s for user %s", action, user_id)

    def _write(self, entry):
        with self.app.app_context():
            try:
                if entry["action"] not in AUDIT_ACTIONS:
                    raise ValueError(f"unknown audit action {entry['action']!r}")
                if entry["resource_type"] not in RESOURCE_TYPES:
                    raise ValueError(f"unknown resource type {entry['resource_type']!r}")
                with Session(db.engine) as session:
                    session.add(AuditLog(**entry))
                    session.commit()
                logger.debug("User action logged: %s by user %s", entry["action"], entry["user_id"])
            except Exception as e:
                logger.error("Failed to log user action %s by user %s: %s",
                             entry["action"], entry["user_id"], e)

    def shutdown(self, wait=True):
        """Drain queued entries; safe to call more than once."""
        if self.scheduler is None or not self.scheduler.running:
            return
        if wait:
            # one-shot jobs leave the job store once handed to the executor
            deadline = time.monotonic() + self.app.config.get("AUDIT_DRAIN_TIMEOUT", 5)
            while self.scheduler.get_jobs() and time.monotonic() < deadline:
                time.sleep(0.05)
            pending = len(self.scheduler.get_jobs())
            if pending:
                logger.warning("Shutting down with %d audit entries still queued", pending)
        self.scheduler.shutdown(wait=wait)


def audit(user_id, action, resource_type="user", resource_id=None, details=None):
    """Log user actions (uploads, downloads, shares, etc)."""
    ip_address = user_agent = None
    if has_request_context():
        ip_address = request.remote_addr
        user_agent = request.headers.get("User-Agent")
    writer = current_app.extensions["audit_writer"]
    writer.record(user_id, action, resource_type=resource_type, resource_id=resource_id,
                  details=details, ip_address=ip_address, user_agent=user_agent)


# ==========================================================
# 🔎 QUERIES
# ==========================================================
def query_logs(action=None, user_id=None, start=None, end=None, page=1, limit=None):
    query = db.select(AuditLog)
    if action:
        query = query.filter(AuditLog.action == action)
    if user_id:
        query = query.filter(AuditLog.user_id == user_id)
    if start:
        query = query.filter(AuditLog.timestamp >= start)
    if end:
        query = query.filter(AuditLog.timestamp <= end)
    query = query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
    per_page = limit or current_app.config["LOGS_PER_PAGE"]
    return db.paginate(query, page=page, per_page=per_page, error_out=False)


def logs_for_user(user_id, limit=100):
    query = (
        db.select(AuditLog)
        .filter(AuditLog.user_id == user_id)
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .limit(limit)
    )
    return db.session.scalars(query).all()


def log_stats():
    rows = db.session.execute(
        db.select(AuditLog.action, func.count(AuditLog.id), func.max(AuditLog.timestamp))
        .group_by(AuditLog.action)
        .order_by(func.count(AuditLog.id).desc(), AuditLog.action)
    ).all()
    total_logs = db.session.scalar(db.select(func.count(AuditLog.id)))
    total_users = db.session.scalar(db.select(func.count(func.distinct(AuditLog.user_id))))
    return {
        "total_logs": total_logs,
        "total_users": total_users,
        "action_stats": [
            {"action": action, "count": count, "last_occurred": last.isoformat() if last else None}
            for action, count, last in rows
        ],
    }
