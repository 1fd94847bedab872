from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.orm import validates
from datetime import datetime, timezone

db = SQLAlchemy()

ROLES = ("user", "admin")

DOCUMENT_TYPES = (
    "pan_card",
    "aadhaar_card",
    "passport",
    "driving_license",
    "voter_id",
    "mark_sheet",
    "degree_certificate",
    "income_certificate",
    "caste_certificate",
    "birth_certificate",
    "other",
)

PERMISSIONS = ("view", "download")

AUDIT_ACTIONS = (
    "login",
    "logout",
    "register",
    "upload_document",
    "update_document",
    "delete_document",
    "share_document",
    "view_document",
    "download_document",
    "profile_update",
    "otp_generated",
    "otp_verified",
)

RESOURCE_TYPES = ("user", "document", "auth")


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), nullable=False)
    email = db.Column(db.String(200), unique=True, nullable=False)
    national_id = db.Column(db.String(12), unique=True, nullable=False)
    password_hash = db.Column(db.String(300), nullable=False)
    phone = db.Column(db.String(20), nullable=False)
    date_of_birth = db.Column(db.Date, nullable=False)
    address = db.Column(db.JSON)            # street, city, state, pincode
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    role = db.Column(db.String(10), default="user", nullable=False)
    otp_code = db.Column(db.String(6))
    otp_expires_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    @validates("is_verified")
    def _verified_is_monotonic(self, key, value):
        if self.is_verified and not value:
            raise ValueError("a verified account cannot be unverified")
        return value


class Document(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    title = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    document_type = db.Column(db.String(40), nullable=False)
    file_name = db.Column(db.String(300), nullable=False)     # original filename
    stored_name = db.Column(db.String(300), nullable=False)   # key in the file store
    file_size = db.Column(db.Integer, nullable=False)
    mime_type = db.Column(db.String(100), nullable=False)
    nonce_b64 = db.Column(db.String(100), nullable=False)     # encryption nonce
    is_public = db.Column(db.Boolean, default=False, nullable=False)
    tags = db.Column(db.JSON, default=list)
    document_number = db.Column(db.String(100))
    issue_date = db.Column(db.Date)
    expiry_date = db.Column(db.Date)
    issuing_authority = db.Column(db.String(200))
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    owner = db.relationship("User", foreign_keys=[owner_id])
    shares = db.relationship(
        "Share",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="Share.shared_at",
    )

    @validates("owner_id")
    def _owner_is_immutable(self, key, value):
        if self.owner_id is not None and value != self.owner_id:
            raise ValueError("document owner cannot change")
        return value


class Share(db.Model):
    __table_args__ = (
        db.UniqueConstraint("document_id", "grantee_id", name="uq_share_document_grantee"),
    )

    id = db.Column(db.Integer, primary_key=True)
    document_id = db.Column(db.Integer, db.ForeignKey("document.id", ondelete="CASCADE"), nullable=False)
    grantee_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    permissions = db.Column(db.JSON, nullable=False)
    shared_at = db.Column(db.DateTime, default=utcnow)
    shared_by_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)

    document = db.relationship("Document", back_populates="shares")
    grantee = db.relationship("User", foreign_keys=[grantee_id])

    @validates("permissions")
    def _permissions_not_empty(self, key, value):
        if not value or any(p not in PERMISSIONS for p in value):
            raise ValueError("permissions must be a non-empty subset of view/download")
        return list(value)


class AuditLog(db.Model):
    __tablename__ = "audit_log"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, index=True)
    action = db.Column(db.String(40), nullable=False, index=True)
    resource_type = db.Column(db.String(20), default="user")
    resource_id = db.Column(db.Integer)
    details = db.Column(db.JSON, default=dict)
    ip_address = db.Column(db.String(64))
    user_agent = db.Column(db.String(300))
    timestamp = db.Column(db.DateTime, default=utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "details": self.details or {},
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }
