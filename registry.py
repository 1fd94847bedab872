"""Document metadata, ownership and the share list attached to each document."""
import json
import logging

from cryptography.exceptions import InvalidTag
from flask import current_app
from sqlalchemy.exc import IntegrityError
from werkzeug.utils import secure_filename

import access
from errors import Conflict, NotFound, UpstreamFailure, ValidationError
from identity import find_by_national_id, user_summary
from models import db, Document, Share, DOCUMENT_TYPES, PERMISSIONS
from utils import (
    encrypt_bytes, decrypt_bytes,
    save_file_bytes, read_file_bytes, remove_file,
    parse_iso_date,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("title", "description", "document_type", "tags", "metadata")
METADATA_FIELDS = ("document_number", "issue_date", "expiry_date", "issuing_authority")


def allowed(filename):
    """Checks if file extension is allowed."""
    return "." in filename and filename.rsplit(".", 1)[1].lower() in current_app.config["ALLOWED_EXT"]


def _maybe_json(value, field, errors):
    # multipart form fields arrive as strings
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            errors[field] = "Must be valid JSON"
            return None
    return value


def _clean_tags(raw, errors):
    if raw in (None, ""):
        return []
    if isinstance(raw, str) and not raw.lstrip().startswith("["):
        raw = raw.split(",")
    else:
        raw = _maybe_json(raw, "tags", errors)
    if raw is None:
        return []
    if not isinstance(raw, list):
        errors["tags"] = "Tags must be a list of strings"
        return []
    tags = []
    for tag in raw:
        tag = str(tag).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def _clean_metadata(raw, errors):
    raw = _maybe_json(raw, "metadata", errors) if raw not in (None, "") else {}
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        errors["metadata"] = "Metadata must be an object"
        return {}
    unknown = set(raw) - set(METADATA_FIELDS)
    if unknown:
        errors["metadata"] = "Unknown metadata fields: " + ", ".join(sorted(unknown))
    return {
        "document_number": (raw.get("document_number") or None),
        "issue_date": parse_iso_date(raw.get("issue_date"), "metadata.issue_date", errors),
        "expiry_date": parse_iso_date(raw.get("expiry_date"), "metadata.expiry_date", errors),
        "issuing_authority": (raw.get("issuing_authority") or None),
    }


def _check_title(value, errors):
    title = str(value or "").strip()
    if not title:
        errors["title"] = "Please add a document title"
    elif len(title) > 100:
        errors["title"] = "Title cannot be more than 100 characters"
    return title


def _check_description(value, errors):
    description = str(value or "").strip() or None
    if description and len(description) > 500:
        errors["description"] = "Description cannot be more than 500 characters"
    return description


def _check_type(value, errors):
    if not value:
        errors["document_type"] = "Please specify document type"
    elif value not in DOCUMENT_TYPES:
        errors["document_type"] = "Unknown document type"
    return value


def normalize_permissions(raw):
    """Validate a requested permission list; view is always included."""
    if raw in (None, "", []):
        return ["view"]
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, (list, tuple)) or any(p not in PERMISSIONS for p in raw):
        raise ValidationError(
            "Invalid permissions",
            details={"permissions": "Permissions must be a subset of: view, download"},
        )
    return [p for p in PERMISSIONS if p == "view" or p in raw]


# ==========================================================
# 📁 REGISTRY OPERATIONS
# ==========================================================
def create(owner_id, meta, file_storage):
    errors = {}
    if file_storage is None or not file_storage.filename:
        raise ValidationError("Please upload a file", details={"document": "No file provided"})
    if not allowed(file_storage.filename):
        errors["document"] = "Invalid file type"

    title = _check_title(meta.get("title"), errors)
    description = _check_description(meta.get("description"), errors)
    document_type = _check_type(meta.get("document_type"), errors)
    tags = _clean_tags(meta.get("tags"), errors)
    metadata = _clean_metadata(meta.get("metadata"), errors)
    if errors:
        raise ValidationError("Invalid document data", details=errors)

    raw = file_storage.read()
    nonce_b64, ciphertext = encrypt_bytes(raw)
    try:
        stored_name = save_file_bytes(ciphertext)
    except OSError as e:
        logger.error("Could not store upload for user %s: %s", owner_id, e)
        raise UpstreamFailure("Could not store the uploaded file")

    doc = Document(
        owner_id=owner_id,
        title=title,
        description=description,
        document_type=document_type,
        file_name=secure_filename(file_storage.filename),
        stored_name=stored_name,
        file_size=len(raw),
        mime_type=file_storage.mimetype or "application/octet-stream",
        nonce_b64=nonce_b64,
        tags=tags,
        **metadata,
    )
    db.session.add(doc)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        remove_file(stored_name)
        raise
    logger.info("User %s uploaded document %s", owner_id, doc.id)
    return doc


def get(doc_id):
    doc = db.session.get(Document, doc_id)
    if not doc:
        raise NotFound("Document not found")
    return doc


def update(doc_id, patch, requester_id):
    doc = get(doc_id)
    access.require(access.can_mutate(doc, requester_id), "Not authorized to update this document")

    errors = {}
    for key in patch:
        if key not in EDITABLE_FIELDS:
            errors[key] = "Field cannot be modified"
    if errors:
        raise ValidationError("Invalid document update", details=errors)

    changes = {}
    if "title" in patch:
        changes["title"] = _check_title(patch["title"], errors)
    if "description" in patch:
        changes["description"] = _check_description(patch["description"], errors)
    if "document_type" in patch:
        changes["document_type"] = _check_type(patch["document_type"], errors)
    if "tags" in patch:
        changes["tags"] = _clean_tags(patch["tags"], errors)
    if "metadata" in patch:
        supplied = patch["metadata"]
        supplied = _maybe_json(supplied, "metadata", errors) if supplied not in (None, "") else {}
        metadata = _clean_metadata(supplied, errors)
        # only the keys the caller sent are touched
        if isinstance(supplied, dict):
            changes.update({k: metadata[k] for k in METADATA_FIELDS if k in supplied})
    if errors:
        raise ValidationError("Invalid document update", details=errors)

    for key, value in changes.items():
        setattr(doc, key, value)
    db.session.commit()
    return doc


def delete(doc_id, requester_id):
    """Remove a document and its shares. Returns a list of warnings."""
    doc = get(doc_id)
    access.require(access.can_delete(doc, requester_id), "Not authorized to delete this document")

    warnings = []
    try:
        remove_file(doc.stored_name)
    except OSError as e:
        logger.warning("Could not remove stored file %s for document %s: %s", doc.stored_name, doc.id, e)
        warnings.append("Stored file could not be removed")

    db.session.delete(doc)
    db.session.commit()
    return warnings


def list_for_owner(owner_id, document_type=None, search=None, page=1, limit=None):
    query = db.select(Document).filter(Document.owner_id == owner_id)
    if document_type:
        query = query.filter(Document.document_type == document_type)
    if search:
        escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        query = query.filter(
            Document.title.ilike(pattern, escape="\\") | Document.description.ilike(pattern, escape="\\")
        )
    query = query.order_by(Document.created_at.desc(), Document.id.desc())
    per_page = limit or current_app.config["DOCUMENTS_PER_PAGE"]
    return db.paginate(query, page=page, per_page=per_page, error_out=False)


def list_shared_with(user_id):
    query = (
        db.select(Document)
        .join(Share, Share.document_id == Document.id)
        .filter(Share.grantee_id == user_id)
        .order_by(Document.created_at.desc(), Document.id.desc())
    )
    return db.session.scalars(query).all()


def add_grant(doc_id, granter_id, grantee_national_id, permissions=None):
    doc = get(doc_id)
    access.require(access.can_share(doc, granter_id), "Not authorized to share this document")

    if not grantee_national_id:
        raise ValidationError("Please provide a national ID", details={"national_id": "Required"})
    if not isinstance(grantee_national_id, (str, int)):
        raise ValidationError("Invalid national ID", details={"national_id": "Must be a string"})
    grantee = find_by_national_id(grantee_national_id)
    if not grantee:
        raise NotFound("User not found with this national ID")
    if grantee.id == doc.owner_id:
        raise ValidationError("Cannot share a document with its owner")
    permissions = normalize_permissions(permissions)

    if access.grant_for(doc, grantee.id):
        raise Conflict("Document already shared with this user")

    # the unique constraint decides between concurrent shares of the same pair
    share = Share(document_id=doc.id, grantee_id=grantee.id,
                  permissions=permissions, shared_by_id=granter_id)
    db.session.add(share)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict("Document already shared with this user")
    db.session.refresh(doc)
    logger.info("Document %s shared with user %s (%s)", doc.id, grantee.id, ",".join(permissions))
    return doc


def read_file(doc):
    try:
        ciphertext = read_file_bytes(doc.stored_name)
        return decrypt_bytes(doc.nonce_b64, ciphertext)
    except OSError as e:
        logger.error("Stored file for document %s unreadable: %s", doc.id, e)
        raise UpstreamFailure("Stored file is unavailable")
    except InvalidTag:
        logger.error("Stored file for document %s failed authentication", doc.id)
        raise UpstreamFailure("Stored file is unavailable")


# ==========================================================
# 🧾 SERIALIZATION
# ==========================================================
def _share_dict(share):
    return {
        "user": user_summary(share.grantee),
        "permissions": list(share.permissions),
        "shared_at": share.shared_at.isoformat() if share.shared_at else None,
        "shared_by": share.shared_by_id,
    }


def serialize_document(doc, viewer_id):
    """Owners see every share; grantees only their own."""
    if access.is_owner(doc, viewer_id):
        shares = doc.shares
    else:
        shares = [s for s in doc.shares if s.grantee_id == viewer_id]
    return {
        "id": doc.id,
        "title": doc.title,
        "description": doc.description,
        "document_type": doc.document_type,
        "file_name": doc.file_name,
        "file_size": doc.file_size,
        "mime_type": doc.mime_type,
        "owner": user_summary(doc.owner),
        "shared_with": [_share_dict(s) for s in shares],
        "is_public": doc.is_public,
        "tags": doc.tags or [],
        "metadata": {
            "document_number": doc.document_number,
            "issue_date": doc.issue_date.isoformat() if doc.issue_date else None,
            "expiry_date": doc.expiry_date.isoformat() if doc.expiry_date else None,
            "issuing_authority": doc.issuing_authority,
        },
        "created_at": doc.created_at.isoformat() if doc.created_at else None,
        "updated_at": doc.updated_at.isoformat() if doc.updated_at else None,
    }
