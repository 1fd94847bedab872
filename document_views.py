import io

from flask import Blueprint, request, jsonify, send_file

import access
import registry
from audit import audit
from errors import ValidationError
from request_context import verified_required
from utils import int_arg

documents_bp = Blueprint("documents", __name__, url_prefix="/api/documents")


# ==========================================================
# 📁 DOCUMENT MANAGEMENT ROUTES
# ==========================================================
@documents_bp.route("", methods=["GET"])
@verified_required
def list_documents(requester):
    page = int_arg("page", 1)
    pagination = registry.list_for_owner(
        requester.user_id,
        document_type=request.args.get("document_type"),
        search=request.args.get("search"),
        page=page,
        limit=int_arg("limit", None),
    )
    return jsonify({
        "success": True,
        "count": len(pagination.items),
        "total": pagination.total,
        "pagination": {"page": page, "pages": pagination.pages},
        "data": [registry.serialize_document(d, requester.user_id) for d in pagination.items],
    })


@documents_bp.route("", methods=["POST"])
@verified_required
def upload(requester):
    doc = registry.create(requester.user_id, request.form, request.files.get("document"))
    body = registry.serialize_document(doc, requester.user_id)
    audit(requester.user_id, "upload_document", resource_type="document", resource_id=doc.id,
          details={"file_name": doc.file_name, "file_size": doc.file_size})
    return jsonify({"success": True, "data": body}), 201


@documents_bp.route("/shared", methods=["GET"])
@verified_required
def shared_with_me(requester):
    docs = registry.list_shared_with(requester.user_id)
    return jsonify({
        "success": True,
        "count": len(docs),
        "data": [registry.serialize_document(d, requester.user_id) for d in docs],
    })


@documents_bp.route("/<int:doc_id>", methods=["GET"])
@verified_required
def get_document(requester, doc_id):
    doc = registry.get(doc_id)
    access.require(access.can_read(doc, requester.user_id), "Not authorized to access this document")
    body = registry.serialize_document(doc, requester.user_id)
    audit(requester.user_id, "view_document", resource_type="document", resource_id=doc.id)
    return jsonify({"success": True, "data": body})


@documents_bp.route("/<int:doc_id>", methods=["PUT"])
@verified_required
def update_document(requester, doc_id):
    patch = request.get_json(silent=True)
    if not isinstance(patch, dict):
        raise ValidationError("Request body must be a JSON object")
    doc = registry.update(doc_id, patch, requester.user_id)
    body = registry.serialize_document(doc, requester.user_id)
    audit(requester.user_id, "update_document", resource_type="document", resource_id=doc.id,
          details={"fields": sorted(patch)})
    return jsonify({"success": True, "data": body})


@documents_bp.route("/<int:doc_id>", methods=["DELETE"])
@verified_required
def delete_document(requester, doc_id):
    file_name = registry.get(doc_id).file_name
    warnings = registry.delete(doc_id, requester.user_id)
    audit(requester.user_id, "delete_document", resource_type="document", resource_id=doc_id,
          details={"file_name": file_name})
    body = {"success": True, "message": "Document deleted successfully"}
    if warnings:
        body["warnings"] = warnings
    return jsonify(body)


@documents_bp.route("/<int:doc_id>/share", methods=["POST"])
@verified_required
def share_document(requester, doc_id):
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    national_id = data.get("national_id")
    doc = registry.add_grant(doc_id, requester.user_id, national_id, data.get("permissions"))
    body = registry.serialize_document(doc, requester.user_id)
    audit(requester.user_id, "share_document", resource_type="document", resource_id=doc.id,
          details={"shared_with": str(national_id)})
    return jsonify({"success": True, "message": "Document shared successfully", "data": body})


@documents_bp.route("/<int:doc_id>/download", methods=["GET"])
@verified_required
def download(requester, doc_id):
    doc = registry.get(doc_id)
    access.require(access.can_download(doc, requester.user_id), "Not authorized to download this document")
    plaintext = registry.read_file(doc)
    audit(requester.user_id, "download_document", resource_type="document", resource_id=doc.id)
    return send_file(io.BytesIO(plaintext), mimetype=doc.mime_type,
                     as_attachment=True, download_name=doc.file_name)
