import io

import pandas as pd
from flask import Blueprint, jsonify, request, send_file

from config import Config
from errors import ValidationError
from routes.auth import STAFF_ROLES, actor_id, require_login, require_role
from services import cataloguing
from services.availability import get_document_availability
from services.documents import ACADEMIC_TYPES, get_document_meta, normalize_type
from services.exports import export_response_parts
from services.validators import page_params

bp = Blueprint("academic_bp", __name__)

EDITOR_ROLES = ("admin", "bibliothecaire", "enregistrement")


def _academic_type(doc_type):
    doc_type = normalize_type(doc_type)
    if doc_type not in ACADEMIC_TYPES:
        raise ValidationError("Type de document académique attendu", code="INVALID_DOCUMENT_TYPE",
                              details={"allowed": list(ACADEMIC_TYPES)})
    return doc_type


@bp.route("/api/academic/<doc_type>")
@require_login
def list_academic(doc_type):
    page, limit, _ = page_params(request.args, Config.PAGE_SIZE)
    return jsonify(cataloguing.list_documents(
        _academic_type(doc_type),
        search=(request.args.get("search") or "").strip(),
        domain=(request.args.get("specialty") or request.args.get("domain") or "").strip(),
        page=page,
        limit=limit,
    ))


@bp.route("/api/academic/<doc_type>/export")
@require_role(*STAFF_ROLES)
def export_academic(doc_type):
    doc_type = _academic_type(doc_type)
    meta = get_document_meta(doc_type)
    df = pd.DataFrame(cataloguing.documents_for_export(doc_type))
    data, name, mimetype = export_response_parts(df, meta["label"], request.args.get("format"), meta["table"])
    return send_file(io.BytesIO(data), as_attachment=True, download_name=name, mimetype=mimetype)


@bp.route("/api/academic/<doc_type>/<doc_id>")
@require_login
def get_academic(doc_type, doc_id):
    return jsonify(cataloguing.get_document(_academic_type(doc_type), doc_id))


@bp.route("/api/academic/<doc_type>/<doc_id>/availability")
@require_login
def academic_availability(doc_type, doc_id):
    return jsonify(get_document_availability(doc_id, _academic_type(doc_type)))


@bp.route("/api/academic/<doc_type>", methods=["POST"])
@require_role(*EDITOR_ROLES)
def create_academic(doc_type):
    doc = cataloguing.create_document(_academic_type(doc_type), request.get_json(silent=True) or {},
                                      actor=actor_id())
    return jsonify(success=True, data=doc), 201


@bp.route("/api/academic/<doc_type>/<doc_id>", methods=["PUT", "PATCH"])
@require_role(*EDITOR_ROLES)
def update_academic(doc_type, doc_id):
    doc = cataloguing.update_document(_academic_type(doc_type), doc_id, request.get_json(silent=True) or {},
                                      actor=actor_id())
    return jsonify(success=True, data=doc)


@bp.route("/api/academic/<doc_type>/<doc_id>", methods=["DELETE"])
@require_role("admin", "bibliothecaire")
def delete_academic(doc_type, doc_id):
    cataloguing.delete_document(_academic_type(doc_type), doc_id, actor=actor_id())
    return jsonify(success=True, message="Document supprimé")


# ---------------- FILES (all document types) ----------------
@bp.route("/api/documents/<doc_type>/<doc_id>/file", methods=["POST"])
@require_role(*EDITOR_ROLES)
def upload_document_file(doc_type, doc_id):
    upload = request.files.get("file")
    if not upload or not upload.filename:
        raise ValidationError("Aucun fichier reçu", details=[{"field": "file"}])
    info = cataloguing.attach_file(doc_type, doc_id, upload.read(), upload.filename, actor=actor_id())
    return jsonify(success=True, file=info), 201


@bp.route("/api/documents/<doc_type>/<doc_id>/file")
@require_login
def download_document_file(doc_type, doc_id):
    data, name, mimetype = cataloguing.read_file(doc_type, doc_id)
    inline = request.args.get("inline") in ("1", "true")
    return send_file(io.BytesIO(data), as_attachment=not inline, download_name=name, mimetype=mimetype)
