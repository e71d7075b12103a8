import io

import pandas as pd
from flask import Blueprint, jsonify, request, send_file

from config import Config
from routes.auth import STAFF_ROLES, actor_id, require_login, require_role
from services import cataloguing
from services.availability import get_document_availability
from services.exports import export_response_parts
from services.validators import page_params

bp = Blueprint("books_bp", __name__)

EDITOR_ROLES = ("admin", "bibliothecaire", "enregistrement")


@bp.route("/api/books")
@require_login
def list_books():
    page, limit, _ = page_params(request.args, Config.PAGE_SIZE)
    result = cataloguing.list_documents(
        "book",
        search=(request.args.get("search") or "").strip(),
        domain=(request.args.get("domain") or "").strip(),
        page=page,
        limit=limit,
        available_only=request.args.get("available") in ("1", "true"),
    )
    return jsonify(result)


@bp.route("/api/books/export")
@require_role(*STAFF_ROLES)
def export_books():
    df = pd.DataFrame(cataloguing.documents_for_export("book"))
    data, name, mimetype = export_response_parts(df, "Catalogue des livres", request.args.get("format"), "livres")
    return send_file(io.BytesIO(data), as_attachment=True, download_name=name, mimetype=mimetype)


@bp.route("/api/books/<book_id>")
@require_login
def get_book(book_id):
    return jsonify(cataloguing.get_document("book", book_id))


@bp.route("/api/books/<book_id>/availability")
@require_login
def book_availability(book_id):
    return jsonify(get_document_availability(book_id, "book"))


@bp.route("/api/books", methods=["POST"])
@require_role(*EDITOR_ROLES)
def create_book():
    book = cataloguing.create_document("book", request.get_json(silent=True) or {}, actor=actor_id())
    return jsonify(success=True, data=book), 201


@bp.route("/api/books/<book_id>", methods=["PUT", "PATCH"])
@require_role(*EDITOR_ROLES)
def update_book(book_id):
    book = cataloguing.update_document("book", book_id, request.get_json(silent=True) or {}, actor=actor_id())
    return jsonify(success=True, data=book)


@bp.route("/api/books/<book_id>", methods=["DELETE"])
@require_role("admin", "bibliothecaire")
def delete_book(book_id):
    cataloguing.delete_document("book", book_id, actor=actor_id())
    return jsonify(success=True, message="Livre supprimé")
