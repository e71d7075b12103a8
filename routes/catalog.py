from flask import Blueprint, jsonify, request

from routes.auth import require_role
from services import catalog
from services.availability import get_document_availability

bp = Blueprint("catalog_bp", __name__)


# Public OPAC: no login required
@bp.route("/api/catalog/search")
def search():
    return jsonify(catalog.search_catalog(request.args.to_dict()))


@bp.route("/api/catalog/filters")
def filters():
    return jsonify(catalog.catalog_filters())


@bp.route("/api/catalog/recent")
def recent():
    try:
        limit = min(50, max(1, int(request.args.get("limit", 8))))
    except (TypeError, ValueError):
        limit = 8
    return jsonify(data=catalog.recent_documents(limit))


@bp.route("/api/catalog/stats")
def stats():
    return jsonify(catalog.public_stats())


@bp.route("/api/catalog/<doc_type>/<doc_id>/availability")
def availability(doc_type, doc_id):
    return jsonify(get_document_availability(doc_id, doc_type))


@bp.route("/api/catalog/cache")
@require_role("admin")
def cache_status():
    return jsonify(catalog.cache_info())


@bp.route("/api/catalog/cache", methods=["DELETE"])
@require_role("admin")
def clear_cache():
    catalog.invalidate_cache()
    return jsonify(success=True, message="Cache du catalogue vidé")
