from flask import Blueprint, g, jsonify, request

from config import Config
from errors import error_response
from routes.auth import STAFF_ROLES, actor_id, require_login, require_role
from services import reservations
from services.availability import can_user_reserve
from services.validators import page_params

bp = Blueprint("reservations_bp", __name__)

CIRCULATION_ROLES = ("admin", "bibliothecaire", "enregistrement", "circulation")


def _is_staff():
    return g.user.get("role") in STAFF_ROLES


@bp.route("/api/reservations")
@require_role(*STAFF_ROLES)
def list_reservations():
    page, limit, _ = page_params(request.args, Config.PAGE_SIZE)
    filters = {
        "user_id": request.args.get("user_id"),
        "status": request.args.get("status"),
        "document_id": request.args.get("document_id"),
    }
    return jsonify(reservations.list_reservations(filters, page, limit))


@bp.route("/api/reservations/stats")
@require_role(*STAFF_ROLES)
def stats():
    return jsonify(reservations.reservation_stats())


@bp.route("/api/reservations/expired")
@require_role(*STAFF_ROLES)
def expired():
    rows = reservations.list_expired()
    return jsonify(data=rows, total=len(rows))


@bp.route("/api/reservations/cleanup", methods=["POST"])
@require_role(*CIRCULATION_ROLES)
def cleanup():
    return jsonify(success=True, **reservations.cleanup_expired(actor=actor_id()))


@bp.route("/api/reservations/check")
@require_login
def check():
    """Can the given (or current) user reserve this document?"""
    user_id = request.args.get("user_id") if _is_staff() else None
    ok, reason, details = can_user_reserve(
        user_id or g.user["user_id"], request.args.get("document_id"), request.args.get("document_type") or "book"
    )
    return jsonify(can_reserve=ok, reason=reason, details=details)


@bp.route("/api/reservations/queue/<doc_type>/<doc_id>")
@require_role(*STAFF_ROLES)
def queue(doc_type, doc_id):
    return jsonify(reservations.get_queue(doc_id, doc_type))


@bp.route("/api/reservations/queue/<doc_type>/<doc_id>", methods=["PUT"])
@require_role("admin", "bibliothecaire")
def reorder(doc_type, doc_id):
    payload = request.get_json(silent=True) or {}
    result = reservations.reorder_queue(doc_id, doc_type, payload.get("new_order"), actor=actor_id())
    return jsonify(success=True, **result)


@bp.route("/api/reservations/<reservation_id>")
@require_login
def get_reservation(reservation_id):
    res = reservations.get_reservation(reservation_id)
    if not _is_staff() and res["user_id"] != g.user["user_id"]:
        return error_response("FORBIDDEN", "Cette réservation ne vous appartient pas", 403)
    return jsonify(res)


@bp.route("/api/reservations", methods=["POST"])
@require_login
def create_reservation():
    payload = dict(request.get_json(silent=True) or {})
    # Patrons reserve for themselves only
    if not _is_staff() or not payload.get("user_id"):
        payload["user_id"] = g.user["user_id"]
    res = reservations.create_reservation(payload, actor=actor_id())
    return jsonify(success=True, data=res, message="Réservation enregistrée"), 201


@bp.route("/api/reservations/<reservation_id>/cancel", methods=["POST", "PUT"])
@require_login
def cancel(reservation_id):
    res = reservations.get_reservation(reservation_id)
    if not _is_staff() and res["user_id"] != g.user["user_id"]:
        return error_response("FORBIDDEN", "Cette réservation ne vous appartient pas", 403)
    return jsonify(success=True, data=reservations.cancel_reservation(reservation_id, actor=actor_id()))


@bp.route("/api/reservations/<reservation_id>/fulfill", methods=["POST", "PUT"])
@require_role(*CIRCULATION_ROLES)
def fulfill(reservation_id):
    return jsonify(success=True, **reservations.fulfill_reservation(reservation_id, actor=actor_id()))
