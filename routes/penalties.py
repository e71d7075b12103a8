from flask import Blueprint, jsonify, request

from config import Config
from routes.auth import STAFF_ROLES, actor_id, require_role
from services import penalties
from services.dates import format_fcfa, iso
from services.validators import pagination, page_params

bp = Blueprint("penalties_bp", __name__)

CASHIER_ROLES = ("admin", "bibliothecaire", "enregistrement", "circulation")


def _serialize(row):
    out = dict(row)
    for key in ("penalty_date", "due_date", "payment_date", "created_at", "updated_at"):
        if key in out:
            out[key] = iso(out[key])
    out["amount_fcfa"] = float(out.get("amount_fcfa") or 0)
    out["amount_label"] = format_fcfa(out["amount_fcfa"])
    return out


@bp.route("/api/penalties")
@require_role(*STAFF_ROLES)
def list_penalties():
    page, limit, offset = page_params(request.args, Config.PAGE_SIZE)
    rows, total = penalties.list_penalties(
        status=request.args.get("status"), user_id=request.args.get("user_id"), limit=limit, offset=offset
    )
    return jsonify(data=[_serialize(r) for r in rows], pagination=pagination(page, limit, total))


@bp.route("/api/penalties/stats")
@require_role(*STAFF_ROLES)
def stats():
    return jsonify(penalties.penalty_stats())


@bp.route("/api/penalties/user/<user_id>")
@require_role(*STAFF_ROLES)
def user_summary(user_id):
    return jsonify(penalties.user_penalty_summary(user_id))


@bp.route("/api/penalties/<penalty_id>")
@require_role(*STAFF_ROLES)
def get_penalty(penalty_id):
    return jsonify(_serialize(penalties.get_penalty(penalty_id)))


@bp.route("/api/penalties/<penalty_id>/pay", methods=["POST", "PUT"])
@require_role(*CASHIER_ROLES)
def pay(penalty_id):
    payload = request.get_json(silent=True) or {}
    penalties.mark_penalty_paid(
        penalty_id,
        payload.get("payment_method") or "cash",
        payload.get("receipt_number"),
        processed_by=actor_id(),
    )
    return jsonify(success=True, data=_serialize(penalties.get_penalty(penalty_id)))


@bp.route("/api/penalties/<penalty_id>/waive", methods=["POST", "PUT"])
@require_role("admin", "bibliothecaire")
def waive(penalty_id):
    payload = request.get_json(silent=True) or {}
    penalties.waive_penalty(penalty_id, payload.get("reason") or "", waived_by=actor_id())
    return jsonify(success=True, data=_serialize(penalties.get_penalty(penalty_id)))


@bp.route("/api/penalties/process-overdue", methods=["POST"])
@require_role("admin", "bibliothecaire")
def process_overdue():
    return jsonify(success=True, stats=penalties.process_overdue_loans())
