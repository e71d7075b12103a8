import io

import pandas as pd
from flask import Blueprint, jsonify, request, send_file

from config import Config
from routes.auth import STAFF_ROLES, actor_id, require_role
from services import circulation
from services.dates import to_date
from services.exports import export_response_parts
from services.validators import as_int, page_params

bp = Blueprint("loans_bp", __name__)

CIRCULATION_ROLES = ("admin", "bibliothecaire", "enregistrement", "circulation")


@bp.route("/api/loans")
@require_role(*STAFF_ROLES)
def list_loans():
    page, limit, _ = page_params(request.args, Config.PAGE_SIZE)
    filters = {
        "user_id": request.args.get("user_id"),
        "document_id": request.args.get("document_id"),
        "status": request.args.get("status"),
        "document_type": request.args.get("document_type"),
    }
    include = request.args.get("include_consultations") in ("1", "true")
    return jsonify(circulation.list_loans(filters, page, limit, include_consultations=include))


@bp.route("/api/loans/stats")
@require_role(*STAFF_ROLES)
def loan_stats():
    return jsonify(circulation.loan_stats())


@bp.route("/api/loans/overdue")
@require_role(*STAFF_ROLES)
def overdue():
    rows = [circulation.serialize_loan(r) for r in circulation.overdue_loans()]
    return jsonify(data=rows, total=len(rows))


@bp.route("/api/loans/due-date")
@require_role(*STAFF_ROLES)
def due_date_preview():
    days = as_int(request.args.get("days"), "days", minimum=1)
    return jsonify(circulation.due_date_preview(to_date(request.args.get("loan_date")), days))


@bp.route("/api/loans/export")
@require_role(*STAFF_ROLES)
def export_loans():
    df = pd.DataFrame(circulation.loans_for_export(request.args.get("status")))
    keep = ["document_title", "document_type", "user_name", "user_email", "loan_date", "due_date",
            "return_date", "status", "renewal_count"]
    if not df.empty:
        df = df[[c for c in keep if c in df.columns]]
    data, name, mimetype = export_response_parts(df, "Emprunts", request.args.get("format"), "emprunts")
    return send_file(io.BytesIO(data), as_attachment=True, download_name=name, mimetype=mimetype)


@bp.route("/api/loans/<loan_id>")
@require_role(*STAFF_ROLES)
def get_loan(loan_id):
    return jsonify(circulation.get_loan(loan_id))


@bp.route("/api/loans", methods=["POST"])
@require_role(*CIRCULATION_ROLES)
def create_loan():
    loan = circulation.create_loan(request.get_json(silent=True) or {}, actor=actor_id())
    return jsonify(success=True, data=loan, message="Emprunt enregistré"), 201


@bp.route("/api/loans/<loan_id>/return", methods=["POST", "PUT"])
@require_role(*CIRCULATION_ROLES)
def return_loan(loan_id):
    payload = request.get_json(silent=True) or {}
    result = circulation.return_loan(loan_id, actor=actor_id(), return_date=to_date(payload.get("return_date")))
    return jsonify(success=True, **result)


@bp.route("/api/loans/<loan_id>/extend", methods=["POST", "PUT"])
@require_role(*CIRCULATION_ROLES)
def extend_loan(loan_id):
    payload = request.get_json(silent=True) or {}
    days = as_int(payload.get("days"), "days", minimum=1)
    return jsonify(success=True, data=circulation.extend_loan(loan_id, days, actor=actor_id()))


@bp.route("/api/loans/<loan_id>/lost", methods=["POST"])
@require_role("admin", "bibliothecaire")
def mark_lost(loan_id):
    return jsonify(success=True, data=circulation.mark_loan_lost(loan_id, actor=actor_id()))


@bp.route("/api/loans/update-overdue", methods=["POST"])
@require_role("admin", "bibliothecaire")
def update_overdue():
    return jsonify(success=True, updated=circulation.update_overdue_loans())
