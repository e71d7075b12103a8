import io

import pandas as pd
from flask import Blueprint, jsonify, request, send_file

from config import Config
from routes.auth import STAFF_ROLES, actor_id, require_role
from services import patrons
from services.exports import export_response_parts
from services.validators import page_params

bp = Blueprint("users_bp", __name__)

MANAGER_ROLES = ("admin", "bibliothecaire")


@bp.route("/api/users")
@require_role(*STAFF_ROLES)
def list_users():
    page, limit, _ = page_params(request.args, Config.PAGE_SIZE)
    return jsonify(patrons.list_users(
        search=(request.args.get("search") or "").strip(),
        role=request.args.get("role") or "",
        status=request.args.get("status") or "",
        page=page,
        limit=limit,
    ))


@bp.route("/api/users/export")
@require_role(*MANAGER_ROLES)
def export_users():
    df = pd.DataFrame(patrons.users_for_export())
    data, name, mimetype = export_response_parts(df, "Lecteurs", request.args.get("format"), "lecteurs")
    return send_file(io.BytesIO(data), as_attachment=True, download_name=name, mimetype=mimetype)


@bp.route("/api/users/barcode/<barcode>")
@require_role(*STAFF_ROLES)
def by_barcode(barcode):
    return jsonify(patrons.get_user_by_barcode(barcode))


@bp.route("/api/users/limits", methods=["PUT"])
@require_role("admin")
def update_limits():
    payload = request.get_json(silent=True) or {}
    updated = patrons.update_limits(
        payload.get("max_loans"), payload.get("max_reservations"), payload.get("role"), actor=actor_id()
    )
    return jsonify(success=True, updated=updated)


@bp.route("/api/users/<user_id>")
@require_role(*STAFF_ROLES)
def get_user(user_id):
    return jsonify(patrons.user_details(user_id))


@bp.route("/api/users", methods=["POST"])
@require_role(*MANAGER_ROLES)
def create_user():
    user = patrons.create_user(request.get_json(silent=True) or {}, actor=actor_id())
    return jsonify(success=True, data=user), 201


@bp.route("/api/users/<user_id>", methods=["PUT", "PATCH"])
@require_role(*MANAGER_ROLES)
def update_user(user_id):
    user = patrons.update_user(user_id, request.get_json(silent=True) or {}, actor=actor_id())
    return jsonify(success=True, data=user)


@bp.route("/api/users/<user_id>", methods=["DELETE"])
@require_role("admin")
def delete_user(user_id):
    return jsonify(success=True, **patrons.delete_user(user_id, actor=actor_id()))
