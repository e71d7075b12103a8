# routes/profile.py
from flask import Blueprint, g, jsonify, request
from werkzeug.security import check_password_hash, generate_password_hash

from db_mysql import execute, fetch_one
from errors import error_response
from routes.auth import require_login
from services import circulation, patrons, penalties, reservations
from services.system_log import log_system_action

bp = Blueprint("profile_bp", __name__)


# View Profile
@bp.route("/api/profile")
@require_login
def view_profile():
    """Current patron with loans, reservations and penalty balance."""
    return jsonify(patrons.user_details(g.user["user_id"]))


@bp.route("/api/profile/loans")
@require_login
def my_loans():
    history = request.args.get("history") in ("1", "true")
    result = circulation.list_loans({"user_id": g.user["user_id"]}, page=1, limit=100)
    if not history:
        result["data"] = [r for r in result["data"] if r["status"] in ("active", "overdue")]
    return jsonify(result)


@bp.route("/api/profile/reservations")
@require_login
def my_reservations():
    return jsonify(reservations.list_reservations({"user_id": g.user["user_id"]}, page=1, limit=100))


@bp.route("/api/profile/penalties")
@require_login
def my_penalties():
    rows, total = penalties.list_penalties(user_id=g.user["user_id"], limit=100)
    return jsonify(data=rows, total=total, summary=penalties.user_penalty_summary(g.user["user_id"]))


# Edit Profile
@bp.route("/api/profile", methods=["PUT", "PATCH"])
@require_login
def edit_profile():
    """Patrons may only change their contact details."""
    payload = request.get_json(silent=True) or {}
    allowed = {k: payload[k] for k in ("phone", "address") if k in payload}
    if not allowed:
        return error_response("VALIDATION_ERROR", "Seuls le téléphone et l'adresse sont modifiables", 400)
    return jsonify(success=True, data=patrons.update_user(g.user["user_id"], allowed, actor=g.user["user_id"]))


# Change Password
@bp.route("/api/profile/change-password", methods=["POST"])
@require_login
def change_password():
    """Local accounts only; directory accounts change their password in AD."""
    if g.user.get("source") == "active_directory":
        return error_response("AD_ACCOUNT", "Modifiez votre mot de passe dans Active Directory", 422)

    payload = request.get_json(silent=True) or {}
    old_password = payload.get("old_password") or ""
    new_password = payload.get("new_password") or ""
    confirm_password = payload.get("confirm_password") or ""

    if new_password != confirm_password:
        return error_response("PASSWORD_MISMATCH", "Les nouveaux mots de passe ne correspondent pas", 400)
    if len(new_password) < 8:
        return error_response("PASSWORD_TOO_SHORT", "Le mot de passe doit contenir au moins 8 caractères", 400)

    user = fetch_one("SELECT password_hash FROM users WHERE id = %s", (g.user["user_id"],))
    if not user or not user.get("password_hash") or not check_password_hash(user["password_hash"], old_password):
        return error_response("INVALID_PASSWORD", "Ancien mot de passe incorrect", 400)

    execute("UPDATE users SET password_hash = %s WHERE id = %s",
            (generate_password_hash(new_password), g.user["user_id"]))
    log_system_action("password_changed", "users", g.user["user_id"], g.user["user_id"], "Mot de passe modifié")
    return jsonify(success=True, message="Mot de passe modifié")
