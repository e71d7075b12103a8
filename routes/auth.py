from functools import wraps

from flask import Blueprint, current_app, g, jsonify, request, session
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from ldap3.core.exceptions import LDAPException
from werkzeug.security import check_password_hash

from config import Config
from db_mysql import execute, fetch_one
from errors import error_response
from services import active_directory
from services.system_log import log_system_action

bp = Blueprint("auth_bp", __name__)

STAFF_ROLES = ("admin", "bibliothecaire", "enregistrement", "circulation")


# --------------------------------------------------
# Token helpers
# --------------------------------------------------
def _serializer():
    return URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt=Config.TOKEN_SALT)


def issue_token(identity: dict) -> str:
    return _serializer().dumps(identity)


def verify_token(token: str):
    """Decode a bearer token; returns the identity dict or None."""
    try:
        return _serializer().loads(token, max_age=Config.TOKEN_MAX_AGE)
    except SignatureExpired:
        current_app.logger.info("Expired bearer token rejected")
        return None
    except BadSignature:
        return None


def current_identity():
    """Identity from the session, else from an `Authorization: Bearer` header."""
    if session.get("logged_in"):
        return {
            "user_id": session.get("user_id"),
            "email": session.get("email"),
            "name": session.get("name"),
            "role": session.get("role"),
            "source": session.get("source"),
        }
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return verify_token(header[7:].strip())
    return None


def require_login(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        identity = current_identity()
        if not identity:
            return error_response("UNAUTHORIZED", "Authentification requise", 401)
        g.user = identity
        return view(*args, **kwargs)
    return wrapper


def require_role(*roles):
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            identity = current_identity()
            if not identity:
                return error_response("UNAUTHORIZED", "Authentification requise", 401)
            if identity.get("role") not in roles:
                return error_response("FORBIDDEN", "Accès refusé pour ce rôle", 403,
                                      {"required": list(roles), "role": identity.get("role")})
            g.user = identity
            return view(*args, **kwargs)
        return wrapper
    return decorator


def actor_id():
    user = getattr(g, "user", None) or {}
    return user.get("user_id")


def _start_session(identity: dict):
    session.clear()
    session["logged_in"] = True
    session["user_id"] = identity["user_id"]
    session["email"] = identity["email"]
    session["name"] = identity["name"]
    session["role"] = identity["role"]
    session["source"] = identity["source"]


# --------------------------------------------------
# Login strategies
# --------------------------------------------------
def _login_active_directory(username, password):
    try:
        ad_user = active_directory.authenticate_user(username, password)
    except LDAPException as e:
        current_app.logger.warning(f"⚠️ Active Directory unreachable, falling back to local login: {e}")
        return None
    if not ad_user:
        return None
    synced, _ = active_directory.sync_user_to_database(ad_user)
    if not synced["is_active"]:
        return None
    user_id = active_directory.ensure_patron_account(synced)
    return {
        "user_id": user_id,
        "email": synced["email"],
        "name": synced["display_name"],
        "role": synced["role"],
        "source": "active_directory",
        "permissions": synced["permissions"],
    }


def _login_local(username, password):
    row = fetch_one(
        "SELECT id, email, full_name, role, password_hash, is_active FROM users WHERE email = %s",
        (username.strip().lower(),),
    )
    if not row or not row.get("password_hash") or not row["is_active"]:
        return None
    if not check_password_hash(row["password_hash"], password):
        return None
    execute("UPDATE users SET last_login = NOW() WHERE id = %s", (row["id"],))
    return {
        "user_id": row["id"],
        "email": row["email"],
        "name": row["full_name"],
        "role": row["role"],
        "source": "local",
    }


# --------------------------------------------------
# Routes
# --------------------------------------------------
@bp.route("/api/auth/login", methods=["POST"])
def login():
    payload = request.get_json(silent=True) or request.form
    username = (payload.get("username") or payload.get("email") or "").strip()
    password = payload.get("password") or ""
    if not username or not password:
        return error_response("MISSING_CREDENTIALS", "Nom d'utilisateur et mot de passe requis", 400)

    identity = None
    if Config.AD_ENABLED:
        identity = _login_active_directory(username, password)
    if not identity:
        identity = _login_local(username, password)
    if not identity:
        log_system_action("login_failed", "users", message=f"Échec de connexion pour {username}", level="warning")
        return error_response("INVALID_CREDENTIALS", "Identifiants invalides", 401)

    _start_session(identity)
    log_system_action("login", "users", identity["user_id"], identity["user_id"],
                      f"Connexion ({identity['source']})")
    return jsonify(success=True, user=identity, token=issue_token(
        {k: identity[k] for k in ("user_id", "email", "name", "role", "source")}
    ))


@bp.route("/api/auth/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify(success=True, message="Déconnexion réussie")


@bp.route("/api/auth/verify")
@require_login
def verify():
    return jsonify(success=True, user=g.user)


@bp.route("/api/auth/ad/status")
@require_role("admin")
def ad_status():
    return jsonify(enabled=Config.AD_ENABLED, sync=active_directory.get_sync_status())


@bp.route("/api/auth/ad/sync", methods=["POST"])
@require_role("admin")
def ad_sync():
    if not Config.AD_ENABLED:
        return error_response("AD_DISABLED", "Active Directory n'est pas activé", 422)
    try:
        stats = active_directory.sync_all_users(actor=actor_id())
    except LDAPException as e:
        current_app.logger.error(f"❌ AD sync failed: {e}")
        return error_response("AD_UNAVAILABLE", "Connexion à Active Directory impossible", 503, str(e))
    return jsonify(success=True, stats=stats)
