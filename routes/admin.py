from flask import Blueprint, current_app, jsonify, request
from flask_mail import Message

from db_mysql import execute, fetch_all
from errors import error_response
from routes.auth import actor_id, require_role
from services import active_directory, file_server, penalties, settings
from services.system_log import log_system_action, recent_logs
from services.validators import page_params, pagination
from tasks.circulation_jobs import run_circulation_jobs, send_monthly_report
from tasks.scheduler import reload_scheduler, scheduler

bp = Blueprint("admin_bp", __name__)

SCHEDULE_KEYS = ("circulation_job_hour", "circulation_job_minute")


# ---------------- SYSTEM SETTINGS ----------------
@bp.route("/api/admin/settings")
@require_role("admin")
def get_settings():
    return jsonify(settings.get_all_settings())


@bp.route("/api/admin/settings/<category>")
@require_role("admin", "bibliothecaire")
def get_settings_category(category):
    return jsonify(settings.get_settings_by_category(category))


@bp.route("/api/admin/settings", methods=["PUT"])
@require_role("admin")
def save_settings():
    """Body: {"key": value, ...} or {"key": {"value": v, "type": t, "category": c}}."""
    payload = request.get_json(silent=True) or {}
    if not payload:
        return error_response("VALIDATION_ERROR", "Aucun paramètre fourni", 400)
    for key, value in payload.items():
        if isinstance(value, dict) and "value" in value:
            settings.update_setting(key, value["value"], value.get("type"), value.get("category"))
        else:
            settings.update_setting(key, value)
    log_system_action("settings_updated", "system_settings", user_id=actor_id(),
                      message=f"Paramètres modifiés : {', '.join(payload)}")

    if any(k in payload for k in SCHEDULE_KEYS):
        mail = current_app.extensions.get("mail")
        if mail and scheduler.running:
            reload_scheduler(current_app._get_current_object(), mail)
    return jsonify(success=True, settings=settings.get_all_settings())


# ---------------- PENALTY SETTINGS ----------------
@bp.route("/api/admin/penalty-settings")
@require_role("admin", "bibliothecaire")
def get_penalty_settings():
    return jsonify(data=penalties.list_penalty_settings())


@bp.route("/api/admin/penalty-settings/<document_type>", methods=["PUT"])
@require_role("admin")
def save_penalty_settings(document_type):
    payload = request.get_json(silent=True) or {}
    penalties.update_penalty_settings(
        document_type,
        payload.get("daily_rate"),
        payload.get("max_penalty"),
        payload.get("grace_period_days"),
    )
    log_system_action("penalty_settings_updated", "penalty_settings", document_type, actor_id(),
                      f"Barème de pénalités modifié ({document_type})", context=payload)
    return jsonify(success=True, data=penalties.list_penalty_settings())


# ---------------- EMAIL TEMPLATES ----------------
@bp.route("/api/admin/email-templates")
@require_role("admin")
def get_email_templates():
    return jsonify(fetch_all("SELECT template_key, subject, html FROM email_templates ORDER BY template_key"))


@bp.route("/api/admin/email-templates/<template_key>", methods=["PUT"])
@require_role("admin")
def save_email_template(template_key):
    payload = request.get_json(silent=True) or {}
    subject = (payload.get("subject") or "").strip()
    html = (payload.get("html") or "").strip()
    if not subject or not html:
        return error_response("VALIDATION_ERROR", "Sujet et contenu requis", 400)
    execute(
        """
        INSERT INTO email_templates (template_key, subject, html) VALUES (%s, %s, %s)
        ON DUPLICATE KEY UPDATE subject = VALUES(subject), html = VALUES(html)
        """,
        (template_key, subject, html),
    )
    log_system_action("email_template_saved", "email_templates", template_key, actor_id(),
                      f"Modèle d'e-mail {template_key} enregistré")
    return jsonify(success=True)


# ---------------- AUDIT LOG ----------------
@bp.route("/api/admin/logs")
@require_role("admin")
def list_logs():
    page, limit, offset = page_params(request.args, 50, 500)
    rows, total = recent_logs(limit, offset, request.args.get("level"), request.args.get("action"))
    return jsonify(data=rows, pagination=pagination(page, limit, total))


# ---------------- ACTIVE DIRECTORY ----------------
@bp.route("/api/admin/synced-users")
@require_role("admin")
def synced_users():
    page, limit, offset = page_params(request.args, 50, 200)
    rows, total = active_directory.list_synced_users(
        request.args.get("search"), request.args.get("role"), limit, offset
    )
    return jsonify(data=rows, pagination=pagination(page, limit, total))


@bp.route("/api/admin/synced-users/<synced_user_id>/role", methods=["PUT"])
@require_role("admin")
def set_synced_role(synced_user_id):
    payload = request.get_json(silent=True) or {}
    active_directory.set_manual_role(synced_user_id, payload.get("role"), actor=actor_id())
    return jsonify(success=True)


@bp.route("/api/admin/ad/test", methods=["POST"])
@require_role("admin")
def test_ad():
    return jsonify(active_directory.test_connection())


# ---------------- DIAGNOSTICS & MANUAL ACTIONS ----------------
@bp.route("/api/admin/file-server/test", methods=["POST"])
@require_role("admin")
def test_file_server():
    return jsonify(file_server.test_connection())


@bp.route("/api/admin/test-email", methods=["POST"])
@require_role("admin")
def test_email():
    payload = request.get_json(silent=True) or {}
    to_addr = payload.get("to")
    if not to_addr:
        return error_response("VALIDATION_ERROR", "Destinataire requis", 400)
    mail = current_app.extensions.get("mail")
    if not mail:
        return error_response("MAIL_NOT_CONFIGURED", "Messagerie non configurée", 503)
    try:
        mail.send(Message(subject="SIGB : e-mail de test", recipients=[to_addr],
                          html="<p>Ceci est un e-mail de test.</p>"))
    except Exception as e:
        current_app.logger.error(f"Test email error: {e}")
        return jsonify(success=False, error=str(e))
    log_system_action("test_email", user_id=actor_id(), message=f"E-mail de test envoyé à {to_addr}")
    return jsonify(success=True)


@bp.route("/api/admin/scheduler/reload", methods=["POST"])
@require_role("admin")
def scheduler_reload():
    if not scheduler.running:
        return error_response("SCHEDULER_NOT_RUNNING", "Le planificateur n'est pas démarré", 409)
    mail = current_app.extensions.get("mail")
    job_settings = reload_scheduler(current_app._get_current_object(), mail)
    return jsonify(success=True, settings=job_settings)


@bp.route("/api/admin/jobs/circulation/run", methods=["POST"])
@require_role("admin", "bibliothecaire")
def run_circulation_now():
    summary = run_circulation_jobs(current_app._get_current_object())
    log_system_action("circulation_job_manual", user_id=actor_id(), message="Traitement lancé manuellement")
    return jsonify(success=True, summary=summary)


@bp.route("/api/admin/jobs/monthly-report/run", methods=["POST"])
@require_role("admin")
def run_monthly_report_now():
    mail = current_app.extensions.get("mail")
    sent = send_monthly_report(current_app._get_current_object(), mail)
    return jsonify(success=sent)
