import io

from flask import Blueprint, jsonify, request, send_file

from routes.auth import STAFF_ROLES, require_role
from services import analytics
from services.exports import create_sections_report, export_response_parts

bp = Blueprint("analytics_bp", __name__)


@bp.route("/api/analytics/dashboard")
@require_role(*STAFF_ROLES)
def dashboard():
    """All dashboard widgets in one payload."""
    return jsonify(analytics.dashboard_payload())


@bp.route("/api/analytics/stats")
@require_role(*STAFF_ROLES)
def stats():
    return jsonify(analytics.basic_stats())


@bp.route("/api/analytics/monthly-loans")
@require_role(*STAFF_ROLES)
def monthly_loans():
    return jsonify(data=analytics.monthly_loans(request.args.get("month")))


@bp.route("/api/analytics/monthly-additions")
@require_role(*STAFF_ROLES)
def monthly_additions():
    return jsonify(data=analytics.monthly_additions())


@bp.route("/api/analytics/document-types")
@require_role(*STAFF_ROLES)
def document_types():
    return jsonify(data=analytics.document_type_stats())


@bp.route("/api/analytics/top-domains")
@require_role(*STAFF_ROLES)
def top_domains():
    return jsonify(data=analytics.top_domains(request.args.get("limit", 10, type=int)))


@bp.route("/api/analytics/popular-books")
@require_role(*STAFF_ROLES)
def popular_books():
    return jsonify(data=analytics.popular_books(request.args.get("limit", 10, type=int)))


@bp.route("/api/analytics/fines")
@require_role("admin", "bibliothecaire")
def fines():
    return jsonify(analytics.fines_analysis())


@bp.route("/api/analytics/activities")
@require_role(*STAFF_ROLES)
def activities():
    return jsonify(data=analytics.recent_activities(request.args.get("limit", 10, type=int)))


@bp.route("/api/analytics/export/<section>")
@require_role(*STAFF_ROLES)
def export_section(section):
    title, df = analytics.export_dataframe(section)
    data, name, mimetype = export_response_parts(df, title, request.args.get("format"), section)
    return send_file(io.BytesIO(data), as_attachment=True, download_name=name, mimetype=mimetype)


@bp.route("/api/analytics/report.pdf")
@require_role("admin", "bibliothecaire")
def full_report():
    """Every analytics section in one landscape PDF."""
    sections = []
    for key in analytics.EXPORT_SECTIONS:
        title, df = analytics.export_dataframe(key)
        sections.append({"title": title, "data": df})
    pdf_bytes = create_sections_report("Rapport statistique de la bibliothèque", sections)
    return send_file(io.BytesIO(pdf_bytes), as_attachment=True, download_name="rapport_statistique.pdf",
                     mimetype="application/pdf")
