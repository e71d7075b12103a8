# tasks/circulation_jobs.py
from __future__ import annotations

from datetime import date, datetime
from typing import Dict

import pandas as pd
from flask_mail import Message

from config import Config
from email_utils import send_document_available, send_due_reminder, send_overdue_notice
from services import analytics, circulation, reservations
from services.dates import days_overdue, to_date
from services.exports import create_sections_report
from services.settings import get_setting
from services.system_log import log_system_action

# Overdue notices go out on the first day late and then weekly
OVERDUE_NOTICE_DAYS = (1, 7, 14, 21, 28)


def _patron(row) -> Dict[str, str]:
    return {"email": row.get("user_email"), "full_name": row.get("user_name")}


def send_due_reminders(app) -> int:
    days_before = int(get_setting("email_reminder_days_before", Config.REMINDER_DAYS_BEFORE))
    sent = 0
    for loan in circulation.loans_due_in(days_before):
        if send_due_reminder(_patron(loan), loan["document_title"], loan["due_date"], days_before):
            sent += 1
    app.logger.info(f"📧 {sent} due reminder(s) sent ({days_before} day(s) before due date)")
    return sent


def send_overdue_notices(app) -> int:
    sent = 0
    today = date.today()
    for loan in circulation.overdue_loans():
        late = days_overdue(loan["due_date"], today)
        if late not in OVERDUE_NOTICE_DAYS:
            continue
        if send_overdue_notice(_patron(loan), loan["document_title"], late):
            sent += 1
    app.logger.info(f"📧 {sent} overdue notice(s) sent")
    return sent


def notify_available_reservations(app) -> int:
    """Tell head-of-queue holders their document can be collected."""
    notified = 0
    for res in reservations.first_in_queue_to_notify():
        expiry = to_date(res["expiry_date"])
        if send_document_available(_patron(res), res["document_title"], expiry):
            reservations.mark_notified(res["id"])
            notified += 1
    app.logger.info(f"📧 {notified} reservation holder(s) notified of availability")
    return notified


def run_circulation_jobs(app) -> Dict[str, object]:
    """
    Entry point used by the scheduler and the admin "run now" endpoint.
    Each step is isolated so one failure does not skip the others.
    """
    app.logger.info("📤 Starting daily circulation job...")
    summary: Dict[str, object] = {"started_at": datetime.now().isoformat(timespec="seconds")}
    steps = (
        ("overdue_updated", circulation.update_overdue_loans),
        ("expired_reservations", lambda: reservations.cleanup_expired()["cleaned_reservations"]),
        ("due_reminders", lambda: send_due_reminders(app)),
        ("overdue_notices", lambda: send_overdue_notices(app)),
        ("available_notifications", lambda: notify_available_reservations(app)),
    )
    errors = []
    for key, step in steps:
        try:
            summary[key] = step()
        except Exception as e:
            app.logger.error(f"❌ Circulation step '{key}' failed: {e}", exc_info=True)
            summary[key] = None
            errors.append({"step": key, "error": str(e)})
    summary["errors"] = errors

    log_system_action(
        "circulation_job", message="Traitement quotidien de la circulation",
        level="warning" if errors else "info", context=summary,
    )
    app.logger.info("✅ Daily circulation job finished.")
    return summary


# -------------------------------------------------------------------
# Monthly activity report for the library administration
# -------------------------------------------------------------------
def build_monthly_report_pdf() -> bytes:
    stats = analytics.basic_stats()
    summary = pd.DataFrame(
        [
            ("Documents au catalogue", stats["total_documents"]),
            ("Lecteurs actifs", stats["active_users"]),
            ("Emprunts en cours", stats["active_loans"]),
            ("Emprunts en retard", stats["overdue_loans"]),
            ("Réservations actives", stats["active_reservations"]),
            ("Lecteurs actifs (30 jours)", stats["monthly_active_users"]),
            ("Durée moyenne d'emprunt (jours)", stats["avg_loan_duration"]),
        ],
        columns=["Indicateur", "Valeur"],
    )
    return create_sections_report(
        f"{Config.LIBRARY_NAME} : rapport mensuel",
        [
            {"title": "Synthèse", "data": summary},
            {"title": "Emprunts des 12 derniers mois", "data": analytics.monthly_loans()},
            {"title": "Livres les plus empruntés", "data": analytics.popular_books(15)},
            {"title": "Domaines les plus consultés", "data": analytics.top_domains(15)},
        ],
    )


def send_monthly_report(app, mail) -> bool:
    if not Config.ADMIN_EMAIL:
        app.logger.warning("⚠️ ADMIN_EMAIL not set, monthly report skipped.")
        return False
    try:
        pdf_bytes = build_monthly_report_pdf()
    except Exception as e:
        app.logger.error(f"❌ Failed to generate monthly report PDF: {e}")
        return False

    stamp = date.today().strftime("%Y-%m")
    msg = Message(
        subject=f"📊 Rapport mensuel de la bibliothèque ({stamp})",
        recipients=[Config.ADMIN_EMAIL],
        html="<p>Veuillez trouver ci-joint le rapport mensuel d'activité de la bibliothèque.</p>",
    )
    msg.attach(f"rapport_bibliotheque_{stamp}.pdf", "application/pdf", pdf_bytes)
    try:
        mail.send(msg)
        app.logger.info(f"✅ Monthly report sent to {Config.ADMIN_EMAIL}")
        return True
    except Exception as e:
        app.logger.error(f"❌ Failed to send monthly report: {e}")
        return False
