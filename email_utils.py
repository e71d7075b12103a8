from flask import current_app, render_template_string
from flask_mail import Message

from db_init import DEFAULT_EMAIL_TEMPLATES
from db_mysql import fetch_one
from services.dates import format_fcfa, iso
from services.settings import get_setting


def _load_template(template_key):
    """(subject, html) from email_templates, falling back to the built-in copy."""
    try:
        row = fetch_one(
            "SELECT subject, html FROM email_templates WHERE template_key = %s", (template_key,)
        )
    except Exception as e:
        current_app.logger.warning(f"⚠️ Could not load email template {template_key}: {e}")
        row = None
    if row:
        return row["subject"], row["html"]
    return DEFAULT_EMAIL_TEMPLATES[template_key]


def _send_email(to_email, template_key, context):
    """Render and send one notification. Returns False instead of raising."""
    if not to_email:
        return False
    if not get_setting("email_notifications_enabled", True):
        current_app.logger.info(f"Email notifications disabled, skipping {template_key} to {to_email}")
        return False

    mail = current_app.extensions.get("mail")
    if not mail:
        current_app.logger.warning("⚠️ Flask-Mail not initialised; email not sent.")
        return False

    try:
        subject_tpl, html_tpl = _load_template(template_key)
        ctx = {"library_name": current_app.config.get("LIBRARY_NAME", ""), **context}
        msg = Message(
            subject=render_template_string(subject_tpl, **ctx),
            recipients=[to_email],
            html=render_template_string(html_tpl, **ctx),
        )
        mail.send(msg)
        current_app.logger.info(f"📧 {template_key} email sent to {to_email}.")
        return True
    except Exception as e:
        current_app.logger.warning(f"⚠️ Could not send {template_key} email to {to_email}: {e}")
        return False


# ------- Public Send Functions -------

def send_loan_confirmation(user, document, due_date):
    return _send_email(user.get("email"), "loan_confirmation", {
        "full_name": user.get("full_name"),
        "title": document.get("title"),
        "due_date": iso(due_date),
    })


def send_due_reminder(user, title, due_date, days_left):
    return _send_email(user.get("email"), "due_reminder", {
        "full_name": user.get("full_name"),
        "title": title,
        "due_date": iso(due_date),
        "days_left": days_left,
    })


def send_overdue_notice(user, title, days_overdue):
    return _send_email(user.get("email"), "overdue_notice", {
        "full_name": user.get("full_name"),
        "title": title,
        "days_overdue": days_overdue,
    })


def send_penalty_notification(user, amount, description, due_date):
    return _send_email(user.get("email"), "penalty_created", {
        "full_name": user.get("full_name"),
        "amount": format_fcfa(amount),
        "description": description,
        "due_date": iso(due_date),
    })


def send_reservation_confirmation(user, title, priority, expiry_date):
    return _send_email(user.get("email"), "reservation_confirmation", {
        "full_name": user.get("full_name"),
        "title": title,
        "priority": priority,
        "expiry_date": iso(expiry_date),
    })


def send_document_available(user, title, expiry_date):
    return _send_email(user.get("email"), "document_available", {
        "full_name": user.get("full_name"),
        "title": title,
        "expiry_date": iso(expiry_date),
    })
