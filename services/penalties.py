# services/penalties.py
"""
Late-return penalties (FCFA).

amount = min(max(0, days_late - grace) * daily_rate, max_penalty)
Rates come from `penalty_settings` per document type, falling back to Config.
"""
import logging
import uuid
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from db_mysql import execute, fetch_all, fetch_one, fetch_value
from errors import NotFoundError, ValidationError
from services.dates import days_overdue
from services.documents import get_document_meta, normalize_type
from services.system_log import log_error, log_system_action
from services.validators import PAYMENT_METHODS

log = logging.getLogger(__name__)


def compute_late_penalty(days_late: int, daily_rate: float, max_penalty: float, grace_days: int = 0) -> Tuple[float, int]:
    """Return (amount, billed_days)."""
    effective = max(0, int(days_late) - max(0, int(grace_days)))
    amount = min(effective * float(daily_rate), float(max_penalty))
    return amount, effective


def get_penalty_settings(document_type: str) -> Dict[str, Any]:
    defaults = {
        "daily_rate": Config.PENALTY_DAILY_RATE,
        "max_penalty": Config.PENALTY_MAX_AMOUNT,
        "grace_period_days": Config.PENALTY_GRACE_DAYS,
    }
    try:
        row = fetch_one(
            """
            SELECT daily_rate, max_penalty, grace_period_days
            FROM penalty_settings
            WHERE document_type = %s AND is_active = 1
            """,
            (normalize_type(document_type),),
        )
    except Exception as e:
        log.warning(f"⚠️ penalty_settings unavailable, using defaults: {e}")
        return defaults
    if not row:
        return defaults
    return {
        "daily_rate": float(row["daily_rate"]),
        "max_penalty": float(row["max_penalty"]),
        "grace_period_days": int(row["grace_period_days"] or 0),
    }


def list_penalty_settings() -> List[Dict[str, Any]]:
    return fetch_all(
        "SELECT document_type, daily_rate, max_penalty, grace_period_days, is_active FROM penalty_settings"
    )


def update_penalty_settings(document_type: str, daily_rate, max_penalty, grace_period_days) -> None:
    doc_type = normalize_type(document_type)
    try:
        rate, cap, grace = float(daily_rate), float(max_penalty), int(grace_period_days)
    except (TypeError, ValueError):
        raise ValidationError("Paramètres de pénalité invalides")
    if rate < 0 or cap < 0 or grace < 0:
        raise ValidationError("Les paramètres de pénalité doivent être positifs")
    execute(
        """
        INSERT INTO penalty_settings (document_type, daily_rate, max_penalty, grace_period_days)
        VALUES (%s, %s, %s, %s)
        ON DUPLICATE KEY UPDATE daily_rate = VALUES(daily_rate),
                                max_penalty = VALUES(max_penalty),
                                grace_period_days = VALUES(grace_period_days),
                                is_active = 1
        """,
        (doc_type, rate, cap, grace),
    )


def create_late_penalty(user_id: str, loan_id: str, days_late: int, document_type: str = "book",
                        processed_by: Optional[str] = None) -> Optional[str]:
    """Insert an unpaid late-return penalty. None when still inside the grace period."""
    settings = get_penalty_settings(document_type)
    amount, billed_days = compute_late_penalty(
        days_late, settings["daily_rate"], settings["max_penalty"], settings["grace_period_days"]
    )
    if amount <= 0:
        return None

    penalty_id = str(uuid.uuid4())
    today = date.today()
    payment_due = today + timedelta(days=Config.PENALTY_PAYMENT_DAYS)
    label = get_document_meta(document_type)["label"].lower()
    description = (
        f"Retard de {days_late} jour(s) pour {label} "
        f"({billed_days} jours facturés après période de grâce)"
    )

    execute(
        """
        INSERT INTO penalties (id, user_id, loan_id, penalty_type, amount_fcfa, daily_rate, days_overdue,
                               description, status, penalty_date, due_date, processed_by)
        VALUES (%s, %s, %s, 'late_return', %s, %s, %s, %s, 'unpaid', %s, %s, %s)
        """,
        (penalty_id, user_id, loan_id, amount, settings["daily_rate"], days_late,
         description, today, payment_due, processed_by),
    )

    log_system_action(
        "penalty_created", "penalties", penalty_id, processed_by,
        f"Pénalité de {amount:.0f} FCFA créée pour le prêt {loan_id}",
        context={"loan_id": loan_id, "days_late": days_late, "billed_days": billed_days, "amount": amount},
    )
    _notify_penalty(user_id, amount, description, payment_due)
    return penalty_id


def _notify_penalty(user_id, amount, description, payment_due):
    from email_utils import send_penalty_notification

    try:
        user = fetch_one("SELECT email, full_name FROM users WHERE id = %s", (user_id,))
        if user:
            send_penalty_notification(user, amount, description, payment_due)
    except Exception as e:
        log.warning(f"⚠️ Penalty email failed for user {user_id}: {e}")


def mark_penalty_paid(penalty_id: str, payment_method: str = "cash", receipt_number: Optional[str] = None,
                      processed_by: Optional[str] = None) -> None:
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Mode de paiement invalide: {payment_method}", details={"allowed": list(PAYMENT_METHODS)}
        )
    updated = execute(
        """
        UPDATE penalties
           SET status = 'paid', payment_date = CURDATE(), payment_method = %s,
               receipt_number = %s, processed_by = %s
         WHERE id = %s AND status = 'unpaid'
        """,
        (payment_method, receipt_number, processed_by, penalty_id),
    )
    if not updated:
        raise NotFoundError("Pénalité introuvable ou déjà réglée", code="PENALTY_NOT_FOUND")
    log_system_action(
        "penalty_paid", "penalties", penalty_id, processed_by,
        f"Pénalité réglée ({payment_method})", context={"receipt_number": receipt_number},
    )


def waive_penalty(penalty_id: str, reason: str, waived_by: Optional[str] = None) -> None:
    if not (reason or "").strip():
        raise ValidationError("Le motif d'annulation est requis")
    updated = execute(
        """
        UPDATE penalties
           SET status = 'waived', waived_by = %s, waived_reason = %s
         WHERE id = %s AND status = 'unpaid'
        """,
        (waived_by, reason.strip(), penalty_id),
    )
    if not updated:
        raise NotFoundError("Pénalité introuvable ou déjà traitée", code="PENALTY_NOT_FOUND")
    log_system_action("penalty_waived", "penalties", penalty_id, waived_by, f"Pénalité annulée : {reason}")


def process_overdue_loans() -> Dict[str, int]:
    """Create late penalties for every overdue loan that has none. Never raises."""
    stats = {"processed": 0, "created": 0, "errors": 0}
    try:
        loans = fetch_all(
            """
            SELECT l.id, l.user_id, l.due_date, l.document_type
            FROM loans l
            WHERE l.status IN ('active', 'overdue')
              AND l.return_date IS NULL
              AND l.due_date < CURDATE()
              AND NOT EXISTS (
                  SELECT 1 FROM penalties p
                  WHERE p.loan_id = l.id AND p.penalty_type = 'late_return'
              )
            """
        )
    except Exception as e:
        log.error(f"❌ Overdue loan scan failed: {e}", exc_info=True)
        log_error("process_overdue_loans", e)
        stats["errors"] += 1
        return stats

    for loan in loans:
        stats["processed"] += 1
        try:
            late = days_overdue(loan["due_date"])
            if create_late_penalty(loan["user_id"], loan["id"], late, loan.get("document_type") or "book"):
                stats["created"] += 1
        except Exception as e:
            stats["errors"] += 1
            log.error(f"❌ Penalty creation failed for loan {loan['id']}: {e}")
            log_error("penalty_creation_failed", e, loan_id=loan["id"])

    if stats["processed"]:
        log_system_action(
            "overdue_processing", "penalties",
            message=f"{stats['created']} pénalité(s) créée(s) sur {stats['processed']} prêt(s) en retard",
            context=stats,
        )
    return stats


def unpaid_penalties_for_loan(loan_id: str) -> List[Dict[str, Any]]:
    return fetch_all(
        "SELECT id, amount_fcfa, description, penalty_date FROM penalties WHERE loan_id = %s AND status = 'unpaid'",
        (loan_id,),
    )


def unpaid_penalties_for_user(user_id: str, exclude_loan_id: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = "SELECT id, loan_id, amount_fcfa, description, penalty_date FROM penalties WHERE user_id = %s AND status = 'unpaid'"
    params: list = [user_id]
    if exclude_loan_id:
        sql += " AND (loan_id IS NULL OR loan_id <> %s)"
        params.append(exclude_loan_id)
    return fetch_all(sql, tuple(params))


def list_penalties(status: Optional[str] = None, user_id: Optional[str] = None, limit: int = 50, offset: int = 0):
    where, params = [], []
    if status:
        where.append("p.status = %s")
        params.append(status)
    if user_id:
        where.append("p.user_id = %s")
        params.append(user_id)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    rows = fetch_all(
        f"""
        SELECT p.*, u.full_name AS user_name, u.email AS user_email,
               COALESCE(b.title, t.title, m.title, s.title) AS document_title
        FROM penalties p
        LEFT JOIN users u ON u.id = p.user_id
        LEFT JOIN loans l ON l.id = p.loan_id
        LEFT JOIN books b ON b.id = l.book_id
        LEFT JOIN theses t ON t.id = l.academic_document_id AND l.document_type = 'these'
        LEFT JOIN memoires m ON m.id = l.academic_document_id AND l.document_type = 'memoire'
        LEFT JOIN stage_reports s ON s.id = l.academic_document_id AND l.document_type = 'rapport_stage'
        {clause}
        ORDER BY p.penalty_date DESC, p.created_at DESC
        LIMIT %s OFFSET %s
        """,
        tuple(params) + (limit, offset),
    )
    total = fetch_value(f"SELECT COUNT(*) AS c FROM penalties p {clause}", tuple(params))
    return rows, int(total)


def get_penalty(penalty_id: str) -> Dict[str, Any]:
    row = fetch_one("SELECT * FROM penalties WHERE id = %s", (penalty_id,))
    if not row:
        raise NotFoundError("Pénalité introuvable", code="PENALTY_NOT_FOUND")
    return row


def user_penalty_summary(user_id: str) -> Dict[str, Any]:
    row = fetch_one(
        """
        SELECT COUNT(*) AS total_count,
               COALESCE(SUM(CASE WHEN status = 'unpaid' THEN amount_fcfa END), 0) AS unpaid_amount,
               COALESCE(SUM(CASE WHEN status = 'paid' THEN amount_fcfa END), 0) AS paid_amount,
               COALESCE(SUM(CASE WHEN status = 'waived' THEN amount_fcfa END), 0) AS waived_amount,
               SUM(status = 'unpaid') AS unpaid_count
        FROM penalties WHERE user_id = %s
        """,
        (user_id,),
    ) or {}
    return {
        "total_count": int(row.get("total_count") or 0),
        "unpaid_count": int(row.get("unpaid_count") or 0),
        "unpaid_amount": float(row.get("unpaid_amount") or 0),
        "paid_amount": float(row.get("paid_amount") or 0),
        "waived_amount": float(row.get("waived_amount") or 0),
    }


def penalty_stats() -> Dict[str, Any]:
    row = fetch_one(
        """
        SELECT COUNT(*) AS total,
               SUM(status = 'unpaid') AS unpaid,
               SUM(status = 'paid') AS paid,
               SUM(status = 'waived') AS waived,
               COALESCE(SUM(CASE WHEN status = 'unpaid' THEN amount_fcfa END), 0) AS outstanding_amount,
               COALESCE(SUM(CASE WHEN status = 'paid' THEN amount_fcfa END), 0) AS collected_amount
        FROM penalties
        """
    ) or {}
    return {k: float(v or 0) if "amount" in k else int(v or 0) for k, v in row.items()}
