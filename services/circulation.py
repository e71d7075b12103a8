# services/circulation.py
"""Loans: checkout, return, renewal, overdue bookkeeping."""
import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from config import Config
from db_mysql import execute, fetch_all, fetch_one, fetch_value, transaction
from errors import ConflictError, NotFoundError, ValidationError
from services import catalog
from services.availability import get_document_availability, get_reservation_queue
from services.dates import calculate_due_date, iso, to_date
from services.documents import fetch_document, fk_values, get_document_meta, normalize_type
from services.penalties import create_late_penalty, process_overdue_loans, unpaid_penalties_for_loan, unpaid_penalties_for_user
from services.settings import get_setting
from services.system_log import log_system_action
from services.validators import pagination

log = logging.getLogger(__name__)

LOAN_STATUSES = ("active", "overdue", "returned", "lost")

# Title/author of whichever table the loan points at
LOAN_SELECT = """
    SELECT l.id, l.user_id, l.book_id, l.academic_document_id, l.document_type,
           l.loan_date, l.due_date, l.return_date, l.status, l.renewal_count, l.notes,
           l.created_at,
           u.full_name AS user_name, u.email AS user_email, u.barcode AS user_barcode,
           COALESCE(b.title, t.title, m.title, s.title) AS document_title,
           COALESCE(b.main_author, t.main_author, m.main_author, s.student_name) AS document_author
    FROM loans l
    LEFT JOIN users u ON u.id = l.user_id
    LEFT JOIN books b ON b.id = l.book_id
    LEFT JOIN theses t ON t.id = l.academic_document_id AND l.document_type = 'these'
    LEFT JOIN memoires m ON m.id = l.academic_document_id AND l.document_type = 'memoire'
    LEFT JOIN stage_reports s ON s.id = l.academic_document_id AND l.document_type = 'rapport_stage'
"""


def serialize_loan(loan: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(loan)
    for key in ("loan_date", "due_date", "return_date", "created_at", "start_time", "end_time"):
        if key in out:
            out[key] = iso(out[key])
    out["document_id"] = out.get("book_id") or out.get("academic_document_id")
    return out


def _serialize_penalty(row: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    out["penalty_date"] = iso(out.get("penalty_date"))
    out["amount_fcfa"] = float(out.get("amount_fcfa") or 0)
    return out


def default_loan_days() -> int:
    return int(get_setting("default_loan_days", Config.DEFAULT_LOAN_DAYS))


def update_overdue_loans() -> int:
    """Bill late loans, then flag active loans past due as overdue."""
    process_overdue_loans()
    updated = execute(
        """
        UPDATE loans SET status = 'overdue'
        WHERE status = 'active' AND due_date < CURDATE() AND return_date IS NULL
        """
    )
    if updated:
        log.info(f"⏰ {updated} loan(s) marked overdue")
    return updated


def _get_user(user_id):
    user = fetch_one(
        "SELECT id, email, full_name, is_active, max_loans, max_reservations FROM users WHERE id = %s",
        (user_id,),
    )
    if not user:
        raise NotFoundError("Utilisateur non trouvé", code="USER_NOT_FOUND")
    return user


def create_loan(data: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
    user_id = data.get("user_id")
    document_id = data.get("document_id") or data.get("book_id") or data.get("academic_document_id")
    if not user_id or not document_id:
        raise ValidationError("user_id et document_id sont requis")
    doc_type = normalize_type(data.get("document_type") or "book")
    fk = get_document_meta(doc_type)["fk"]

    user = _get_user(user_id)
    if not user["is_active"]:
        raise ConflictError("USER_INACTIVE", "Le compte utilisateur est désactivé")

    document = fetch_document(doc_type, document_id)
    if not document:
        raise NotFoundError("Document non trouvé", code="DOCUMENT_NOT_FOUND")

    availability = get_document_availability(document_id, doc_type)

    queue = get_reservation_queue(document_id, doc_type)
    if queue:
        first = queue[0]
        raise ConflictError(
            "DOCUMENT_HAS_RESERVATIONS",
            "Ce document est réservé. Le prêt doit passer par la file de réservation.",
            details={
                "reservation_id": first["id"],
                "reserved_by": first.get("user_name"),
                "priority_order": first["priority_order"],
                "expiry_date": iso(first["expiry_date"]),
                "queue_length": len(queue),
            },
        )

    if availability["available_copies"] <= 0:
        raise ConflictError(
            "DOCUMENT_UNAVAILABLE",
            "Aucun exemplaire disponible",
            details={"next_available_date": availability["next_available_date"]},
        )

    active_count = int(fetch_value(
        "SELECT COUNT(*) AS c FROM loans WHERE user_id = %s AND status IN ('active', 'overdue')",
        (user_id,),
    ) or 0)
    if active_count >= int(user["max_loans"] or 0):
        raise ConflictError(
            "LOAN_LIMIT_EXCEEDED",
            f"Limite d'emprunts atteinte ({active_count}/{user['max_loans']})",
            details={"current": active_count, "max": user["max_loans"]},
        )

    if fetch_value(
        f"SELECT COUNT(*) AS c FROM loans WHERE user_id = %s AND {fk} = %s AND status IN ('active', 'overdue')",
        (user_id, document_id),
    ):
        raise ConflictError("ALREADY_BORROWED", "L'utilisateur a déjà emprunté ce document")

    loan_date = to_date(data.get("loan_date")) or date.today()
    due_date = to_date(data.get("due_date")) or calculate_due_date(
        loan_date, default_loan_days(), Config.LOAN_DAYS_ARE_WORKING_DAYS
    )
    if due_date <= loan_date:
        raise ValidationError("La date de retour doit être postérieure à la date d'emprunt")

    loan_id = str(uuid.uuid4())
    book_id, academic_id = fk_values(doc_type, document_id)
    with transaction() as cur:
        cur.execute(
            """
            INSERT INTO loans (id, user_id, book_id, academic_document_id, document_type,
                               loan_date, due_date, status, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, 'active', %s)
            """,
            (loan_id, user_id, book_id, academic_id, doc_type, loan_date, due_date, data.get("notes")),
        )
        if doc_type == "book":
            cur.execute(
                "UPDATE books SET available_copies = GREATEST(0, available_copies - 1) WHERE id = %s",
                (document_id,),
            )

    catalog.invalidate_cache()
    log_system_action(
        "loan_created", "loans", loan_id, actor,
        f"Prêt de « {document['title']} » à {user['full_name']}",
        context={"document_id": document_id, "document_type": doc_type, "due_date": due_date},
    )

    from email_utils import send_loan_confirmation
    send_loan_confirmation(user, document, due_date)

    return get_loan(loan_id)


def get_loan(loan_id: str) -> Dict[str, Any]:
    row = fetch_one(LOAN_SELECT + " WHERE l.id = %s", (loan_id,))
    if not row:
        raise NotFoundError("Emprunt non trouvé", code="LOAN_NOT_FOUND")
    return serialize_loan(row)


def return_loan(loan_id: str, actor: Optional[str] = None, return_date: Optional[date] = None) -> Dict[str, Any]:
    loan = fetch_one("SELECT * FROM loans WHERE id = %s", (loan_id,))
    if not loan:
        raise NotFoundError("Emprunt non trouvé", code="LOAN_NOT_FOUND")
    if loan["status"] == "returned":
        raise ConflictError("ALREADY_RETURNED", "Ce document a déjà été retourné")

    unpaid = unpaid_penalties_for_loan(loan_id)
    if unpaid:
        total = sum(float(p["amount_fcfa"]) for p in unpaid)
        raise ConflictError(
            "UNPAID_PENALTIES",
            "Des pénalités impayées sont liées à cet emprunt. Elles doivent être réglées avant le retour.",
            details={"penalties": [_serialize_penalty(p) for p in unpaid], "total_amount": total},
        )

    doc_type = loan.get("document_type") or "book"
    document_id = loan.get("book_id") or loan.get("academic_document_id")
    returned_on = return_date or date.today()
    due = to_date(loan["due_date"])
    days_late = max(0, (returned_on - due).days) if due else 0
    is_late = days_late > 0

    penalty_id, penalty_error = None, None
    already_billed = is_late and fetch_value(
        "SELECT COUNT(*) AS c FROM penalties WHERE loan_id = %s AND penalty_type = 'late_return'",
        (loan_id,),
    )
    if is_late and not already_billed:
        try:
            penalty_id = create_late_penalty(loan["user_id"], loan_id, days_late, doc_type, actor)
        except Exception as e:
            penalty_error = str(e)
            log.error(f"❌ Late penalty failed for loan {loan_id}: {e}")

    with transaction() as cur:
        cur.execute(
            "UPDATE loans SET status = 'returned', return_date = %s WHERE id = %s",
            (returned_on, loan_id),
        )
        if doc_type == "book":
            cur.execute(
                """
                UPDATE books SET available_copies = available_copies + 1
                WHERE id = %s AND available_copies < total_copies
                """,
                (document_id,),
            )

    catalog.invalidate_cache()
    log_system_action(
        "loan_returned", "loans", loan_id, actor,
        f"Retour du prêt {loan_id}" + (f" avec {days_late} jour(s) de retard" if is_late else ""),
        context={"days_late": days_late, "penalty_id": penalty_id},
    )

    notified = notify_waiting_reservations(document_id, doc_type)
    other_unpaid = unpaid_penalties_for_user(loan["user_id"], exclude_loan_id=loan_id)

    message = "Document retourné avec succès"
    if is_late:
        message += f" (retard de {days_late} jour(s)"
        message += ", pénalité créée)" if penalty_id else ")"
    if other_unpaid:
        message += ". Attention : l'utilisateur a d'autres pénalités impayées."

    return {
        "loan": get_loan(loan_id),
        "message": message,
        "notified_reservations": notified,
        "return_info": {
            "is_late": is_late,
            "days_late": days_late,
            "due_date": iso(due),
            "return_date": iso(returned_on),
            "penalty_created": bool(penalty_id),
            "penalty_id": penalty_id,
            "penalty_error": penalty_error,
            "has_other_unpaid_penalties": bool(other_unpaid),
            "other_unpaid_penalties": [_serialize_penalty(p) for p in other_unpaid],
        },
    }


def notify_waiting_reservations(document_id: str, document_type: str) -> int:
    """E-mail every active reservation holder that the document came back."""
    from email_utils import send_document_available

    sent = 0
    try:
        title = (fetch_document(document_type, document_id) or {}).get("title")
        for res in get_reservation_queue(document_id, document_type):
            user = {"email": res.get("user_email"), "full_name": res.get("user_name")}
            if send_document_available(user, title, res["expiry_date"]):
                execute("UPDATE reservations SET notification_sent = 1 WHERE id = %s", (res["id"],))
                sent += 1
    except Exception as e:
        log.warning(f"⚠️ Reservation notification failed for {document_id}: {e}")
    return sent


def extend_loan(loan_id: str, days: Optional[int] = None, actor: Optional[str] = None) -> Dict[str, Any]:
    loan = fetch_one("SELECT * FROM loans WHERE id = %s", (loan_id,))
    if not loan:
        raise NotFoundError("Emprunt non trouvé", code="LOAN_NOT_FOUND")
    if loan["status"] != "active":
        raise ConflictError("LOAN_NOT_RENEWABLE", "Seuls les emprunts actifs (non en retard) sont renouvelables")

    max_renewals = int(get_setting("max_renewals", 1))
    if int(loan.get("renewal_count") or 0) >= max_renewals:
        raise ConflictError("RENEWAL_LIMIT_EXCEEDED", f"Nombre maximal de renouvellements atteint ({max_renewals})")

    doc_type = loan.get("document_type") or "book"
    document_id = loan.get("book_id") or loan.get("academic_document_id")
    if get_reservation_queue(document_id, doc_type):
        raise ConflictError("DOCUMENT_HAS_RESERVATIONS", "Le document est réservé par un autre lecteur")

    new_due = calculate_due_date(
        loan["due_date"], days or default_loan_days(), Config.LOAN_DAYS_ARE_WORKING_DAYS
    )
    execute(
        "UPDATE loans SET due_date = %s, renewal_count = renewal_count + 1 WHERE id = %s",
        (new_due, loan_id),
    )
    log_system_action("loan_renewed", "loans", loan_id, actor, f"Prêt prolongé jusqu'au {new_due.isoformat()}")
    return get_loan(loan_id)


def mark_loan_lost(loan_id: str, actor: Optional[str] = None) -> Dict[str, Any]:
    updated = execute(
        "UPDATE loans SET status = 'lost' WHERE id = %s AND status IN ('active', 'overdue')", (loan_id,)
    )
    if not updated:
        raise NotFoundError("Emprunt actif non trouvé", code="LOAN_NOT_FOUND")
    log_system_action("loan_lost", "loans", loan_id, actor, "Document déclaré perdu", level="warning")
    return get_loan(loan_id)


def _consultation_rows(filters: Dict[str, Any]) -> List[Dict[str, Any]]:
    where, params = [], []
    if filters.get("user_id"):
        where.append("c.user_id = %s")
        params.append(filters["user_id"])
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    rows = fetch_all(
        f"""
        SELECT c.id, c.user_id, c.book_id, c.academic_document_id, c.document_type,
               c.consultation_date AS loan_date, NULL AS due_date, c.end_time AS return_date,
               c.status, c.created_at,
               u.full_name AS user_name, u.email AS user_email,
               COALESCE(b.title, t.title, m.title, s.title) AS document_title
        FROM reading_room_consultations c
        LEFT JOIN users u ON u.id = c.user_id
        LEFT JOIN books b ON b.id = c.book_id
        LEFT JOIN theses t ON t.id = c.academic_document_id AND c.document_type = 'these'
        LEFT JOIN memoires m ON m.id = c.academic_document_id AND c.document_type = 'memoire'
        LEFT JOIN stage_reports s ON s.id = c.academic_document_id AND c.document_type = 'rapport_stage'
        {clause}
        """,
        tuple(params),
    )
    for r in rows:
        r["loan_type"] = "reading_room"
    return rows


def list_loans(filters: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 20,
               include_consultations: bool = False) -> Dict[str, Any]:
    filters = filters or {}
    try:
        update_overdue_loans()
    except Exception as e:
        log.warning(f"⚠️ Overdue refresh failed before listing loans: {e}")

    where, params = [], []
    if filters.get("user_id"):
        where.append("l.user_id = %s")
        params.append(filters["user_id"])
    if filters.get("document_id"):
        where.append("(l.book_id = %s OR l.academic_document_id = %s)")
        params += [filters["document_id"], filters["document_id"]]
    if filters.get("status"):
        if filters["status"] not in LOAN_STATUSES:
            raise ValidationError(f"Statut invalide: {filters['status']}")
        where.append("l.status = %s")
        params.append(filters["status"])
    if filters.get("document_type"):
        where.append("l.document_type = %s")
        params.append(normalize_type(filters["document_type"]))
    clause = f" WHERE {' AND '.join(where)}" if where else ""

    if include_consultations:
        loans = fetch_all(LOAN_SELECT + clause + " ORDER BY l.created_at DESC", tuple(params))
        for r in loans:
            r["loan_type"] = "loan"
        merged = loans + _consultation_rows(filters)
        merged.sort(key=lambda r: iso(r.get("created_at")) or "", reverse=True)
        total = len(merged)
        offset = (page - 1) * limit
        rows = merged[offset:offset + limit]
    else:
        total = int(fetch_value(f"SELECT COUNT(*) AS c FROM loans l{clause}", tuple(params)) or 0)
        rows = fetch_all(
            LOAN_SELECT + clause + " ORDER BY l.created_at DESC LIMIT %s OFFSET %s",
            tuple(params) + (limit, (page - 1) * limit),
        )
        for r in rows:
            r["loan_type"] = "loan"

    return {"data": [serialize_loan(r) for r in rows], "pagination": pagination(page, limit, total)}


def loans_due_in(days_before: int) -> List[Dict[str, Any]]:
    """Active loans whose due date is exactly `days_before` days away."""
    return fetch_all(
        LOAN_SELECT + " WHERE l.status = 'active' AND DATEDIFF(l.due_date, CURDATE()) = %s",
        (days_before,),
    )


def overdue_loans() -> List[Dict[str, Any]]:
    return fetch_all(
        LOAN_SELECT + """
        WHERE l.status IN ('active', 'overdue') AND l.return_date IS NULL AND l.due_date < CURDATE()
        ORDER BY l.due_date ASC
        """
    )


def loan_stats() -> Dict[str, int]:
    row = fetch_one(
        """
        SELECT COUNT(*) AS total,
               SUM(status = 'active') AS active,
               SUM(status = 'overdue') AS overdue,
               SUM(status = 'returned') AS returned,
               SUM(status = 'lost') AS lost,
               SUM(status = 'active' AND due_date BETWEEN CURDATE() AND CURDATE() + INTERVAL 3 DAY) AS due_soon
        FROM loans
        """
    ) or {}
    return {k: int(v or 0) for k, v in row.items()}


def loans_for_export(status: Optional[str] = None) -> List[Dict[str, Any]]:
    sql = LOAN_SELECT
    params: tuple = ()
    if status:
        sql += " WHERE l.status = %s"
        params = (status,)
    return [serialize_loan(r) for r in fetch_all(sql + " ORDER BY l.loan_date DESC", params)]


def due_date_preview(loan_date=None, days=None) -> Dict[str, Any]:
    start = to_date(loan_date) or date.today()
    loan_days = days or default_loan_days()
    due = calculate_due_date(start, loan_days, Config.LOAN_DAYS_ARE_WORKING_DAYS)
    return {
        "loan_date": start.isoformat(),
        "loan_days": loan_days,
        "working_days": Config.LOAN_DAYS_ARE_WORKING_DAYS,
        "due_date": due.isoformat(),
        "calendar_days": (due - start).days,
    }
