# services/reservations.py
"""
Reservation queue per document.

Active reservations of a document carry priority_order 1..n. Whenever one
leaves the queue (fulfilled, cancelled, expired) every later entry moves up.
"""
import logging
import uuid
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from config import Config
from db_mysql import execute, fetch_all, fetch_one, fetch_value, transaction
from errors import ConflictError, NotFoundError, ValidationError
from services import catalog
from services.availability import can_user_reserve, get_document_availability, get_reservation_queue
from services.circulation import default_loan_days
from services.dates import calculate_due_date, iso, to_date
from services.documents import fetch_document, fk_values, get_document_meta, normalize_type
from services.settings import get_setting
from services.system_log import log_system_action
from services.validators import pagination

log = logging.getLogger(__name__)

RESERVATION_STATUSES = ("active", "fulfilled", "expired", "cancelled")

_REASON_MESSAGES = {
    "USER_NOT_FOUND": ("Utilisateur non trouvé", 404),
    "USER_INACTIVE": ("Le compte utilisateur est désactivé", 422),
    "RESERVATION_LIMIT_EXCEEDED": ("Limite de réservations atteinte", 422),
    "RESERVATION_ALREADY_EXISTS": ("Vous avez déjà réservé ce document", 422),
    "DOCUMENT_ALREADY_BORROWED": ("Vous avez déjà emprunté ce document", 422),
    "DOCUMENT_NOT_FOUND": ("Document non trouvé", 404),
    "DOCUMENT_AVAILABLE_FOR_LOAN": ("Ce document est disponible : empruntez-le directement", 422),
}

RESERVATION_SELECT = """
    SELECT r.id, r.user_id, r.book_id, r.academic_document_id, r.document_type,
           r.reservation_date, r.expiry_date, r.status, r.priority_order, r.notification_sent,
           r.notes, r.created_at,
           u.full_name AS user_name, u.email AS user_email,
           COALESCE(b.title, t.title, m.title, s.title) AS document_title
    FROM reservations r
    LEFT JOIN users u ON u.id = r.user_id
    LEFT JOIN books b ON b.id = r.book_id
    LEFT JOIN theses t ON t.id = r.academic_document_id AND r.document_type = 'these'
    LEFT JOIN memoires m ON m.id = r.academic_document_id AND r.document_type = 'memoire'
    LEFT JOIN stage_reports s ON s.id = r.academic_document_id AND r.document_type = 'rapport_stage'
"""


def _serialize(row: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    for key in ("reservation_date", "expiry_date", "created_at"):
        if key in out:
            out[key] = iso(out[key])
    out["document_id"] = out.get("book_id") or out.get("academic_document_id")
    return out


def _doc_of(res: Dict[str, Any]):
    return res.get("book_id") or res.get("academic_document_id"), res.get("document_type") or "book"


def _shift_queue(cur, fk: str, document_id: str, above_priority: int) -> None:
    cur.execute(
        f"""
        UPDATE reservations SET priority_order = priority_order - 1
        WHERE {fk} = %s AND status = 'active' AND priority_order > %s
        """,
        (document_id, above_priority),
    )


def get_reservation(reservation_id: str) -> Dict[str, Any]:
    row = fetch_one(RESERVATION_SELECT + " WHERE r.id = %s", (reservation_id,))
    if not row:
        raise NotFoundError("Réservation non trouvée", code="RESERVATION_NOT_FOUND")
    return _serialize(row)


def create_reservation(data: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
    user_id = data.get("user_id")
    document_id = data.get("document_id") or data.get("book_id") or data.get("academic_document_id")
    if not user_id or not document_id:
        raise ValidationError("user_id et document_id sont requis")
    doc_type = normalize_type(data.get("document_type") or "book")
    fk = get_document_meta(doc_type)["fk"]

    ok, reason, details = can_user_reserve(user_id, document_id, doc_type)
    if not ok:
        message, status = _REASON_MESSAGES[reason]
        if status == 404:
            raise NotFoundError(message, code=reason)
        raise ConflictError(reason, message, details=details or None)

    priority = int(fetch_value(
        f"SELECT COALESCE(MAX(priority_order), 0) AS p FROM reservations WHERE {fk} = %s AND status = 'active'",
        (document_id,),
    ) or 0) + 1
    today = date.today()
    expiry_days = int(get_setting("reservation_expiry_days", Config.RESERVATION_EXPIRY_DAYS))
    expiry = to_date(data.get("expiry_date")) or today + timedelta(days=expiry_days)
    if expiry < today:
        raise ValidationError("La date d'expiration ne peut pas être dans le passé")

    reservation_id = str(uuid.uuid4())
    book_id, academic_id = fk_values(doc_type, document_id)
    with transaction() as cur:
        cur.execute(
            """
            INSERT INTO reservations (id, user_id, book_id, academic_document_id, document_type,
                                      reservation_date, expiry_date, status, priority_order, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, 'active', %s, %s)
            """,
            (reservation_id, user_id, book_id, academic_id, doc_type, today, expiry, priority, data.get("notes")),
        )
        if doc_type == "book":
            cur.execute(
                "UPDATE books SET available_copies = available_copies - 1 WHERE id = %s AND available_copies > 0",
                (document_id,),
            )

    catalog.invalidate_cache()
    reservation = get_reservation(reservation_id)
    log_system_action(
        "reservation_created", "reservations", reservation_id, actor,
        f"Réservation de « {reservation.get('document_title')} » (position {priority})",
        context={"document_id": document_id, "document_type": doc_type, "priority": priority},
    )

    from email_utils import send_reservation_confirmation
    send_reservation_confirmation(
        {"email": reservation.get("user_email"), "full_name": reservation.get("user_name")},
        reservation.get("document_title"), priority, expiry,
    )
    return reservation


def _release_book_copy(cur, doc_type: str, document_id: str) -> bool:
    if doc_type != "book":
        return False
    cur.execute(
        "UPDATE books SET available_copies = available_copies + 1 WHERE id = %s AND available_copies < total_copies",
        (document_id,),
    )
    return cur.rowcount > 0


def cancel_reservation(reservation_id: str, actor: Optional[str] = None) -> Dict[str, Any]:
    res = fetch_one("SELECT * FROM reservations WHERE id = %s", (reservation_id,))
    if not res:
        raise NotFoundError("Réservation non trouvée", code="RESERVATION_NOT_FOUND")
    if res["status"] != "active":
        raise ConflictError("RESERVATION_NOT_ACTIVE", f"Réservation déjà {res['status']}")

    document_id, doc_type = _doc_of(res)
    fk = get_document_meta(doc_type)["fk"]
    with transaction() as cur:
        cur.execute("UPDATE reservations SET status = 'cancelled' WHERE id = %s", (reservation_id,))
        _shift_queue(cur, fk, document_id, res["priority_order"])
        _release_book_copy(cur, doc_type, document_id)

    catalog.invalidate_cache()
    log_system_action("reservation_cancelled", "reservations", reservation_id, actor, "Réservation annulée")
    return get_reservation(reservation_id)


def fulfill_reservation(reservation_id: str, actor: Optional[str] = None) -> Dict[str, Any]:
    """Turn an active reservation into a loan in one transaction."""
    res = fetch_one(
        "SELECT * FROM reservations WHERE id = %s AND status = 'active'", (reservation_id,)
    )
    if not res:
        raise NotFoundError("Réservation active non trouvée", code="RESERVATION_NOT_FOUND")

    document_id, doc_type = _doc_of(res)
    fk = get_document_meta(doc_type)["fk"]

    user = fetch_one(
        "SELECT id, email, full_name, is_active, max_loans FROM users WHERE id = %s", (res["user_id"],)
    )
    if not user:
        raise NotFoundError("Utilisateur non trouvé", code="USER_NOT_FOUND")
    if not user["is_active"]:
        raise ConflictError("USER_INACTIVE", "Le compte utilisateur est désactivé")

    active_loans = int(fetch_value(
        "SELECT COUNT(*) AS c FROM loans WHERE user_id = %s AND status IN ('active', 'overdue')",
        (user["id"],),
    ) or 0)
    if active_loans >= int(user["max_loans"] or 0):
        raise ConflictError(
            "LOAN_LIMIT_EXCEEDED", "Limite d'emprunts atteinte",
            details={"current": active_loans, "max": user["max_loans"]},
        )

    availability = get_document_availability(document_id, doc_type, exclude_reservation_id=reservation_id)
    if not availability["is_available"]:
        raise ConflictError(
            "DOCUMENT_UNAVAILABLE", "Aucun exemplaire disponible pour honorer la réservation",
            details={"next_available_date": availability["next_available_date"]},
        )

    today = date.today()
    due = calculate_due_date(today, default_loan_days(), Config.LOAN_DAYS_ARE_WORKING_DAYS)
    loan_id = str(uuid.uuid4())
    book_id, academic_id = fk_values(doc_type, document_id)
    with transaction() as cur:
        cur.execute(
            """
            INSERT INTO loans (id, user_id, book_id, academic_document_id, document_type,
                               loan_date, due_date, status, notes)
            VALUES (%s, %s, %s, %s, %s, %s, %s, 'active', %s)
            """,
            (loan_id, user["id"], book_id, academic_id, doc_type, today, due,
             f"Issu de la réservation {reservation_id}"),
        )
        cur.execute("UPDATE reservations SET status = 'fulfilled' WHERE id = %s", (reservation_id,))
        if doc_type == "book":
            cur.execute(
                "UPDATE books SET available_copies = GREATEST(0, available_copies - 1) WHERE id = %s",
                (document_id,),
            )
        _shift_queue(cur, fk, document_id, res["priority_order"])

    catalog.invalidate_cache()
    log_system_action(
        "reservation_fulfilled", "reservations", reservation_id, actor,
        f"Réservation honorée, prêt {loan_id} créé", context={"loan_id": loan_id, "due_date": due},
    )

    from email_utils import send_loan_confirmation
    send_loan_confirmation(user, fetch_document(doc_type, document_id) or {}, due)

    return {"reservation": get_reservation(reservation_id), "loan_id": loan_id, "due_date": due.isoformat()}


def get_queue(document_id: str, document_type: str = "book") -> Dict[str, Any]:
    doc_type = normalize_type(document_type)
    if not fetch_document(doc_type, document_id):
        raise NotFoundError("Document non trouvé", code="DOCUMENT_NOT_FOUND")
    queue = [_serialize(r) for r in get_reservation_queue(document_id, doc_type)]

    issues = [
        {"reservation_id": r["id"], "current_priority": r["priority_order"], "expected_priority": i + 1}
        for i, r in enumerate(queue)
        if r["priority_order"] != i + 1
    ]
    stats = {
        "total": len(queue),
        "next_user": queue[0]["user_name"] if queue else None,
        "average_wait_time": len(queue) * 7 if len(queue) > 1 else 0,
        "positions_available": len(queue) < 10,
    }
    return {"document_id": document_id, "document_type": doc_type, "queue": queue,
            "stats": stats, "priority_issues": issues}


def reorder_queue(document_id: str, document_type: str, new_order: List[str],
                  actor: Optional[str] = None) -> Dict[str, Any]:
    """Rewrite priorities 1..n; `new_order` must list every active reservation exactly once."""
    doc_type = normalize_type(document_type)
    fk = get_document_meta(doc_type)["fk"]
    current = {r["id"] for r in get_reservation_queue(document_id, doc_type)}
    if not isinstance(new_order, list) or len(new_order) != len(set(new_order)) or set(new_order) != current:
        raise ValidationError(
            "Le nouvel ordre doit contenir exactement toutes les réservations actives",
            details={"expected": sorted(current), "received": new_order},
            code="INVALID_ORDER",
        )

    with transaction() as cur:
        for position, res_id in enumerate(new_order, start=1):
            cur.execute(
                f"UPDATE reservations SET priority_order = %s WHERE id = %s AND {fk} = %s",
                (position, res_id, document_id),
            )

    log_system_action(
        "reservation_queue_reordered", "reservations", document_id, actor,
        f"File de réservation réordonnée ({len(new_order)} entrée(s))", context={"new_order": new_order},
    )
    return get_queue(document_id, doc_type)


def list_expired() -> List[Dict[str, Any]]:
    rows = fetch_all(
        RESERVATION_SELECT + " WHERE r.status = 'active' AND r.expiry_date < CURDATE() ORDER BY r.expiry_date"
    )
    return [_serialize(r) for r in rows]


def cleanup_expired(actor: Optional[str] = None) -> Dict[str, Any]:
    """Expire overdue reservations, free book copies and compact each queue."""
    expired = fetch_all(
        """
        SELECT id, book_id, academic_document_id, document_type, priority_order
        FROM reservations
        WHERE status = 'active' AND expiry_date < CURDATE()
        ORDER BY priority_order DESC
        """
    )
    freed = 0
    # Back of each queue first: stored priority_order of rows still to process stays valid
    with transaction() as cur:
        for res in expired:
            document_id, doc_type = _doc_of(res)
            fk = get_document_meta(doc_type)["fk"]
            cur.execute("UPDATE reservations SET status = 'expired' WHERE id = %s", (res["id"],))
            if _release_book_copy(cur, doc_type, document_id):
                freed += 1
            _shift_queue(cur, fk, document_id, res["priority_order"])

    if expired:
        catalog.invalidate_cache()
        log_system_action(
            "reservations_expired", "reservations", user_id=actor,
            message=f"{len(expired)} réservation(s) expirée(s), {freed} exemplaire(s) libéré(s)",
        )
    return {"cleaned_reservations": len(expired), "freed_copies": freed,
            "reservation_ids": [r["id"] for r in expired]}


def list_reservations(filters: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 20) -> Dict[str, Any]:
    filters = filters or {}
    where, params = [], []
    if filters.get("user_id"):
        where.append("r.user_id = %s")
        params.append(filters["user_id"])
    if filters.get("status"):
        if filters["status"] not in RESERVATION_STATUSES:
            raise ValidationError(f"Statut invalide: {filters['status']}")
        where.append("r.status = %s")
        params.append(filters["status"])
    if filters.get("document_id"):
        where.append("(r.book_id = %s OR r.academic_document_id = %s)")
        params += [filters["document_id"], filters["document_id"]]
    clause = f" WHERE {' AND '.join(where)}" if where else ""
    total = int(fetch_value(f"SELECT COUNT(*) AS c FROM reservations r{clause}", tuple(params)) or 0)
    rows = fetch_all(
        RESERVATION_SELECT + clause + " ORDER BY r.created_at DESC LIMIT %s OFFSET %s",
        tuple(params) + (limit, (page - 1) * limit),
    )
    return {"data": [_serialize(r) for r in rows], "pagination": pagination(page, limit, total)}


def reservation_stats() -> Dict[str, Any]:
    row = fetch_one(
        """
        SELECT COUNT(*) AS total,
               SUM(status = 'active') AS active,
               SUM(status = 'fulfilled') AS fulfilled,
               SUM(status = 'expired') AS expired,
               SUM(status = 'cancelled') AS cancelled,
               SUM(status = 'active' AND expiry_date < CURDATE()) AS pending_cleanup
        FROM reservations
        """
    ) or {}
    stats = {k: int(v or 0) for k, v in row.items()}
    closed = stats.get("fulfilled", 0) + stats.get("expired", 0) + stats.get("cancelled", 0)
    stats["fulfillment_rate"] = round(100.0 * stats.get("fulfilled", 0) / closed, 1) if closed else 0.0
    return stats


def first_in_queue_to_notify() -> List[Dict[str, Any]]:
    """Head-of-queue reservations whose document is now free and who were not told yet."""
    heads = fetch_all(
        RESERVATION_SELECT + """
        WHERE r.status = 'active' AND r.priority_order = 1 AND r.notification_sent = 0
          AND r.expiry_date >= CURDATE()
        """
    )
    ready = []
    for res in heads:
        document_id, doc_type = _doc_of(res)
        try:
            availability = get_document_availability(document_id, doc_type, exclude_reservation_id=res["id"])
        except NotFoundError:
            continue
        if availability["is_available"]:
            ready.append(res)
    return ready


def mark_notified(reservation_id: str) -> None:
    execute("UPDATE reservations SET notification_sent = 1 WHERE id = %s", (reservation_id,))
