# services/availability.py
import logging
from typing import Any, Dict, List, Optional, Tuple

from db_mysql import fetch_all, fetch_one, fetch_value
from errors import NotFoundError
from services.dates import iso
from services.documents import fetch_document, get_document_meta, normalize_type

log = logging.getLogger(__name__)


def compute_available_copies(total: int, active_loans: int, active_reservations: int,
                             active_consultations: int = 0) -> int:
    return max(0, int(total or 0) - int(active_loans or 0) - int(active_reservations or 0)
               - int(active_consultations or 0))


def _count(sql, fk, doc_id, extra_params=()):
    return int(fetch_value(sql.format(fk=fk), (doc_id,) + tuple(extra_params)) or 0)


def get_document_availability(document_id: str, document_type: str = "book",
                              exclude_reservation_id: Optional[str] = None) -> Dict[str, Any]:
    """Live availability computed from loans, reservations and reading-room use."""
    doc_type = normalize_type(document_type)
    meta = get_document_meta(doc_type)
    doc = fetch_document(doc_type, document_id)
    if not doc:
        raise NotFoundError("Document non trouvé", code="DOCUMENT_NOT_FOUND")

    fk = meta["fk"]
    active_loans = _count(
        "SELECT COUNT(*) AS c FROM loans WHERE {fk} = %s AND status IN ('active', 'overdue')", fk, document_id
    )
    res_sql = "SELECT COUNT(*) AS c FROM reservations WHERE {fk} = %s AND status = 'active'"
    res_params = ()
    if exclude_reservation_id:
        res_sql += " AND id <> %s"
        res_params = (exclude_reservation_id,)
    active_reservations = _count(res_sql, fk, document_id, res_params)
    active_consultations = _count(
        "SELECT COUNT(*) AS c FROM reading_room_consultations WHERE {fk} = %s AND status = 'active'",
        fk, document_id,
    )

    total = int(doc.get("total_copies") or 1)
    available = compute_available_copies(total, active_loans, active_reservations, active_consultations)

    next_date = None
    if available == 0 and active_loans:
        next_date = fetch_value(
            f"SELECT MIN(due_date) AS d FROM loans WHERE {fk} = %s AND status IN ('active', 'overdue')",
            (document_id,), default=None,
        )

    return {
        "document_id": document_id,
        "document_type": doc_type,
        "title": doc.get("title"),
        "author": doc.get("author"),
        "total_copies": total,
        "active_loans": active_loans,
        "active_reservations": active_reservations,
        "active_consultations": active_consultations,
        "available_copies": available,
        "is_available": available > 0,
        "next_available_date": iso(next_date),
    }


def get_reservation_queue(document_id: str, document_type: str = "book") -> List[Dict[str, Any]]:
    fk = get_document_meta(document_type)["fk"]
    return fetch_all(
        f"""
        SELECT r.id, r.user_id, r.reservation_date, r.expiry_date, r.priority_order, r.notification_sent,
               u.full_name AS user_name, u.email AS user_email
        FROM reservations r
        LEFT JOIN users u ON u.id = r.user_id
        WHERE r.{fk} = %s AND r.status = 'active'
        ORDER BY r.priority_order ASC, r.created_at ASC
        """,
        (document_id,),
    )


def can_user_reserve(user_id: str, document_id: str, document_type: str = "book") -> Tuple[bool, Optional[str], Dict[str, Any]]:
    """(ok, reason, details). Reasons are stable API codes."""
    user = fetch_one(
        "SELECT id, is_active, max_reservations FROM users WHERE id = %s", (user_id,)
    )
    if not user:
        return False, "USER_NOT_FOUND", {}
    if not user["is_active"]:
        return False, "USER_INACTIVE", {}

    active_count = int(fetch_value(
        "SELECT COUNT(*) AS c FROM reservations WHERE user_id = %s AND status = 'active'", (user_id,)
    ) or 0)
    max_res = int(user.get("max_reservations") or 0)
    if active_count >= max_res:
        return False, "RESERVATION_LIMIT_EXCEEDED", {"current": active_count, "max": max_res}

    fk = get_document_meta(document_type)["fk"]
    if fetch_value(
        f"SELECT COUNT(*) AS c FROM reservations WHERE user_id = %s AND {fk} = %s AND status = 'active'",
        (user_id, document_id),
    ):
        return False, "RESERVATION_ALREADY_EXISTS", {}

    if fetch_value(
        f"SELECT COUNT(*) AS c FROM loans WHERE user_id = %s AND {fk} = %s AND status IN ('active', 'overdue')",
        (user_id, document_id),
    ):
        return False, "DOCUMENT_ALREADY_BORROWED", {}

    try:
        availability = get_document_availability(document_id, document_type)
    except NotFoundError:
        return False, "DOCUMENT_NOT_FOUND", {}
    if availability["is_available"]:
        return False, "DOCUMENT_AVAILABLE_FOR_LOAN", {"available_copies": availability["available_copies"]}

    return True, None, {"queue_length": availability["active_reservations"]}
