# services/reading_room.py
"""On-site consultations. An active consultation holds a copy like a loan does."""
import uuid
from datetime import date, datetime
from typing import Any, Dict, Optional

from db_mysql import execute, fetch_all, fetch_one, fetch_value
from errors import ConflictError, NotFoundError, ValidationError
from services import catalog
from services.availability import get_document_availability
from services.dates import iso
from services.documents import fk_values, normalize_type
from services.system_log import log_system_action
from services.validators import pagination


def _serialize(row):
    out = dict(row)
    for key in ("consultation_date", "start_time", "end_time", "created_at"):
        if key in out:
            out[key] = iso(out[key])
    out["document_id"] = out.get("book_id") or out.get("academic_document_id")
    return out


def start_consultation(data: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
    user_id = data.get("user_id")
    document_id = data.get("document_id")
    if not user_id or not document_id:
        raise ValidationError("user_id et document_id sont requis")
    doc_type = normalize_type(data.get("document_type") or "book")

    user = fetch_one("SELECT id, is_active FROM users WHERE id = %s", (user_id,))
    if not user:
        raise NotFoundError("Utilisateur non trouvé", code="USER_NOT_FOUND")
    if not user["is_active"]:
        raise ConflictError("USER_INACTIVE", "Le compte utilisateur est désactivé")

    availability = get_document_availability(document_id, doc_type)
    if not availability["is_available"]:
        raise ConflictError("DOCUMENT_UNAVAILABLE", "Aucun exemplaire disponible pour consultation")

    consultation_id = str(uuid.uuid4())
    book_id, academic_id = fk_values(doc_type, document_id)
    now = datetime.now()
    execute(
        """
        INSERT INTO reading_room_consultations (id, user_id, book_id, academic_document_id, document_type,
                                                consultation_date, start_time, status, notes)
        VALUES (%s, %s, %s, %s, %s, %s, %s, 'active', %s)
        """,
        (consultation_id, user_id, book_id, academic_id, doc_type, now.date(), now, data.get("notes")),
    )
    catalog.invalidate_cache()
    log_system_action("consultation_started", "reading_room_consultations", consultation_id, actor,
                      f"Consultation sur place de « {availability['title']} »")
    return get_consultation(consultation_id)


def get_consultation(consultation_id: str) -> Dict[str, Any]:
    row = fetch_one("SELECT * FROM reading_room_consultations WHERE id = %s", (consultation_id,))
    if not row:
        raise NotFoundError("Consultation non trouvée", code="CONSULTATION_NOT_FOUND")
    return _serialize(row)


def end_consultation(consultation_id: str, actor: Optional[str] = None) -> Dict[str, Any]:
    updated = execute(
        """
        UPDATE reading_room_consultations SET status = 'completed', end_time = NOW()
        WHERE id = %s AND status = 'active'
        """,
        (consultation_id,),
    )
    if not updated:
        raise NotFoundError("Consultation active non trouvée", code="CONSULTATION_NOT_FOUND")
    catalog.invalidate_cache()
    log_system_action("consultation_ended", "reading_room_consultations", consultation_id, actor,
                      "Fin de consultation")
    return get_consultation(consultation_id)


def list_consultations(status: Optional[str] = None, day: Optional[date] = None, page: int = 1, limit: int = 20):
    where, params = [], []
    if status:
        where.append("status = %s")
        params.append(status)
    if day:
        where.append("consultation_date = %s")
        params.append(day)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    total = int(fetch_value(f"SELECT COUNT(*) AS c FROM reading_room_consultations {clause}", tuple(params)) or 0)
    rows = fetch_all(
        f"""
        SELECT * FROM reading_room_consultations {clause}
        ORDER BY start_time DESC LIMIT %s OFFSET %s
        """,
        tuple(params) + (limit, (page - 1) * limit),
    )
    return {"data": [_serialize(r) for r in rows], "pagination": pagination(page, limit, total)}
