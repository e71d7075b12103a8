# services/patrons.py
import logging
import uuid
from typing import Any, Dict, List, Optional

from werkzeug.security import generate_password_hash

from config import Config
from db_mysql import execute, fetch_all, fetch_one, fetch_value
from errors import ConflictError, NotFoundError, ValidationError
from services.dates import iso
from services.penalties import user_penalty_summary
from services.system_log import log_system_action
from services.validators import (
    USER_ROLES,
    as_int,
    format_cameroon_phone,
    generate_user_barcode,
    is_valid_cameroon_phone,
    is_valid_email,
    pagination,
    require_fields,
)

log = logging.getLogger(__name__)

PUBLIC_COLUMNS = (
    "id, email, full_name, barcode, matricule, phone, address, role, is_active, account_status, "
    "max_loans, max_reservations, last_login, created_at"
)


def _serialize(row: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(row)
    out.pop("password_hash", None)
    for key in ("last_login", "created_at", "updated_at"):
        if key in out:
            out[key] = iso(out[key])
    if "is_active" in out:
        out["is_active"] = bool(out["is_active"])
    return out


def _validate(data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    if not partial:
        require_fields(data, ["email", "full_name"])
    values: Dict[str, Any] = {}
    if "email" in data:
        email = (data.get("email") or "").strip().lower()
        if not is_valid_email(email):
            raise ValidationError("Adresse e-mail invalide", details=[{"field": "email"}])
        values["email"] = email
    if "full_name" in data:
        name = (data.get("full_name") or "").strip()
        if len(name) < 2:
            raise ValidationError("Nom complet trop court", details=[{"field": "full_name"}])
        values["full_name"] = name
    if data.get("phone"):
        if not is_valid_cameroon_phone(data["phone"]):
            raise ValidationError("Numéro de téléphone camerounais invalide", details=[{"field": "phone"}])
        values["phone"] = format_cameroon_phone(data["phone"])
    if "role" in data:
        if data["role"] not in USER_ROLES:
            raise ValidationError(f"Rôle invalide: {data['role']}", details={"allowed": list(USER_ROLES)})
        values["role"] = data["role"]
    for f in ("max_loans", "max_reservations"):
        if f in data:
            values[f] = as_int(data[f], f, minimum=0)
    for f in ("barcode", "matricule", "address"):
        if f in data:
            values[f] = (data.get(f) or "").strip() or None
    if "is_active" in data:
        values["is_active"] = 1 if data["is_active"] in (True, 1, "1", "true", "on") else 0
        values["account_status"] = "active" if values["is_active"] else "inactive"
    if data.get("password"):
        if len(data["password"]) < 8:
            raise ValidationError("Le mot de passe doit contenir au moins 8 caractères")
        values["password_hash"] = generate_password_hash(data["password"])
    return values


def list_users(search: str = "", role: str = "", status: str = "", page: int = 1, limit: int = 20) -> Dict[str, Any]:
    where, params = [], []
    if search:
        where.append("(full_name LIKE %s OR email LIKE %s OR barcode LIKE %s OR matricule LIKE %s)")
        params += [f"%{search}%"] * 4
    if role:
        where.append("role = %s")
        params.append(role)
    if status == "active":
        where.append("is_active = 1")
    elif status == "inactive":
        where.append("is_active = 0")
    clause = f"WHERE {' AND '.join(where)}" if where else ""

    total = int(fetch_value(f"SELECT COUNT(*) AS c FROM users {clause}", tuple(params)) or 0)
    rows = fetch_all(
        f"""
        SELECT {PUBLIC_COLUMNS},
               (SELECT COUNT(*) FROM loans l WHERE l.user_id = users.id
                  AND l.status IN ('active', 'overdue')) AS active_loans
        FROM users {clause}
        ORDER BY created_at DESC LIMIT %s OFFSET %s
        """,
        tuple(params) + (limit, (page - 1) * limit),
    )
    return {"data": [_serialize(r) for r in rows], "pagination": pagination(page, limit, total)}


def get_user(user_id: str) -> Dict[str, Any]:
    row = fetch_one(f"SELECT {PUBLIC_COLUMNS} FROM users WHERE id = %s", (user_id,))
    if not row:
        raise NotFoundError("Utilisateur non trouvé", code="USER_NOT_FOUND")
    return _serialize(row)


def get_user_by_barcode(barcode: str) -> Dict[str, Any]:
    row = fetch_one(f"SELECT {PUBLIC_COLUMNS} FROM users WHERE barcode = %s", (barcode.strip(),))
    if not row:
        raise NotFoundError("Aucun lecteur pour ce code-barres", code="USER_NOT_FOUND")
    return _serialize(row)


def user_details(user_id: str) -> Dict[str, Any]:
    """Profile plus current loans, reservations and penalty balance."""
    user = get_user(user_id)
    loans = fetch_all(
        """
        SELECT l.id, l.document_type, l.loan_date, l.due_date, l.status,
               COALESCE(b.title, t.title, m.title, s.title) AS document_title
        FROM loans l
        LEFT JOIN books b ON b.id = l.book_id
        LEFT JOIN theses t ON t.id = l.academic_document_id AND l.document_type = 'these'
        LEFT JOIN memoires m ON m.id = l.academic_document_id AND l.document_type = 'memoire'
        LEFT JOIN stage_reports s ON s.id = l.academic_document_id AND l.document_type = 'rapport_stage'
        WHERE l.user_id = %s AND l.status IN ('active', 'overdue')
        ORDER BY l.due_date
        """,
        (user_id,),
    )
    reservations = fetch_all(
        """
        SELECT id, document_type, reservation_date, expiry_date, priority_order
        FROM reservations WHERE user_id = %s AND status = 'active'
        ORDER BY reservation_date
        """,
        (user_id,),
    )
    history_count = int(fetch_value("SELECT COUNT(*) AS c FROM loans WHERE user_id = %s", (user_id,)) or 0)
    return {
        **user,
        "active_loans": [{**r, "loan_date": iso(r["loan_date"]), "due_date": iso(r["due_date"])}
                         for r in loans],
        "active_reservations": [
            {**r, "reservation_date": iso(r["reservation_date"]), "expiry_date": iso(r["expiry_date"])}
            for r in reservations
        ],
        "total_loans": history_count,
        "penalties": user_penalty_summary(user_id),
    }


def create_user(data: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
    values = _validate(data, partial=False)
    if fetch_one("SELECT id FROM users WHERE email = %s", (values["email"],)):
        raise ConflictError("DUPLICATE_EMAIL", "Un utilisateur avec cet e-mail existe déjà", status=409)

    values["id"] = str(uuid.uuid4())
    values.setdefault("role", "etudiant")
    values.setdefault("max_loans", Config.DEFAULT_MAX_LOANS)
    values.setdefault("max_reservations", Config.DEFAULT_MAX_RESERVATIONS)
    if not values.get("barcode"):
        values["barcode"] = generate_user_barcode()
    elif fetch_one("SELECT id FROM users WHERE barcode = %s", (values["barcode"],)):
        raise ConflictError("DUPLICATE_BARCODE", "Ce code-barres est déjà attribué", status=409)

    cols = list(values)
    execute(
        f"INSERT INTO users ({', '.join(cols)}) VALUES ({', '.join(['%s'] * len(cols))})",
        tuple(values[c] for c in cols),
    )
    log_system_action("user_created", "users", values["id"], actor, f"Lecteur créé : {values['full_name']}")
    return get_user(values["id"])


def update_user(user_id: str, data: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
    get_user(user_id)
    values = _validate(data, partial=True)
    if not values:
        raise ValidationError("Aucun champ à mettre à jour")
    if "email" in values and fetch_one(
        "SELECT id FROM users WHERE email = %s AND id <> %s", (values["email"], user_id)
    ):
        raise ConflictError("DUPLICATE_EMAIL", "Un utilisateur avec cet e-mail existe déjà", status=409)

    assignments = ", ".join(f"{c} = %s" for c in values)
    execute(f"UPDATE users SET {assignments} WHERE id = %s", tuple(values.values()) + (user_id,))
    log_system_action("user_updated", "users", user_id, actor,
                      f"Champs modifiés : {', '.join(c for c in values if c != 'password_hash')}")
    return get_user(user_id)


def delete_user(user_id: str, actor: Optional[str] = None) -> Dict[str, Any]:
    """Hard delete only for patrons without any loan history; deactivate otherwise."""
    user = get_user(user_id)
    active = int(fetch_value(
        "SELECT COUNT(*) AS c FROM loans WHERE user_id = %s AND status IN ('active', 'overdue')", (user_id,)
    ) or 0)
    if active:
        raise ConflictError("USER_HAS_ACTIVE_LOANS", f"L'utilisateur a {active} emprunt(s) en cours", status=409)

    history = int(fetch_value("SELECT COUNT(*) AS c FROM loans WHERE user_id = %s", (user_id,)) or 0)
    if history:
        execute("UPDATE users SET is_active = 0, account_status = 'inactive' WHERE id = %s", (user_id,))
        execute("UPDATE reservations SET status = 'cancelled' WHERE user_id = %s AND status = 'active'", (user_id,))
        log_system_action("user_deactivated", "users", user_id, actor, f"Lecteur désactivé : {user['full_name']}")
        return {"deleted": False, "deactivated": True}

    execute("DELETE FROM users WHERE id = %s", (user_id,))
    log_system_action("user_deleted", "users", user_id, actor, f"Lecteur supprimé : {user['full_name']}",
                      level="warning")
    return {"deleted": True, "deactivated": False}


def update_limits(max_loans: Optional[int], max_reservations: Optional[int], role: Optional[str] = None,
                  actor: Optional[str] = None) -> int:
    """Bulk-update borrowing limits, optionally for one role only."""
    sets, params = [], []
    if max_loans is not None:
        sets.append("max_loans = %s")
        params.append(as_int(max_loans, "max_loans", minimum=0))
    if max_reservations is not None:
        sets.append("max_reservations = %s")
        params.append(as_int(max_reservations, "max_reservations", minimum=0))
    if not sets:
        raise ValidationError("max_loans ou max_reservations requis")
    sql = f"UPDATE users SET {', '.join(sets)}"
    if role:
        if role not in USER_ROLES:
            raise ValidationError(f"Rôle invalide: {role}")
        sql += " WHERE role = %s"
        params.append(role)
    updated = execute(sql, tuple(params))
    log_system_action("user_limits_updated", "users", user_id=actor,
                      message=f"Limites mises à jour pour {updated} lecteur(s)",
                      context={"max_loans": max_loans, "max_reservations": max_reservations, "role": role})
    return updated


def users_for_export() -> List[Dict[str, Any]]:
    return [_serialize(r) for r in fetch_all(f"SELECT {PUBLIC_COLUMNS} FROM users ORDER BY full_name")]
