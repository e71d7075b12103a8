# services/cataloguing.py
"""CRUD for books and academic documents."""
import json
import logging
import uuid
from datetime import date
from typing import Any, Dict, List, Optional

from db_mysql import execute, fetch_all, fetch_one, fetch_value
from errors import ConflictError, NotFoundError, ValidationError
from services import catalog, file_server
from services.dates import iso
from services.documents import get_document_meta, normalize_type
from services.system_log import log_system_action
from services.validators import (
    as_int,
    generate_document_barcode,
    is_valid_dewey,
    is_valid_isbn,
    keywords_json,
    pagination,
    require_fields,
)

log = logging.getLogger(__name__)

_COMMON = ["summary", "keywords", "language", "format", "dewey_classification", "status"]

FIELDS: Dict[str, List[str]] = {
    "book": [
        "mfn", "isbn", "title", "subtitle", "main_author", "secondary_author", "edition",
        "publication_city", "publisher", "publication_year", "domain", "collection",
        "physical_location", "total_copies",
    ] + _COMMON,
    "these": [
        "title", "main_author", "student_id", "director", "co_director", "target_degree", "specialty",
        "defense_year", "defense_date", "university", "faculty", "department",
    ] + _COMMON,
    "memoire": [
        "title", "main_author", "student_id", "supervisor", "co_supervisor", "degree_level",
        "field_of_study", "specialty", "defense_year", "defense_date", "university", "faculty", "department",
    ] + _COMMON,
    "rapport_stage": [
        "title", "student_name", "student_id", "supervisor", "company_name", "stage_type", "degree_level",
        "field_of_study", "specialty", "academic_year", "defense_year", "defense_date", "university",
        "faculty", "department",
    ] + _COMMON,
}

REQUIRED: Dict[str, List[str]] = {
    "book": ["title", "main_author"],
    "these": ["title", "main_author", "director", "target_degree"],
    "memoire": ["title", "main_author", "supervisor", "degree_level"],
    "rapport_stage": ["title", "student_name", "supervisor"],
}

_SEARCHABLE = {
    "book": ["title", "main_author", "isbn", "publisher", "mfn"],
    "these": ["title", "main_author", "director", "specialty"],
    "memoire": ["title", "main_author", "supervisor", "specialty"],
    "rapport_stage": ["title", "student_name", "company_name", "specialty"],
}

_DOMAIN_COL = {"book": "domain", "these": "specialty", "memoire": "specialty", "rapport_stage": "specialty"}


def _serialize(row: Dict[str, Any], doc_type: str) -> Dict[str, Any]:
    out = dict(row)
    for key in ("created_at", "updated_at", "defense_date"):
        if key in out:
            out[key] = iso(out[key])
    if isinstance(out.get("keywords"), str):
        try:
            out["keywords"] = json.loads(out["keywords"])
        except ValueError:
            pass
    out["document_type"] = doc_type
    return out


def _clean_payload(doc_type: str, data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    if not partial:
        require_fields(data, REQUIRED[doc_type])
    values = {f: data[f] for f in FIELDS[doc_type] if f in data}
    for f in REQUIRED[doc_type]:
        if f in values and not str(values[f] or "").strip():
            raise ValidationError(f"'{f}' ne peut pas être vide", details=[{"field": f}])

    if values.get("isbn"):
        if not is_valid_isbn(values["isbn"]):
            raise ValidationError("ISBN invalide", details=[{"field": "isbn"}])
        values["isbn"] = values["isbn"].replace("-", "").replace(" ", "").upper()
    if values.get("dewey_classification") and not is_valid_dewey(values["dewey_classification"]):
        raise ValidationError("Classification Dewey invalide (ex. 005.133)", details=[{"field": "dewey_classification"}])
    if "keywords" in values:
        values["keywords"] = keywords_json(values["keywords"])
    for f in ("publication_year", "defense_year"):
        if f in values:
            values[f] = as_int(values[f], f, minimum=1800)
            if values[f] and values[f] > date.today().year + 1:
                raise ValidationError(f"'{f}' ne peut pas être dans le futur", details=[{"field": f}])
    if "total_copies" in values:
        values["total_copies"] = as_int(values["total_copies"], "total_copies", minimum=1, default=1)
    for f, v in list(values.items()):
        if isinstance(v, str):
            values[f] = v.strip() or None
    return values


def list_documents(doc_type: str, search: str = "", domain: str = "", page: int = 1, limit: int = 20,
                   available_only: bool = False) -> Dict[str, Any]:
    doc_type = normalize_type(doc_type)
    table = get_document_meta(doc_type)["table"]
    where, params = [], []
    if search:
        cols = _SEARCHABLE[doc_type]
        where.append("(" + " OR ".join(f"{c} LIKE %s" for c in cols) + ")")
        params += [f"%{search}%"] * len(cols)
    if domain:
        where.append(f"{_DOMAIN_COL[doc_type]} = %s")
        params.append(domain)
    if available_only and doc_type == "book":
        where.append("available_copies > 0")
    clause = f"WHERE {' AND '.join(where)}" if where else ""

    total = int(fetch_value(f"SELECT COUNT(*) AS c FROM {table} {clause}", tuple(params)) or 0)
    rows = fetch_all(
        f"SELECT * FROM {table} {clause} ORDER BY created_at DESC LIMIT %s OFFSET %s",
        tuple(params) + (limit, (page - 1) * limit),
    )
    return {"data": [_serialize(r, doc_type) for r in rows], "pagination": pagination(page, limit, total)}


def get_document(doc_type: str, doc_id: str) -> Dict[str, Any]:
    doc_type = normalize_type(doc_type)
    table = get_document_meta(doc_type)["table"]
    row = fetch_one(f"SELECT * FROM {table} WHERE id = %s", (doc_id,))
    if not row:
        raise NotFoundError(f"{get_document_meta(doc_type)['label']} non trouvé(e)", code="DOCUMENT_NOT_FOUND")
    return _serialize(row, doc_type)


def _check_book_duplicates(values: Dict[str, Any], exclude_id: Optional[str] = None) -> None:
    for field, code in (("mfn", "DUPLICATE_MFN"), ("isbn", "DUPLICATE_ISBN")):
        if not values.get(field):
            continue
        sql = f"SELECT id, title, main_author FROM books WHERE {field} = %s"
        params: tuple = (values[field],)
        if exclude_id:
            sql += " AND id <> %s"
            params += (exclude_id,)
        existing = fetch_one(sql, params)
        if existing:
            raise ConflictError(
                code, f"Un livre avec ce {field.upper()} existe déjà", status=409,
                details={"existing_book": existing},
            )


def create_document(doc_type: str, data: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
    doc_type = normalize_type(doc_type)
    table = get_document_meta(doc_type)["table"]
    values = _clean_payload(doc_type, data, partial=False)
    values["id"] = str(uuid.uuid4())

    if doc_type == "book":
        _check_book_duplicates(values)
        values.setdefault("total_copies", 1)
        values["available_copies"] = values["total_copies"]
        values["barcode"] = generate_document_barcode()

    cols = list(values)
    execute(
        f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({', '.join(['%s'] * len(cols))})",
        tuple(values[c] for c in cols),
    )
    catalog.invalidate_cache()
    log_system_action(f"{doc_type}_created", table, values["id"], actor, f"Création : {values.get('title')}")
    return get_document(doc_type, values["id"])


def update_document(doc_type: str, doc_id: str, data: Dict[str, Any], actor: Optional[str] = None) -> Dict[str, Any]:
    doc_type = normalize_type(doc_type)
    table = get_document_meta(doc_type)["table"]
    current = get_document(doc_type, doc_id)
    values = _clean_payload(doc_type, data, partial=True)
    if not values:
        raise ValidationError("Aucun champ à mettre à jour")

    if doc_type == "book":
        _check_book_duplicates(values, exclude_id=doc_id)
        if "total_copies" in values:
            delta = values["total_copies"] - int(current["total_copies"] or 0)
            available = int(current["available_copies"] or 0) + delta
            if available < 0:
                raise ConflictError(
                    "COPIES_IN_USE",
                    "Impossible de réduire le nombre d'exemplaires en dessous des exemplaires prêtés",
                    details={"on_loan": int(current["total_copies"]) - int(current["available_copies"])},
                )
            values["available_copies"] = min(available, values["total_copies"])

    assignments = ", ".join(f"{c} = %s" for c in values)
    execute(f"UPDATE {table} SET {assignments} WHERE id = %s", tuple(values.values()) + (doc_id,))
    catalog.invalidate_cache()
    log_system_action(f"{doc_type}_updated", table, doc_id, actor, f"Mise à jour : {', '.join(values)}")
    return get_document(doc_type, doc_id)


def delete_document(doc_type: str, doc_id: str, actor: Optional[str] = None) -> None:
    doc_type = normalize_type(doc_type)
    meta = get_document_meta(doc_type)
    doc = get_document(doc_type, doc_id)

    active_loans = int(fetch_value(
        f"SELECT COUNT(*) AS c FROM loans WHERE {meta['fk']} = %s AND status IN ('active', 'overdue')", (doc_id,)
    ) or 0)
    active_reservations = int(fetch_value(
        f"SELECT COUNT(*) AS c FROM reservations WHERE {meta['fk']} = %s AND status = 'active'", (doc_id,)
    ) or 0)
    if active_loans or active_reservations:
        raise ConflictError(
            "DOCUMENT_IN_USE", "Document en cours de prêt ou réservé", status=409,
            details={"active_loans": active_loans, "active_reservations": active_reservations},
        )

    execute(f"DELETE FROM {meta['table']} WHERE id = %s", (doc_id,))
    if doc.get("document_path"):
        try:
            file_server.delete_file(doc["document_path"])
        except Exception as e:
            log.warning(f"⚠️ Could not delete stored file {doc['document_path']}: {e}")
    catalog.invalidate_cache()
    log_system_action(f"{doc_type}_deleted", meta["table"], doc_id, actor, f"Suppression : {doc.get('title')}",
                      level="warning")


def attach_file(doc_type: str, doc_id: str, data: bytes, original_name: str,
                actor: Optional[str] = None) -> Dict[str, Any]:
    doc_type = normalize_type(doc_type)
    table = get_document_meta(doc_type)["table"]
    doc = get_document(doc_type, doc_id)
    info = file_server.upload_file(
        data, original_name, doc_type, doc_id, replace_path=doc.get("document_path")
    )
    execute(
        f"UPDATE {table} SET document_path = %s, file_type = %s, document_size = %s WHERE id = %s",
        (info["file_path"], file_server.file_extension(original_name), info["file_size"], doc_id),
    )
    log_system_action("document_uploaded", table, doc_id, actor, f"Fichier {info['file_name']} téléversé")
    return info


def read_file(doc_type: str, doc_id: str):
    """(bytes, download_name, mimetype) for the document's stored file."""
    doc = get_document(doc_type, doc_id)
    path = doc.get("document_path")
    if not path:
        raise NotFoundError("Aucun fichier associé à ce document", code="FILE_NOT_FOUND")
    data = file_server.download_file(path)
    if data is None:
        raise NotFoundError("Fichier introuvable sur le serveur", code="FILE_NOT_FOUND")
    ext = file_server.file_extension(path)
    safe_title = "".join(ch if ch.isalnum() or ch in " -_" else "_" for ch in (doc.get("title") or doc_id))[:80]
    return data, f"{safe_title.strip() or doc_id}.{ext}", file_server.mime_type_for(path)


def documents_for_export(doc_type: str) -> List[Dict[str, Any]]:
    doc_type = normalize_type(doc_type)
    table = get_document_meta(doc_type)["table"]
    cols = ["id"] + [c for c in FIELDS[doc_type] if c != "keywords"]
    if doc_type == "book":
        cols += ["available_copies", "barcode"]
    rows = fetch_all(f"SELECT {', '.join(cols)}, created_at FROM {table} ORDER BY title")
    return [_serialize(r, doc_type) for r in rows]
