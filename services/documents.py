# services/documents.py
"""Registry of catalogued document types and the tables backing them."""
from typing import Any, Dict, Optional

from db_mysql import fetch_one
from errors import ValidationError

DOCUMENT_TYPES: Dict[str, Dict[str, Any]] = {
    "book": {
        "table": "books",
        "label": "Livre",
        "author_col": "main_author",
        "year_col": "publication_year",
        "degree_col": None,
        "fk": "book_id",
        "folder": "books",
        "has_copies": True,
    },
    "these": {
        "table": "theses",
        "label": "Thèse",
        "author_col": "main_author",
        "year_col": "defense_year",
        "degree_col": "target_degree",
        "fk": "academic_document_id",
        "folder": "theses",
        "has_copies": False,
    },
    "memoire": {
        "table": "memoires",
        "label": "Mémoire",
        "author_col": "main_author",
        "year_col": "defense_year",
        "degree_col": "degree_level",
        "fk": "academic_document_id",
        "folder": "memoires",
        "has_copies": False,
    },
    "rapport_stage": {
        "table": "stage_reports",
        "label": "Rapport de stage",
        "author_col": "student_name",
        "year_col": "defense_year",
        "degree_col": "degree_level",
        "fk": "academic_document_id",
        "folder": "rapport_stage",
        "has_copies": False,
    },
}

ACADEMIC_TYPES = ("these", "memoire", "rapport_stage")

# Aliases accepted from clients (plural API paths, english names)
_ALIASES = {
    "books": "book",
    "thesis": "these",
    "theses": "these",
    "memoires": "memoire",
    "memoir": "memoire",
    "reports": "rapport_stage",
    "stage_reports": "rapport_stage",
    "stage-reports": "rapport_stage",
}


def normalize_type(doc_type: Optional[str]) -> str:
    key = (doc_type or "book").strip().lower()
    key = _ALIASES.get(key, key)
    if key not in DOCUMENT_TYPES:
        raise ValidationError(
            f"Type de document invalide: {doc_type}",
            details={"allowed": list(DOCUMENT_TYPES)},
            code="INVALID_DOCUMENT_TYPE",
        )
    return key


def get_document_meta(doc_type: str) -> Dict[str, Any]:
    return DOCUMENT_TYPES[normalize_type(doc_type)]


def fetch_document(doc_type: str, doc_id: str) -> Optional[Dict[str, Any]]:
    """Document row with normalised title/author keys, or None."""
    meta = get_document_meta(doc_type)
    copies = "total_copies, available_copies" if meta["has_copies"] else "1 AS total_copies, 1 AS available_copies"
    row = fetch_one(
        f"""
        SELECT id, title, {meta['author_col']} AS author, {copies}, document_path
        FROM {meta['table']} WHERE id = %s
        """,
        (doc_id,),
    )
    if row:
        row["document_type"] = normalize_type(doc_type)
    return row


def fk_values(doc_type: str, doc_id: str):
    """(book_id, academic_document_id) pair for loan/reservation inserts."""
    if normalize_type(doc_type) == "book":
        return doc_id, None
    return None, doc_id
