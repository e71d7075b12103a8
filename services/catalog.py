# services/catalog.py
"""
Public catalogue search across books, theses, memoirs and internship reports.

Results are kept in a small in-process cache keyed by the md5 of the
normalised filters. Requests filtering on availability always hit the DB,
since that status changes with every loan and reservation.
"""
import hashlib
import json
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from config import Config
from db_mysql import fetch_all, fetch_one

log = logging.getLogger(__name__)

CATALOG_TYPES = ("all", "books", "theses", "memoires", "reports")
AVAILABILITY_FILTERS = ("all", "available", "unavailable", "borrowed", "reserved")

# key -> (expires_at, payload)
_CATALOG_CACHE: Dict[str, Tuple[float, Dict[str, Any]]] = {}

# Column mapping per catalogue type; academic documents expose their
# specialty as "domain" and university as "publisher".
_SOURCES = {
    "books": {
        "doc_type": "book",
        "table": "books",
        "author": "main_author",
        "year": "publication_year",
        "domain": "domain",
        "publisher": "publisher",
        "level": "NULL",
        "copies": ("total_copies", "available_copies"),
        "fk": "book_id",
    },
    "theses": {
        "doc_type": "these",
        "table": "theses",
        "author": "main_author",
        "year": "defense_year",
        "domain": "specialty",
        "publisher": "university",
        "level": "target_degree",
        "copies": ("1", "1"),
        "fk": "academic_document_id",
    },
    "memoires": {
        "doc_type": "memoire",
        "table": "memoires",
        "author": "main_author",
        "year": "defense_year",
        "domain": "specialty",
        "publisher": "university",
        "level": "degree_level",
        "copies": ("1", "1"),
        "fk": "academic_document_id",
    },
    "reports": {
        "doc_type": "rapport_stage",
        "table": "stage_reports",
        "author": "student_name",
        "year": "defense_year",
        "domain": "specialty",
        "publisher": "university",
        "level": "degree_level",
        "copies": ("1", "1"),
        "fk": "academic_document_id",
    },
}


def _clean(value) -> str:
    value = "" if value is None else str(value).strip()
    return "" if value.lower() == "all" else value


def normalize_filters(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    raw = raw or {}
    doc_type = (raw.get("type") or "all").strip().lower()
    if doc_type not in CATALOG_TYPES:
        doc_type = "all"
    availability = (raw.get("availability") or "all").strip().lower()
    if availability not in AVAILABILITY_FILTERS:
        availability = "all"

    try:
        page = max(1, int(raw.get("page") or 1))
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(raw.get("limit") or Config.CATALOG_DEFAULT_LIMIT)
    except (TypeError, ValueError):
        limit = Config.CATALOG_DEFAULT_LIMIT
    limit = min(Config.CATALOG_MAX_LIMIT, max(1, limit))

    return {
        "type": doc_type,
        "search": (raw.get("search") or "").strip(),
        "domain": _clean(raw.get("domain")),
        "year": _clean(raw.get("year")),
        "availability": availability,
        "language": _clean(raw.get("language")),
        "format": _clean(raw.get("format")),
        "level": _clean(raw.get("level")),
        "publisher": _clean(raw.get("publisher")),
        "classification": _clean(raw.get("classification")),
        "page": page,
        "limit": limit,
    }


def cache_key(filters: Dict[str, Any]) -> str:
    return hashlib.md5(json.dumps(filters, sort_keys=True).encode("utf-8")).hexdigest()


def _cache_get(key: str) -> Optional[Dict[str, Any]]:
    entry = _CATALOG_CACHE.get(key)
    if not entry:
        return None
    expires_at, payload = entry
    if expires_at < time.monotonic():
        _CATALOG_CACHE.pop(key, None)
        return None
    return payload


def _cache_set(key: str, payload: Dict[str, Any]) -> None:
    now = time.monotonic()
    for k in [k for k, (exp, _) in _CATALOG_CACHE.items() if exp < now]:
        _CATALOG_CACHE.pop(k, None)
    _CATALOG_CACHE[key] = (now + Config.CATALOG_CACHE_SECONDS, payload)


def invalidate_cache() -> None:
    """Drop every cached search (called after catalogue and circulation writes)."""
    _CATALOG_CACHE.clear()


def cache_info() -> Dict[str, Any]:
    return {"entries": len(_CATALOG_CACHE), "ttl_seconds": Config.CATALOG_CACHE_SECONDS}


def _col(name: str) -> str:
    return name if name.isdigit() else f"d.{name}"


def _source_select(source: Dict[str, Any], filters: Dict[str, Any]) -> Optional[Tuple[str, List[Any]]]:
    """SELECT for one table, or None when a filter excludes the whole table."""
    if filters["level"] and source["level"] == "NULL":
        return None

    where = ["d.status IN ('available', 'active')"]
    params: List[Any] = []
    if filters["search"]:
        like = f"%{filters['search']}%"
        where.append(
            f"(d.title LIKE %s OR d.{source['author']} LIKE %s OR d.summary LIKE %s "
            "OR CAST(d.keywords AS CHAR) LIKE %s)"
        )
        params += [like, like, like, like]
    if filters["domain"]:
        where.append(f"d.{source['domain']} LIKE %s")
        params.append(f"%{filters['domain']}%")
    if filters["year"]:
        where.append(f"d.{source['year']} = %s")
        params.append(filters["year"])
    if filters["language"]:
        where.append("d.language = %s")
        params.append(filters["language"])
    if filters["format"]:
        where.append("d.format = %s")
        params.append(filters["format"])
    if filters["level"]:
        where.append(f"d.{source['level']} = %s")
        params.append(filters["level"])
    if filters["publisher"]:
        where.append(f"d.{source['publisher']} LIKE %s")
        params.append(f"%{filters['publisher']}%")
    if filters["classification"]:
        where.append("d.dewey_classification LIKE %s")
        params.append(f"{filters['classification']}%")

    total_col, avail_col = source["copies"]
    level = source["level"] if source["level"] == "NULL" else f"d.{source['level']}"
    fk = source["fk"]
    type_guard = "" if source["doc_type"] == "book" else f" AND document_type = '{source['doc_type']}'"
    sql = f"""
        SELECT d.id, d.title, d.{source['author']} AS author, d.{source['year']} AS year,
               d.{source['domain']} AS domain, d.{source['publisher']} AS publisher,
               {level} AS level, d.language, d.format, d.dewey_classification AS classification,
               d.summary, d.document_path, d.created_at,
               {_col(total_col)} AS total_copies, {_col(avail_col)} AS available_copies,
               '{source['doc_type']}' AS document_type,
               EXISTS (SELECT 1 FROM loans l WHERE l.{fk} = d.id{type_guard}
                       AND l.status IN ('active', 'overdue')) AS is_borrowed,
               EXISTS (SELECT 1 FROM reservations r WHERE r.{fk} = d.id{type_guard}
                       AND r.status = 'active') AS is_reserved
        FROM {source['table']} d
        WHERE {' AND '.join(where)}
    """
    return sql, params


def availability_status(item: Dict[str, Any]) -> str:
    """Books stay available while a copy is on the shelf; academic documents are single copies."""
    if item.get("document_type") == "book":
        return "disponible" if int(item.get("available_copies") or 0) > 0 else "indisponible"
    if item.get("is_borrowed") or item.get("is_reserved"):
        return "indisponible"
    return "disponible"


def _decorate(item: Dict[str, Any]) -> Dict[str, Any]:
    item["is_borrowed"] = bool(item.get("is_borrowed"))
    item["is_reserved"] = bool(item.get("is_reserved"))
    item["availability_status"] = availability_status(item)
    for key in ("created_at",):
        if item.get(key) is not None and not isinstance(item[key], str):
            item[key] = item[key].isoformat()
    return item


def _matches_availability(item: Dict[str, Any], availability: str) -> bool:
    if availability == "available":
        return item["availability_status"] == "disponible"
    if availability == "unavailable":
        return item["availability_status"] == "indisponible"
    if availability == "borrowed":
        return item["is_borrowed"]
    if availability == "reserved":
        return item["is_reserved"]
    return True


def _query(filters: Dict[str, Any], limit: int, offset: int) -> Tuple[List[Dict[str, Any]], int]:
    names = list(_SOURCES) if filters["type"] == "all" else [filters["type"]]
    parts, params = [], []
    for name in names:
        built = _source_select(_SOURCES[name], filters)
        if built:
            parts.append(built[0])
            params += built[1]
    if not parts:
        return [], 0

    union = " UNION ALL ".join(f"({p})" for p in parts)
    total_row = fetch_one(f"SELECT COUNT(*) AS total FROM ({union}) AS catalog", tuple(params))
    rows = fetch_all(
        f"SELECT * FROM ({union}) AS catalog ORDER BY created_at DESC, title ASC LIMIT %s OFFSET %s",
        tuple(params) + (limit, offset),
    )
    return rows, int((total_row or {}).get("total") or 0)


def search_catalog(raw: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    started = time.perf_counter()
    filters = normalize_filters(raw)
    page, limit = filters["page"], filters["limit"]
    needs_availability = filters["availability"] != "all"

    key = cache_key(filters)
    if not needs_availability:
        cached = _cache_get(key)
        if cached is not None:
            return {**cached, "cached": True,
                    "execution_time": round((time.perf_counter() - started) * 1000, 2)}

    if needs_availability:
        # Status is computed per row, so filter a widened window then paginate
        window = max(100, limit * 5)
        rows, _ = _query(filters, window, 0)
        items = [i for i in (_decorate(r) for r in rows) if _matches_availability(i, filters["availability"])]
        total = len(items)
        offset = (page - 1) * limit
        data = items[offset:offset + limit]
    else:
        rows, total = _query(filters, limit, (page - 1) * limit)
        data = [_decorate(r) for r in rows]

    payload = {
        "data": data,
        "total": total,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
        "filters": filters,
    }
    if not needs_availability:
        _cache_set(key, payload)

    elapsed = round((time.perf_counter() - started) * 1000, 2)
    log.debug(f"Catalogue search {key[:8]} → {total} result(s) in {elapsed} ms")
    return {**payload, "cached": False, "execution_time": elapsed}


def catalog_filters() -> Dict[str, List[Any]]:
    """Distinct values to populate the search filters."""
    domains = fetch_all(
        """
        SELECT DISTINCT domain AS value FROM books WHERE domain IS NOT NULL AND domain <> ''
        UNION SELECT DISTINCT specialty FROM theses WHERE specialty IS NOT NULL AND specialty <> ''
        UNION SELECT DISTINCT specialty FROM memoires WHERE specialty IS NOT NULL AND specialty <> ''
        UNION SELECT DISTINCT specialty FROM stage_reports WHERE specialty IS NOT NULL AND specialty <> ''
        ORDER BY value
        """
    )
    years = fetch_all(
        """
        SELECT DISTINCT publication_year AS value FROM books WHERE publication_year IS NOT NULL
        UNION SELECT DISTINCT defense_year FROM theses WHERE defense_year IS NOT NULL
        UNION SELECT DISTINCT defense_year FROM memoires WHERE defense_year IS NOT NULL
        UNION SELECT DISTINCT defense_year FROM stage_reports WHERE defense_year IS NOT NULL
        ORDER BY value DESC
        """
    )
    languages = fetch_all(
        """
        SELECT DISTINCT language AS value FROM books WHERE language IS NOT NULL
        UNION SELECT DISTINCT language FROM theses WHERE language IS NOT NULL
        UNION SELECT DISTINCT language FROM memoires WHERE language IS NOT NULL
        UNION SELECT DISTINCT language FROM stage_reports WHERE language IS NOT NULL
        ORDER BY value
        """
    )
    return {
        "types": list(CATALOG_TYPES),
        "availability": list(AVAILABILITY_FILTERS),
        "domains": [r["value"] for r in domains],
        "years": [r["value"] for r in years],
        "languages": [r["value"] for r in languages],
    }


def recent_documents(limit: int = 8) -> List[Dict[str, Any]]:
    rows, _ = _query(normalize_filters({}), max(1, min(limit, 50)), 0)
    return [_decorate(r) for r in rows]


def public_stats() -> Dict[str, int]:
    row = fetch_one(
        """
        SELECT (SELECT COUNT(*) FROM books) AS books,
               (SELECT COALESCE(SUM(total_copies), 0) FROM books) AS book_copies,
               (SELECT COUNT(*) FROM theses) AS theses,
               (SELECT COUNT(*) FROM memoires) AS memoires,
               (SELECT COUNT(*) FROM stage_reports) AS reports
        """
    ) or {}
    stats = {k: int(v or 0) for k, v in row.items()}
    stats["total_documents"] = (
        stats.get("books", 0) + stats.get("theses", 0) + stats.get("memoires", 0) + stats.get("reports", 0)
    )
    return stats
