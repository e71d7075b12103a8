# services/validators.py
import json
import random
import re
from datetime import date
from typing import Any, Dict, List, Optional

from errors import ValidationError

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
CAMEROON_PHONE_RE = re.compile(r"^(\+237|237)?[6-9]\d{8}$")
BARCODE_RE = re.compile(r"^BIB\d{6}[A-Z0-9]{6}$")
USER_BARCODE_RE = re.compile(r"^UDM\d{4}\d{6}$")
DEWEY_RE = re.compile(r"^\d{3}(\.\d+)?$")
ISBN_RE = re.compile(r"^(?:\d{9}[\dX]|\d{13})$")

PAYMENT_METHODS = ("cash", "bank_transfer", "mobile_money", "check")
USER_ROLES = ("admin", "bibliothecaire", "enregistrement", "circulation", "etudiant", "user")


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_RE.match((value or "").strip()))


def _digits(value: str) -> str:
    return re.sub(r"[\s\-.]", "", value or "")


def is_valid_cameroon_phone(value: str) -> bool:
    return bool(CAMEROON_PHONE_RE.match(_digits(value)))


def format_cameroon_phone(value: str) -> str:
    """'237699112233' -> '+237 699 11 22 33'. Unknown formats are returned as-is."""
    raw = _digits(value)
    if not CAMEROON_PHONE_RE.match(raw):
        return value
    local = raw[-9:]
    return f"+237 {local[0:3]} {local[3:5]} {local[5:7]} {local[7:9]}"


def is_valid_document_barcode(value: str) -> bool:
    return bool(BARCODE_RE.match(value or ""))


def generate_user_barcode(year: Optional[int] = None) -> str:
    year = year or date.today().year
    return f"UDM{year}{random.randint(0, 999999):06d}"


def is_valid_isbn(value: str) -> bool:
    return bool(ISBN_RE.match((value or "").replace("-", "").replace(" ", "").upper()))


def require_fields(data: Dict[str, Any], fields: List[str]) -> None:
    """Raise ValidationError listing every missing/blank field."""
    missing = [f for f in fields if data.get(f) in (None, "") or (isinstance(data.get(f), str) and not data[f].strip())]
    if missing:
        raise ValidationError(
            "Champs obligatoires manquants",
            details=[{"field": f, "message": "Ce champ est requis"} for f in missing],
        )


def as_int(value, field: str, minimum: Optional[int] = None, default: Optional[int] = None) -> Optional[int]:
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{field}' doit être un entier", details=[{"field": field}])
    if minimum is not None and number < minimum:
        raise ValidationError(f"'{field}' doit être ≥ {minimum}", details=[{"field": field}])
    return number


def keywords_json(value) -> Optional[str]:
    """Store keywords as a JSON array whether given as list or comma-separated text."""
    if value in (None, ""):
        return None
    if isinstance(value, str):
        value = [k.strip() for k in value.split(",") if k.strip()]
    return json.dumps(list(value), ensure_ascii=False)


def page_params(args, default_limit: int = 20, max_limit: int = 100):
    """(page, limit, offset) from query args, clamped to sane bounds."""
    try:
        page = max(1, int(args.get("page", 1)))
    except (TypeError, ValueError):
        page = 1
    try:
        limit = int(args.get("limit", default_limit))
    except (TypeError, ValueError):
        limit = default_limit
    limit = min(max_limit, max(1, limit))
    return page, limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int) -> Dict[str, Any]:
    pages = (total + limit - 1) // limit if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "pages": pages,
        "has_next": page * limit < total,
        "has_prev": page > 1,
    }


def generate_document_barcode(today: Optional[date] = None) -> str:
    """BIB + yymmdd + 6 random upper-case alphanumerics."""
    today = today or date.today()
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    return f"BIB{today.strftime('%y%m%d')}" + "".join(random.choice(alphabet) for _ in range(6))


def is_valid_dewey(value: str) -> bool:
    return bool(DEWEY_RE.match((value or "").strip()))
