# services/settings.py
import json
import logging
from typing import Any, Dict, Optional

from db_mysql import execute, fetch_all, fetch_one
from errors import ValidationError

log = logging.getLogger(__name__)

SETTING_TYPES = ("string", "number", "boolean", "json")


def parse_setting_value(value: Optional[str], setting_type: str) -> Any:
    """Convert the stored text to its typed value."""
    if value is None:
        return None
    if setting_type == "number":
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0
        return int(number) if number.is_integer() else number
    if setting_type == "boolean":
        return str(value).strip().lower() in ("true", "1", "yes", "on")
    if setting_type == "json":
        try:
            return json.loads(value)
        except (TypeError, ValueError):
            log.warning(f"Invalid JSON in setting value: {value!r}")
            return None
    return value


def serialize_setting_value(value: Any, setting_type: str) -> str:
    if setting_type == "json":
        return json.dumps(value, ensure_ascii=False)
    if setting_type == "boolean":
        if isinstance(value, str):
            value = value.strip().lower() in ("true", "1", "yes", "on")
        return "true" if value else "false"
    if setting_type == "number":
        try:
            float(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Valeur numérique invalide: {value!r}")
    return str(value)


def get_setting(key: str, default: Any = None) -> Any:
    try:
        row = fetch_one(
            "SELECT setting_value, setting_type FROM system_settings WHERE setting_key = %s",
            (key,),
        )
    except Exception as e:
        log.warning(f"⚠️ Could not read setting {key}: {e}")
        return default
    if not row:
        return default
    value = parse_setting_value(row["setting_value"], row["setting_type"])
    return default if value is None else value


def get_settings_by_category(category: str) -> Dict[str, Any]:
    rows = fetch_all(
        "SELECT setting_key, setting_value, setting_type FROM system_settings WHERE category = %s",
        (category,),
    )
    return {r["setting_key"]: parse_setting_value(r["setting_value"], r["setting_type"]) for r in rows}


def get_all_settings() -> Dict[str, Dict[str, Any]]:
    """Settings grouped by category with type metadata (for the admin screen)."""
    rows = fetch_all(
        """
        SELECT setting_key, setting_value, setting_type, category, description, updated_at
        FROM system_settings ORDER BY category, setting_key
        """
    )
    grouped: Dict[str, Dict[str, Any]] = {}
    for r in rows:
        grouped.setdefault(r["category"], {})[r["setting_key"]] = {
            "value": parse_setting_value(r["setting_value"], r["setting_type"]),
            "type": r["setting_type"],
            "description": r.get("description"),
        }
    return grouped


def update_setting(key: str, value: Any, setting_type: Optional[str] = None, category: Optional[str] = None) -> None:
    """Upsert one setting; type/category are kept from the existing row when omitted."""
    existing = fetch_one(
        "SELECT setting_type, category FROM system_settings WHERE setting_key = %s", (key,)
    )
    setting_type = setting_type or (existing["setting_type"] if existing else "string")
    category = category or (existing["category"] if existing else "general")
    if setting_type not in SETTING_TYPES:
        raise ValidationError(f"Type de paramètre invalide: {setting_type}")

    execute(
        """
        INSERT INTO system_settings (setting_key, setting_value, setting_type, category)
        VALUES (%s, %s, %s, %s)
        ON DUPLICATE KEY UPDATE setting_value = VALUES(setting_value),
                                setting_type = VALUES(setting_type),
                                category = VALUES(category)
        """,
        (key, serialize_setting_value(value, setting_type), setting_type, category),
    )
