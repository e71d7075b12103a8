# services/active_directory.py
"""
Active Directory access (ldap3).

Users authenticate with their own bind; attribute lookups and the bulk
synchronisation use the service account from Config.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ldap3 import ALL, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars

from config import Config
from db_mysql import execute, fetch_all, fetch_one, fetch_value
from errors import NotFoundError, ValidationError
from services.system_log import log_system_action

log = logging.getLogger(__name__)

USER_ATTRIBUTES = [
    "sAMAccountName",
    "mail",
    "displayName",
    "givenName",
    "sn",
    "department",
    "title",
    "userAccountControl",
    "memberOf",
    "distinguishedName",
    "telephoneNumber",
    "physicalDeliveryOfficeName",
    "company",
    "manager",
]

SYNC_FILTER = "(&(objectClass=user)(sAMAccountName=*)(!(objectClass=computer)))"

ACCOUNTDISABLE = 2


def _perm(view, create, edit, delete, **extra):
    return {"view": view, "create": create, "edit": edit, "delete": delete, **extra}


ROLE_PERMISSIONS: Dict[str, Dict[str, Dict[str, bool]]] = {
    "admin": {
        "books": _perm(True, True, True, True, manage_copies=True),
        "users": _perm(True, True, True, True, manage_roles=True),
        "loans": _perm(True, True, True, True, extend=True, force_return=True),
        "reservations": _perm(True, True, True, True, manage_queue=True),
        "academic_documents": _perm(True, True, True, True, upload=True),
        "system": {"view_stats": True, "manage_settings": True, "sync_ad": True,
                   "manage_backups": True, "view_logs": True},
    },
    "bibliothecaire": {
        "books": _perm(True, True, True, False, manage_copies=True),
        "users": _perm(True, False, True, False, manage_roles=False),
        "loans": _perm(True, True, True, False, extend=True, force_return=True),
        "reservations": _perm(True, True, True, False, manage_queue=True),
        "academic_documents": _perm(True, True, True, False, upload=True),
        "system": {"view_stats": True, "manage_settings": False, "sync_ad": False,
                   "manage_backups": False, "view_logs": False},
    },
    "enregistrement": {
        "books": _perm(True, True, True, False, manage_copies=True),
        "users": _perm(True, True, True, False, manage_roles=False),
        "loans": _perm(True, True, True, False, extend=True, force_return=False),
        "reservations": _perm(True, True, True, False, manage_queue=False),
        "academic_documents": _perm(True, True, True, False, upload=True),
        "system": {"view_stats": False, "manage_settings": False, "sync_ad": False,
                   "manage_backups": False, "view_logs": False},
    },
    "etudiant": {
        "books": _perm(True, False, False, False, manage_copies=False),
        "users": _perm(False, False, False, False, manage_roles=False),
        "loans": _perm(True, False, False, False, extend=False, force_return=False),
        "reservations": _perm(True, True, False, False, manage_queue=False),
        "academic_documents": _perm(True, False, False, False, upload=False),
        "system": {"view_stats": False, "manage_settings": False, "sync_ad": False,
                   "manage_backups": False, "view_logs": False},
    },
}

_ROLE_GROUPS = [
    ("admin", ("administrators", "domain admins", "admin")),
    ("bibliothecaire", ("bibliothecaire", "librarian", "library staff")),
    ("enregistrement", ("enregistrement", "cataloging", "circulation")),
]


def clean_ldap_value(value: Any) -> Optional[str]:
    """Collapse an LDAP attribute (scalar or list) to a single string."""
    if value is None or value == "" or value == []:
        return None
    if isinstance(value, (list, tuple)):
        return str(value[0]) if value else None
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def determine_role_and_permissions(groups: Optional[List[str]]) -> Tuple[str, Dict[str, Any]]:
    lowered = [g.lower() for g in (groups or [])]
    for role, needles in _ROLE_GROUPS:
        if any(n in g for g in lowered for n in needles):
            return role, ROLE_PERMISSIONS[role]
    return "etudiant", ROLE_PERMISSIONS["etudiant"]


def normalize_username(username: str) -> Tuple[str, str]:
    """('jdoe@udm.edu.cm', 'jdoe') from either form; DOMAIN\\user also accepted."""
    username = (username or "").strip()
    if "\\" in username:
        username = username.split("\\", 1)[1]
    sam = username.split("@", 1)[0]
    upn = username if "@" in username else f"{username}@{Config.AD_DOMAIN}"
    return upn, sam


def _server() -> Server:
    return Server(Config.AD_SERVER, get_info=ALL, connect_timeout=Config.AD_TIMEOUT)


def _admin_connection() -> Connection:
    admin_user = Config.AD_ADMIN_USER
    if admin_user and "@" not in admin_user and "\\" not in admin_user and "=" not in admin_user:
        admin_user = f"{admin_user}@{Config.AD_DOMAIN}"
    conn = Connection(
        _server(), user=admin_user, password=Config.AD_ADMIN_PASSWORD,
        receive_timeout=Config.AD_TIMEOUT, raise_exceptions=False,
    )
    if not conn.bind():
        raise LDAPException(f"Service account bind failed: {conn.result.get('description')}")
    return conn


def _entry_to_user(attrs: Dict[str, Any]) -> Dict[str, Any]:
    member_of = attrs.get("memberOf") or []
    if isinstance(member_of, str):
        member_of = [member_of]
    uac = attrs.get("userAccountControl")
    try:
        uac = int(clean_ldap_value(uac) or 0)
    except ValueError:
        uac = 0
    return {
        "sAMAccountName": clean_ldap_value(attrs.get("sAMAccountName")),
        "mail": clean_ldap_value(attrs.get("mail")),
        "displayName": clean_ldap_value(attrs.get("displayName")),
        "givenName": clean_ldap_value(attrs.get("givenName")),
        "sn": clean_ldap_value(attrs.get("sn")),
        "department": clean_ldap_value(attrs.get("department")),
        "title": clean_ldap_value(attrs.get("title")),
        "telephoneNumber": clean_ldap_value(attrs.get("telephoneNumber")),
        "physicalDeliveryOfficeName": clean_ldap_value(attrs.get("physicalDeliveryOfficeName")),
        "company": clean_ldap_value(attrs.get("company")),
        "manager": clean_ldap_value(attrs.get("manager")),
        "distinguishedName": clean_ldap_value(attrs.get("distinguishedName")),
        "userAccountControl": uac,
        "memberOf": [str(g) for g in member_of],
    }


def find_user(sam_account_name: str, conn: Optional[Connection] = None) -> Optional[Dict[str, Any]]:
    own = conn is None
    conn = conn or _admin_connection()
    try:
        conn.search(
            Config.AD_BASE_DN,
            f"(sAMAccountName={escape_filter_chars(sam_account_name)})",
            search_scope=SUBTREE,
            attributes=USER_ATTRIBUTES,
        )
        if not conn.entries:
            return None
        return _entry_to_user(conn.entries[0].entry_attributes_as_dict)
    finally:
        if own:
            conn.unbind()


def authenticate_user(username: str, password: str) -> Optional[Dict[str, Any]]:
    """Bind as the user; on success return their directory profile with role."""
    if not username or not password:
        return None
    upn, sam = normalize_username(username)

    user_conn = Connection(
        _server(), user=upn, password=password, receive_timeout=Config.AD_TIMEOUT, raise_exceptions=False
    )
    try:
        if not user_conn.bind():
            log.info(f"AD bind refused for {upn}: {user_conn.result.get('description')}")
            return None
    finally:
        user_conn.unbind()

    try:
        ad_user = find_user(sam)
    except LDAPException as e:
        log.warning(f"⚠️ AD lookup failed after successful bind for {sam}: {e}")
        ad_user = None
    if not ad_user:
        # Directory search unavailable: minimal profile from the bind itself
        ad_user = _entry_to_user({"sAMAccountName": sam, "mail": upn, "displayName": sam})

    role, permissions = determine_role_and_permissions(ad_user["memberOf"])
    ad_user["role"] = role
    ad_user["permissions"] = permissions
    return ad_user


def sync_user_to_database(ad_user: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Upsert into synced_users. Returns (row, created)."""
    sam = ad_user["sAMAccountName"]
    user_id = f"ad_{sam}"
    role, permissions = determine_role_and_permissions(ad_user.get("memberOf"))

    existing = fetch_one(
        "SELECT id, role, permissions, manual_role_override FROM synced_users WHERE username = %s", (sam,)
    )
    if existing and int(existing.get("manual_role_override") or 0) == 1:
        role = existing["role"]
        permissions = existing["permissions"]
        if isinstance(permissions, str):
            permissions = json.loads(permissions)

    email = ad_user.get("mail") or f"{sam}@{Config.AD_DOMAIN}"
    is_active = 0 if (int(ad_user.get("userAccountControl") or 0) & ACCOUNTDISABLE) else 1
    now = datetime.now()
    values = (
        email,
        ad_user.get("displayName") or sam,
        ad_user.get("givenName"),
        ad_user.get("sn"),
        ad_user.get("department"),
        ad_user.get("title"),
        ad_user.get("telephoneNumber"),
        ad_user.get("physicalDeliveryOfficeName"),
        ad_user.get("company"),
        ad_user.get("manager"),
        role,
        json.dumps(permissions),
        json.dumps(ad_user.get("memberOf") or []),
        ad_user.get("distinguishedName"),
        is_active,
        now,
    )

    if existing:
        execute(
            """
            UPDATE synced_users
               SET email = %s, display_name = %s, first_name = %s, last_name = %s, department = %s,
                   title = %s, phone = %s, office = %s, company = %s, manager = %s, role = %s,
                   permissions = %s, groups_json = %s, distinguished_name = %s, is_active = %s, last_sync = %s
             WHERE username = %s
            """,
            values + (sam,),
        )
    else:
        execute(
            """
            INSERT INTO synced_users (email, display_name, first_name, last_name, department, title, phone,
                                      office, company, manager, role, permissions, groups_json,
                                      distinguished_name, is_active, last_sync, id, username)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            values + (user_id, sam),
        )

    row = {
        "id": existing["id"] if existing else user_id,
        "username": sam,
        "email": email,
        "display_name": ad_user.get("displayName") or sam,
        "role": role,
        "permissions": permissions,
        "is_active": bool(is_active),
    }
    return row, existing is None


def ensure_patron_account(synced: Dict[str, Any]) -> str:
    """Make sure an AD account also exists as a borrower in `users`. Returns users.id."""
    existing = fetch_one("SELECT id FROM users WHERE email = %s", (synced["email"],))
    if existing:
        execute(
            "UPDATE users SET full_name = %s, role = %s, is_active = %s, last_login = NOW() WHERE id = %s",
            (synced["display_name"], synced["role"], int(synced["is_active"]), existing["id"]),
        )
        return existing["id"]
    execute(
        """
        INSERT INTO users (id, email, full_name, role, is_active, max_loans, max_reservations, last_login)
        VALUES (%s, %s, %s, %s, %s, %s, %s, NOW())
        """,
        (synced["id"], synced["email"], synced["display_name"], synced["role"], int(synced["is_active"]),
         Config.DEFAULT_MAX_LOANS, Config.DEFAULT_MAX_RESERVATIONS),
    )
    return synced["id"]


def sync_all_users(actor: Optional[str] = None) -> Dict[str, Any]:
    """Mirror every directory user into synced_users."""
    stats = {"total_users": 0, "new_users": 0, "updated_users": 0, "errors": 0, "error_details": []}
    conn = _admin_connection()
    try:
        entries = conn.extend.standard.paged_search(
            Config.AD_BASE_DN, SYNC_FILTER, search_scope=SUBTREE,
            attributes=USER_ATTRIBUTES, paged_size=500, generator=True,
        )
        for entry in entries:
            if entry.get("type") != "searchResEntry":
                continue
            stats["total_users"] += 1
            ad_user = _entry_to_user(entry.get("attributes") or {})
            try:
                _, created = sync_user_to_database(ad_user)
                stats["new_users" if created else "updated_users"] += 1
            except Exception as e:
                stats["errors"] += 1
                stats["error_details"].append({"user": ad_user.get("sAMAccountName"), "error": str(e)})
                log.error(f"❌ Sync failed for {ad_user.get('sAMAccountName')}: {e}")
    finally:
        conn.unbind()

    log_system_action(
        "ad_sync", "synced_users", user_id=actor,
        message=(f"Synchronisation AD : {stats['total_users']} compte(s), {stats['new_users']} nouveau(x), "
                 f"{stats['updated_users']} mis à jour, {stats['errors']} erreur(s)"),
        level="warning" if stats["errors"] else "info",
        context={k: v for k, v in stats.items() if k != "error_details"},
    )
    return stats


def get_sync_status() -> Dict[str, Any]:
    row = fetch_one(
        """
        SELECT COUNT(*) AS total_users, SUM(is_active = 1) AS active_users,
               SUM(manual_role_override = 1) AS manual_overrides, MAX(last_sync) AS last_sync
        FROM synced_users
        """
    ) or {}
    by_role = fetch_all("SELECT role, COUNT(*) AS count FROM synced_users GROUP BY role ORDER BY role")
    last_sync = row.get("last_sync")
    return {
        "total_users": int(row.get("total_users") or 0),
        "active_users": int(row.get("active_users") or 0),
        "manual_overrides": int(row.get("manual_overrides") or 0),
        "last_sync": last_sync.isoformat() if hasattr(last_sync, "isoformat") else last_sync,
        "by_role": {r["role"]: int(r["count"]) for r in by_role},
    }


def list_synced_users(search: Optional[str] = None, role: Optional[str] = None, limit: int = 50, offset: int = 0):
    where, params = [], []
    if search:
        where.append("(username LIKE %s OR display_name LIKE %s OR email LIKE %s)")
        params += [f"%{search}%"] * 3
    if role:
        where.append("role = %s")
        params.append(role)
    clause = f"WHERE {' AND '.join(where)}" if where else ""
    rows = fetch_all(
        f"""
        SELECT id, username, email, display_name, department, title, role, is_active,
               manual_role_override, last_sync, last_login
        FROM synced_users {clause}
        ORDER BY display_name LIMIT %s OFFSET %s
        """,
        tuple(params) + (limit, offset),
    )
    total = fetch_value(f"SELECT COUNT(*) AS c FROM synced_users {clause}", tuple(params))
    return rows, int(total)


def set_manual_role(synced_user_id: str, role: Optional[str], actor: Optional[str] = None) -> None:
    """Pin a role (kept across syncs), or clear the override with role=None."""
    if role is None:
        updated = execute(
            "UPDATE synced_users SET manual_role_override = 0 WHERE id = %s", (synced_user_id,)
        )
    else:
        if role not in ROLE_PERMISSIONS:
            raise ValidationError(f"Rôle invalide: {role}", details={"allowed": list(ROLE_PERMISSIONS)})
        updated = execute(
            """
            UPDATE synced_users SET role = %s, permissions = %s, manual_role_override = 1
            WHERE id = %s
            """,
            (role, json.dumps(ROLE_PERMISSIONS[role]), synced_user_id),
        )
    if not updated:
        raise NotFoundError("Utilisateur synchronisé introuvable")
    log_system_action("ad_role_override", "synced_users", synced_user_id, actor,
                      f"Rôle manuel : {role or 'supprimé'}")


def test_connection() -> Dict[str, Any]:
    """Probe the directory with the service account."""
    result = {"server": Config.AD_SERVER, "base_dn": Config.AD_BASE_DN, "connected": False}
    try:
        conn = _admin_connection()
        try:
            conn.search(Config.AD_BASE_DN, "(objectClass=domain)", search_scope=SUBTREE,
                        attributes=["distinguishedName"], size_limit=1)
            result["connected"] = True
            result["server_info"] = str(conn.server.info.naming_contexts) if conn.server.info else None
        finally:
            conn.unbind()
    except (LDAPException, OSError) as e:
        result["error"] = str(e)
    return result
