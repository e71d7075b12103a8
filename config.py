# config.py
import os
from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# ✅ Ensure .env is loaded immediately when config.py is imported
load_dotenv()


def _get_bool(name: str, default: str = "False") -> bool:
    """Read an environment variable as a boolean."""
    value = os.getenv(name, default)
    return str(value).strip().lower() in ("true", "1", "yes", "y")


def _get_set(name: str, default: str) -> set:
    return {v.strip().lower() for v in os.getenv(name, default).split(",") if v.strip()}


class Config:
    # ---- Flask / Security ----
    SECRET_KEY = os.getenv("SECRET_KEY", "dev_secret_key_change_me")
    TOKEN_SALT = os.getenv("TOKEN_SALT", "sigb-auth-token")
    TOKEN_MAX_AGE = int(os.getenv("TOKEN_MAX_AGE", str(24 * 3600)))

    # ---- Local fallback administrator ----
    ADMIN_USER = os.getenv("ADMIN_USER", "admin@udm.edu.cm")
    ADMIN_PASS = os.getenv("ADMIN_PASS", "adminpass")

    # ---- Email (Flask-Mail) ----
    MAIL_SERVER = os.getenv("MAIL_SERVER", "smtp.gmail.com")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _get_bool("MAIL_USE_TLS", "True")
    MAIL_USE_SSL = _get_bool("MAIL_USE_SSL", "False")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME", "")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD", "")

    MAIL_DEFAULT_SENDER = os.getenv(
        "MAIL_DEFAULT_SENDER",
        f"Bibliothèque UdM <{MAIL_USERNAME}>",
    )
    MAIL_SUPPRESS_SEND = _get_bool("MAIL_SUPPRESS_SEND", "False")

    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", MAIL_USERNAME)
    LIBRARY_NAME = os.getenv("LIBRARY_NAME", "Bibliothèque de l'Université des Montagnes")

    # ---- MySQL ----
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = int(os.getenv("DB_PORT", "3306"))
    DB_USER = os.getenv("DB_USER", "root")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "")
    DB_NAME = os.getenv("DB_NAME", "bibliotheque_cameroun")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "5"))

    # ---- Active Directory ----
    AD_ENABLED = _get_bool("AD_ENABLED", "True")
    AD_SERVER = os.getenv("AD_SERVER", "ldap://192.168.192.52:389")
    AD_BASE_DN = os.getenv("AD_BASE_DN", "DC=udm,DC=edu,DC=cm")
    AD_DOMAIN = os.getenv("AD_DOMAIN", "udm.edu.cm")
    AD_ADMIN_USER = os.getenv("AD_ADMIN_USER", "")
    AD_ADMIN_PASSWORD = os.getenv("AD_ADMIN_PASSWORD", "")
    AD_TIMEOUT = int(os.getenv("AD_TIMEOUT", "10"))

    # ---- File server (FTP) ----
    FILE_SERVER_HOST = os.getenv("FILE_SERVER_HOST", "localhost")
    FILE_SERVER_PORT = int(os.getenv("FILE_SERVER_PORT", "21"))
    FILE_SERVER_USER = os.getenv("FILE_SERVER_USER", "")
    FILE_SERVER_PASSWORD = os.getenv("FILE_SERVER_PASSWORD", "")
    FILE_SERVER_BASE_PATH = os.getenv("FILE_SERVER_BASE_PATH", "/")
    FILE_SERVER_BASE_URL = os.getenv("FILE_SERVER_BASE_URL", "http://localhost/documents")
    FILE_SERVER_PASSIVE = _get_bool("FILE_SERVER_PASSIVE", "True")
    FILE_SERVER_TIMEOUT = int(os.getenv("FILE_SERVER_TIMEOUT", "30"))
    # Local-disk mode (development / tests)
    FILE_SERVER_MOCK = _get_bool("FILE_SERVER_MOCK", "False")
    LOCAL_UPLOAD_FOLDER = os.getenv("LOCAL_UPLOAD_FOLDER", os.path.join(BASE_DIR, "uploads"))
    ALLOWED_DOCUMENT_EXTENSIONS = _get_set(
        "ALLOWED_DOCUMENT_EXTENSIONS", "pdf,doc,docx,epub,txt,jpg,jpeg,png"
    )
    MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(50 * 1024 * 1024)))

    # ---- Circulation defaults ----
    DEFAULT_LOAN_DAYS = int(os.getenv("DEFAULT_LOAN_DAYS", "21"))
    LOAN_DAYS_ARE_WORKING_DAYS = _get_bool("LOAN_DAYS_ARE_WORKING_DAYS", "True")
    RESERVATION_EXPIRY_DAYS = int(os.getenv("RESERVATION_EXPIRY_DAYS", "7"))
    REMINDER_DAYS_BEFORE = int(os.getenv("EMAIL_REMINDER_DAYS_BEFORE", "3"))
    DEFAULT_MAX_LOANS = int(os.getenv("DEFAULT_MAX_LOANS", "3"))
    DEFAULT_MAX_RESERVATIONS = int(os.getenv("DEFAULT_MAX_RESERVATIONS", "3"))

    # ---- Penalties (FCFA) ----
    PENALTY_DAILY_RATE = float(os.getenv("PENALTY_DAILY_RATE", "100"))
    PENALTY_MAX_AMOUNT = float(os.getenv("PENALTY_MAX_AMOUNT", "5000"))
    PENALTY_GRACE_DAYS = int(os.getenv("PENALTY_GRACE_DAYS", "1"))
    PENALTY_PAYMENT_DAYS = int(os.getenv("PENALTY_PAYMENT_DAYS", "30"))

    # ---- Catalogue ----
    CATALOG_CACHE_SECONDS = int(os.getenv("CATALOG_CACHE_SECONDS", "300"))
    CATALOG_DEFAULT_LIMIT = int(os.getenv("CATALOG_DEFAULT_LIMIT", "24"))
    CATALOG_MAX_LIMIT = int(os.getenv("CATALOG_MAX_LIMIT", "100"))

    # ✅ APScheduler config
    SCHEDULER_API_ENABLED = False
    SCHEDULER_TIMEZONE = os.getenv("TZ", "Africa/Douala")
    CIRCULATION_JOB_HOUR = int(os.getenv("CIRCULATION_JOB_HOUR", "6"))
    CIRCULATION_JOB_MINUTE = int(os.getenv("CIRCULATION_JOB_MINUTE", "0"))

    # ---- API ----
    PAGE_SIZE = int(os.getenv("PAGE_SIZE", "20"))

    # ---- Session / cookie security ----
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = os.getenv("SESSION_COOKIE_SAMESITE", "Lax")
    SESSION_COOKIE_SECURE = _get_bool("SESSION_COOKIE_SECURE", "False")
