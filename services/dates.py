# services/dates.py
"""
Date helpers used by circulation and the dashboards:
  - French "time ago" labels for the activity feed
  - overdue day counts (with grace period)
  - due dates counted in Cameroonian working days
  - FCFA amount formatting
"""
from datetime import date, datetime, timedelta
from typing import Optional, Union

DateLike = Union[date, datetime, str, None]

# Fixed-date public holidays (MM-DD). Movable feasts are not listed.
CAMEROON_HOLIDAYS = {
    "01-01",  # Jour de l'An
    "02-11",  # Fête de la Jeunesse
    "05-01",  # Fête du Travail
    "05-20",  # Fête Nationale
    "08-15",  # Assomption
    "12-25",  # Noël
}


def parse_datetime(value: DateLike) -> Optional[datetime]:
    """Accept date/datetime objects or MySQL/ISO strings; None if unparseable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.replace(tzinfo=None) if value.tzinfo else value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    s = str(value).strip().replace("T", " ")
    if s.endswith("Z"):
        s = s[:-1]
    s = s.split(".")[0]
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue
    return None


def to_date(value: DateLike) -> Optional[date]:
    dt = parse_datetime(value)
    return dt.date() if dt else None


def _plural(n: int, word: str) -> str:
    return f"{word}s" if n > 1 else word


def time_ago(value: DateLike, now: Optional[datetime] = None) -> str:
    """Human label such as "Il y a 3 heures" for an activity timestamp."""
    then = parse_datetime(value)
    if then is None:
        return "Date invalide"
    now = now or datetime.now()

    seconds = int((now - then).total_seconds())
    # Future timestamps come from clock skew between app and DB server
    if seconds < 60:
        return "À l'instant"

    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24
    weeks = days // 7
    months = days // 30
    years = days // 365

    if minutes < 60:
        return f"Il y a {minutes} {_plural(minutes, 'minute')}"
    if hours < 24:
        return f"Il y a {hours} {_plural(hours, 'heure')}"
    if days == 1:
        return "Il y a 1 jour"
    if days < 7:
        return f"Il y a {days} jours"
    if weeks < 4:
        return f"Il y a {weeks} {_plural(weeks, 'semaine')}"
    if months < 12:
        return f"Il y a {max(1, months)} mois"
    years = max(1, years)
    return f"Il y a {years} {_plural(years, 'an')}"


def days_overdue(due_date: DateLike, today: Optional[date] = None) -> int:
    """Whole calendar days past the due date (0 if not yet due)."""
    due = to_date(due_date)
    if due is None:
        return 0
    today = today or date.today()
    return max(0, (today - due).days)


def effective_days_overdue(due_date: DateLike, grace_days: int = 0, today: Optional[date] = None) -> int:
    return max(0, days_overdue(due_date, today) - max(0, grace_days))


def is_holiday(d: date) -> bool:
    return d.strftime("%m-%d") in CAMEROON_HOLIDAYS


def is_working_day(d: date) -> bool:
    return d.weekday() < 5 and not is_holiday(d)


def add_working_days(start: DateLike, days: int) -> date:
    """Move forward `days` working days, skipping weekends and public holidays."""
    current = to_date(start) or date.today()
    added = 0
    while added < days:
        current += timedelta(days=1)
        if is_working_day(current):
            added += 1
    return current


def calculate_due_date(loan_date: DateLike = None, loan_days: int = 21, working_days: bool = True) -> date:
    start = to_date(loan_date) or date.today()
    if working_days:
        return add_working_days(start, loan_days)
    return start + timedelta(days=loan_days)


def format_fcfa(amount) -> str:
    """1500 -> '1 500 FCFA' (French thousands separator, no decimals)."""
    try:
        value = int(round(float(amount or 0)))
    except (TypeError, ValueError):
        value = 0
    return f"{value:,}".replace(",", " ") + " FCFA"


def iso(value: DateLike) -> Optional[str]:
    """Date/datetime to ISO string for JSON payloads."""
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)
