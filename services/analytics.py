from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pandas as pd

from db_mysql import fetch_all, fetch_one
from errors import ValidationError
from services.dates import iso, time_ago
from services.penalties import penalty_stats
from services.reservations import reservation_stats

MONTH_LABELS_FR = ["janv.", "févr.", "mars", "avr.", "mai", "juin",
                   "juil.", "août", "sept.", "oct.", "nov.", "déc."]


def _month_label(ym: str) -> str:
    year, month = ym.split("-")
    return f"{MONTH_LABELS_FR[int(month) - 1]} {year}"


def _last_12_months(today: Optional[date] = None) -> List[str]:
    today = today or date.today()
    months = []
    y, m = today.year, today.month
    for _ in range(12):
        months.append(f"{y:04d}-{m:02d}")
        m -= 1
        if m == 0:
            y, m = y - 1, 12
    return list(reversed(months))


def _parse_month(month: Optional[str]) -> Optional[str]:
    if not month:
        return None
    try:
        datetime.strptime(month, "%Y-%m")
    except ValueError:
        raise ValidationError("Format de mois invalide (AAAA-MM attendu)", details=[{"field": "month"}])
    return month


# -------------------------
# Summary counters
# -------------------------
def basic_stats() -> Dict[str, Any]:
    row = fetch_one(
        """
        SELECT (SELECT COUNT(*) FROM books) AS total_books,
               (SELECT COALESCE(SUM(total_copies), 0) FROM books) AS total_copies,
               (SELECT COALESCE(SUM(available_copies), 0) FROM books) AS available_copies,
               (SELECT COUNT(*) FROM theses) AS total_theses,
               (SELECT COUNT(*) FROM memoires) AS total_memoires,
               (SELECT COUNT(*) FROM stage_reports) AS total_stage_reports,
               (SELECT COUNT(*) FROM users) AS total_users,
               (SELECT COUNT(*) FROM users WHERE is_active = 1) AS active_users,
               (SELECT COUNT(*) FROM loans) AS total_loans,
               (SELECT COUNT(*) FROM loans WHERE status = 'active') AS active_loans,
               (SELECT COUNT(*) FROM loans WHERE status = 'overdue') AS overdue_loans,
               (SELECT COUNT(*) FROM reservations WHERE status = 'active') AS active_reservations,
               (SELECT COUNT(DISTINCT user_id) FROM loans
                 WHERE loan_date >= CURDATE() - INTERVAL 30 DAY) AS monthly_active_users,
               (SELECT AVG(DATEDIFF(return_date, loan_date)) FROM loans
                 WHERE status = 'returned' AND return_date IS NOT NULL) AS avg_loan_duration
        """
    ) or {}
    stats = {k: int(v or 0) for k, v in row.items() if k != "avg_loan_duration"}
    stats["avg_loan_duration"] = round(float(row.get("avg_loan_duration") or 0), 1)
    stats["total_documents"] = (
        stats.get("total_books", 0) + stats.get("total_theses", 0)
        + stats.get("total_memoires", 0) + stats.get("total_stage_reports", 0)
    )
    return stats


# -------------------------
# Time series
# -------------------------
def monthly_loans(month: Optional[str] = None) -> List[Dict[str, Any]]:
    """Loans and returns per month over the last 12 months (or one month when given)."""
    month = _parse_month(month)
    rows = fetch_all(
        """
        SELECT DATE_FORMAT(loan_date, '%Y-%m') AS month,
               COUNT(*) AS loans,
               SUM(status = 'returned') AS returns,
               SUM(status = 'overdue') AS overdue
        FROM loans
        WHERE loan_date >= DATE_FORMAT(CURDATE() - INTERVAL 11 MONTH, '%Y-%m-01')
        GROUP BY DATE_FORMAT(loan_date, '%Y-%m')
        """
    )
    by_month = {r["month"]: r for r in rows}
    months = [month] if month else _last_12_months()
    return [
        {
            "month": ym,
            "label": _month_label(ym),
            "loans": int((by_month.get(ym) or {}).get("loans") or 0),
            "returns": int((by_month.get(ym) or {}).get("returns") or 0),
            "overdue": int((by_month.get(ym) or {}).get("overdue") or 0),
        }
        for ym in months
    ]


def monthly_additions() -> List[Dict[str, Any]]:
    """New catalogue entries per month and type over the last 12 months."""
    rows = fetch_all(
        """
        SELECT month, doc_type, COUNT(*) AS count FROM (
            SELECT DATE_FORMAT(created_at, '%Y-%m') AS month, 'book' AS doc_type FROM books
            UNION ALL SELECT DATE_FORMAT(created_at, '%Y-%m'), 'these' FROM theses
            UNION ALL SELECT DATE_FORMAT(created_at, '%Y-%m'), 'memoire' FROM memoires
            UNION ALL SELECT DATE_FORMAT(created_at, '%Y-%m'), 'rapport_stage' FROM stage_reports
        ) AS additions
        WHERE month >= DATE_FORMAT(CURDATE() - INTERVAL 11 MONTH, '%Y-%m')
        GROUP BY month, doc_type
        """
    )
    series = {ym: {"month": ym, "label": _month_label(ym), "book": 0, "these": 0, "memoire": 0,
                   "rapport_stage": 0} for ym in _last_12_months()}
    for r in rows:
        if r["month"] in series:
            series[r["month"]][r["doc_type"]] = int(r["count"])
    for entry in series.values():
        entry["total"] = entry["book"] + entry["these"] + entry["memoire"] + entry["rapport_stage"]
    return list(series.values())


# -------------------------
# Breakdowns
# -------------------------
def document_type_stats() -> List[Dict[str, Any]]:
    rows = fetch_all(
        """
        SELECT document_type, COUNT(*) AS loans,
               SUM(status IN ('active', 'overdue')) AS on_loan
        FROM loans GROUP BY document_type
        """
    )
    loans = {r["document_type"]: r for r in rows}
    counts = basic_stats()
    totals = {
        "book": counts.get("total_books", 0),
        "these": counts.get("total_theses", 0),
        "memoire": counts.get("total_memoires", 0),
        "rapport_stage": counts.get("total_stage_reports", 0),
    }
    return [
        {
            "document_type": t,
            "count": n,
            "loans": int((loans.get(t) or {}).get("loans") or 0),
            "on_loan": int((loans.get(t) or {}).get("on_loan") or 0),
        }
        for t, n in totals.items()
    ]


def top_domains(limit: int = 10) -> List[Dict[str, Any]]:
    return [
        {"domain": r["domain"], "count": int(r["count"]), "loans": int(r["loans"] or 0)}
        for r in fetch_all(
            """
            SELECT b.domain, COUNT(DISTINCT b.id) AS count, COUNT(l.id) AS loans
            FROM books b
            LEFT JOIN loans l ON l.book_id = b.id
            WHERE b.domain IS NOT NULL AND b.domain <> ''
            GROUP BY b.domain
            ORDER BY loans DESC, count DESC
            LIMIT %s
            """,
            (limit,),
        )
    ]


def popular_books(limit: int = 10) -> List[Dict[str, Any]]:
    rows = fetch_all(
        """
        SELECT b.id, b.title, b.main_author AS author, b.domain, COUNT(l.id) AS loan_count,
               MAX(l.loan_date) AS last_loan
        FROM books b
        JOIN loans l ON l.book_id = b.id
        GROUP BY b.id, b.title, b.main_author, b.domain
        ORDER BY loan_count DESC, last_loan DESC
        LIMIT %s
        """,
        (limit,),
    )
    return [{**r, "loan_count": int(r["loan_count"]), "last_loan": iso(r["last_loan"])} for r in rows]


def fines_analysis() -> Dict[str, Any]:
    monthly = fetch_all(
        """
        SELECT DATE_FORMAT(penalty_date, '%Y-%m') AS month,
               COALESCE(SUM(amount_fcfa), 0) AS billed,
               COALESCE(SUM(CASE WHEN status = 'paid' THEN amount_fcfa END), 0) AS collected
        FROM penalties
        WHERE penalty_date >= DATE_FORMAT(CURDATE() - INTERVAL 11 MONTH, '%Y-%m-01')
        GROUP BY DATE_FORMAT(penalty_date, '%Y-%m')
        ORDER BY month
        """
    )
    return {
        "summary": penalty_stats(),
        "monthly": [{"month": r["month"], "billed": float(r["billed"]), "collected": float(r["collected"])}
                    for r in monthly],
    }


# -------------------------
# Activity feed
# -------------------------
def recent_activities(limit: int = 10, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    loans = fetch_all(
        """
        SELECT l.id, l.loan_date, l.return_date, l.status, l.created_at,
               u.full_name AS user_name,
               COALESCE(b.title, t.title, m.title, s.title) AS document_title
        FROM loans l
        JOIN users u ON u.id = l.user_id
        LEFT JOIN books b ON b.id = l.book_id
        LEFT JOIN theses t ON t.id = l.academic_document_id AND l.document_type = 'these'
        LEFT JOIN memoires m ON m.id = l.academic_document_id AND l.document_type = 'memoire'
        LEFT JOIN stage_reports s ON s.id = l.academic_document_id AND l.document_type = 'rapport_stage'
        ORDER BY COALESCE(l.return_date, l.created_at) DESC
        LIMIT %s
        """,
        (max(1, limit // 2),),
    )
    users = fetch_all(
        "SELECT id, full_name, created_at FROM users ORDER BY created_at DESC LIMIT %s",
        (max(1, limit // 4),),
    )

    activities = []
    for loan in loans:
        if loan["status"] == "returned" and loan["return_date"]:
            kind, when = "return", loan["return_date"]
        elif loan["status"] == "overdue":
            kind, when = "overdue", loan["created_at"] or loan["loan_date"]
        else:
            kind, when = "loan", loan["created_at"] or loan["loan_date"]
        activities.append({"type": kind, "user": loan["user_name"], "document": loan["document_title"],
                           "date": when})
    for user in users:
        activities.append({"type": "new_user", "user": user["full_name"], "document": None,
                           "date": user["created_at"]})

    activities.sort(key=lambda a: iso(a["date"]) or "", reverse=True)
    return [{**a, "time": time_ago(a["date"], now), "date": iso(a["date"])} for a in activities[:limit]]


def dashboard_payload() -> Dict[str, Any]:
    """Everything the analytics dashboard needs in one call."""
    loans_series = monthly_loans()
    return {
        "stats": basic_stats(),
        "monthly_loans": loans_series,
        "monthly_additions": monthly_additions(),
        "document_types": document_type_stats(),
        "top_domains": top_domains(),
        "popular_books": popular_books(),
        "reservations": reservation_stats(),
        "fines": fines_analysis(),
        "charts": {
            "loan_labels": [m["label"] for m in loans_series],
            "loan_values": [m["loans"] for m in loans_series],
            "return_values": [m["returns"] for m in loans_series],
        },
    }


# -------------------------
# Export tables
# -------------------------
EXPORT_SECTIONS = {
    "monthly_loans": ("Prêts mensuels", lambda: monthly_loans()),
    "monthly_additions": ("Acquisitions mensuelles", lambda: monthly_additions()),
    "document_types": ("Statistiques par type de document", lambda: document_type_stats()),
    "top_domains": ("Domaines les plus consultés", lambda: top_domains(25)),
    "popular_books": ("Livres les plus empruntés", lambda: popular_books(25)),
}


def export_dataframe(section: str):
    """(title, DataFrame) for one analytics section."""
    if section not in EXPORT_SECTIONS:
        raise ValidationError(f"Section inconnue: {section}", details={"allowed": list(EXPORT_SECTIONS)})
    title, loader = EXPORT_SECTIONS[section]
    df = pd.DataFrame(loader())
    if "id" in df.columns:
        df = df.drop(columns=["id"])
    return title, df
