from datetime import date, timedelta
from unittest.mock import MagicMock

import pandas as pd
import pytest

from services import exports
from tasks import circulation_jobs


@pytest.fixture
def quiet_steps(monkeypatch):
    """Stub every DB-backed circulation step."""
    monkeypatch.setattr(circulation_jobs.circulation, "update_overdue_loans", MagicMock(return_value=3))
    monkeypatch.setattr(circulation_jobs.reservations, "cleanup_expired",
                        MagicMock(return_value={"cleaned_reservations": 2}))
    monkeypatch.setattr(circulation_jobs, "get_setting", lambda key, default=None: default)
    monkeypatch.setattr(circulation_jobs.circulation, "loans_due_in", MagicMock(return_value=[]))
    monkeypatch.setattr(circulation_jobs.circulation, "overdue_loans", MagicMock(return_value=[]))
    monkeypatch.setattr(circulation_jobs.reservations, "first_in_queue_to_notify", MagicMock(return_value=[]))


class TestCirculationJob:
    def test_summary(self, app, quiet_steps):
        summary = circulation_jobs.run_circulation_jobs(app)
        assert summary["overdue_updated"] == 3
        assert summary["expired_reservations"] == 2
        assert summary["due_reminders"] == 0
        assert summary["errors"] == []

    def test_failing_step_does_not_stop_others(self, app, quiet_steps, monkeypatch):
        monkeypatch.setattr(circulation_jobs.circulation, "update_overdue_loans",
                            MagicMock(side_effect=RuntimeError("db down")))
        summary = circulation_jobs.run_circulation_jobs(app)
        assert summary["overdue_updated"] is None
        assert summary["expired_reservations"] == 2
        assert summary["errors"] == [{"step": "overdue_updated", "error": "db down"}]

    def test_overdue_notices_only_on_notice_days(self, app, monkeypatch):
        today = date.today()
        loans = [
            {"due_date": today - timedelta(days=1), "document_title": "A", "user_email": "a@x.cm", "user_name": "A"},
            {"due_date": today - timedelta(days=3), "document_title": "B", "user_email": "b@x.cm", "user_name": "B"},
            {"due_date": today - timedelta(days=7), "document_title": "C", "user_email": "c@x.cm", "user_name": "C"},
        ]
        monkeypatch.setattr(circulation_jobs.circulation, "overdue_loans", MagicMock(return_value=loans))
        sender = MagicMock(return_value=True)
        monkeypatch.setattr(circulation_jobs, "send_overdue_notice", sender)

        assert circulation_jobs.send_overdue_notices(app) == 2
        assert [c.args[1] for c in sender.call_args_list] == ["A", "C"]

    def test_available_reservation_marked_notified(self, app, monkeypatch):
        monkeypatch.setattr(circulation_jobs.reservations, "first_in_queue_to_notify", MagicMock(return_value=[
            {"id": "r1", "expiry_date": "2024-06-20", "document_title": "Thèse", "user_email": "e@x.cm",
             "user_name": "E"},
        ]))
        monkeypatch.setattr(circulation_jobs, "send_document_available", MagicMock(return_value=True))
        mark = MagicMock()
        monkeypatch.setattr(circulation_jobs.reservations, "mark_notified", mark)

        assert circulation_jobs.notify_available_reservations(app) == 1
        mark.assert_called_once_with("r1")


class TestExports:
    @pytest.fixture
    def frame(self):
        return pd.DataFrame([{"domaine": "Médecine", "emprunts": 12}, {"domaine": "Droit", "emprunts": 4}])

    def test_csv_uses_semicolons(self, frame):
        text = exports.dataframe_to_csv_bytes(frame).decode("utf-8-sig")
        assert text.splitlines()[0] == "domaine;emprunts"

    def test_excel_is_zip(self, frame):
        assert exports.dataframe_to_excel_bytes(frame, sheet_name="x" * 40)[:2] == b"PK"

    def test_pdf(self, frame):
        assert exports.dataframe_to_pdf_bytes("Domaines", frame)[:4] == b"%PDF"

    def test_pdf_empty_frame(self):
        assert exports.dataframe_to_pdf_bytes("Vide", pd.DataFrame())[:4] == b"%PDF"

    def test_sections_report(self, frame):
        pdf = exports.create_sections_report("Rapport", [{"title": "Domaines", "data": frame}])
        assert pdf[:4] == b"%PDF"

    @pytest.mark.parametrize(
        "fmt,suffix,mimetype",
        [("csv", ".csv", "text/csv"), ("pdf", ".pdf", "application/pdf"), (None, ".xlsx", None)],
    )
    def test_response_parts(self, frame, fmt, suffix, mimetype):
        data, name, mt = exports.export_response_parts(frame, "Domaines", fmt, "domaines")
        assert name.startswith("domaines_") and name.endswith(suffix)
        if mimetype:
            assert mt == mimetype
        assert data
