import os
from datetime import date, timedelta
from unittest.mock import MagicMock

import pandas as pd
import pytest

from config import Config
from errors import ConflictError, NotFoundError, ValidationError
from services import active_directory, analytics, availability, circulation, file_server, penalties, reservations
from services.availability import compute_available_copies
from services.penalties import compute_late_penalty


class TestLatePenalty:
    @pytest.mark.parametrize(
        "days,rate,cap,grace,expected",
        [
            (0, 100, 5000, 1, (0.0, 0)),
            (1, 100, 5000, 1, (0.0, 0)),
            (5, 100, 5000, 1, (400.0, 4)),
            (10, 250, 5000, 0, (2500.0, 10)),
            (90, 100, 5000, 1, (5000.0, 89)),
        ],
    )
    def test_amount(self, days, rate, cap, grace, expected):
        assert compute_late_penalty(days, rate, cap, grace) == expected


class TestAvailableCopies:
    def test_subtracts_every_hold(self):
        assert compute_available_copies(5, 2, 1, 1) == 1

    def test_never_negative(self):
        assert compute_available_copies(1, 1, 3) == 0

    def test_none_values(self):
        assert compute_available_copies(None, None, None) == 0


class TestActiveDirectoryHelpers:
    @pytest.mark.parametrize(
        "groups,role",
        [
            (["CN=Domain Admins,CN=Users,DC=udm,DC=edu,DC=cm"], "admin"),
            (["CN=Library Staff,OU=Groups"], "bibliothecaire"),
            (["CN=Cataloging,OU=Groups"], "enregistrement"),
            (["CN=Etudiants,OU=Groups"], "etudiant"),
            ([], "etudiant"),
            (None, "etudiant"),
        ],
    )
    def test_role_from_groups(self, groups, role):
        found, permissions = active_directory.determine_role_and_permissions(groups)
        assert found == role
        assert permissions is active_directory.ROLE_PERMISSIONS[role]

    def test_admin_wins_over_librarian(self):
        role, _ = active_directory.determine_role_and_permissions(["CN=Librarian", "CN=Administrators"])
        assert role == "admin"

    def test_student_cannot_create_books(self):
        perms = active_directory.ROLE_PERMISSIONS["etudiant"]
        assert perms["books"]["view"] is True
        assert perms["books"]["create"] is False
        assert perms["reservations"]["create"] is True

    @pytest.mark.parametrize(
        "value,expected",
        [(None, None), ("", None), ([], None), (["a", "b"], "a"), (b"caf\xc3\xa9", "café"), (512, "512")],
    )
    def test_clean_ldap_value(self, value, expected):
        assert active_directory.clean_ldap_value(value) == expected

    @pytest.mark.parametrize(
        "username,expected",
        [
            ("jdoe", ("jdoe@udm.edu.cm", "jdoe")),
            ("jdoe@udm.edu.cm", ("jdoe@udm.edu.cm", "jdoe")),
            ("UDM\\jdoe", ("jdoe@udm.edu.cm", "jdoe")),
        ],
    )
    def test_normalize_username(self, monkeypatch, username, expected):
        monkeypatch.setattr(Config, "AD_DOMAIN", "udm.edu.cm")
        assert active_directory.normalize_username(username) == expected


class TestFileServerPaths:
    def test_file_name_keeps_extension(self):
        name = file_server.build_file_name("doc-42", "Mémoire Final.PDF")
        assert name.startswith("doc-42_")
        assert name.endswith(".pdf")

    def test_file_name_without_extension(self):
        assert file_server.build_file_name("x", "README").endswith(".bin")

    @pytest.mark.parametrize(
        "doc_type,category,folder",
        [
            ("book", None, "books"),
            ("these", None, "theses"),
            ("rapport_stage", None, "rapport_stage"),
            ("academic-documents", "Diplome", "academic-documents/Diplomes"),
            ("academic-documents", "releves", "academic-documents/releves"),
            ("academic-documents", "attestation", "academic-documents/autres"),
            ("unknown", None, "documents"),
        ],
    )
    def test_target_folder(self, doc_type, category, folder):
        assert file_server.target_folder(doc_type, category) == folder

    def test_mime_type(self):
        assert file_server.mime_type_for("a.docx").startswith("application/vnd.openxmlformats")
        assert file_server.mime_type_for("a.unknownext") == "application/octet-stream"


class TestFileServerMock:
    """Local storage used when FILE_SERVER_MOCK is on."""

    @pytest.fixture(autouse=True)
    def local_store(self, monkeypatch, tmp_path):
        monkeypatch.setattr(Config, "FILE_SERVER_MOCK", True)
        monkeypatch.setattr(Config, "LOCAL_UPLOAD_FOLDER", str(tmp_path))
        return tmp_path

    def test_upload_download_delete(self, local_store):
        info = file_server.upload_file(b"%PDF-1.4 test", "these.pdf", "these", "t-1")
        assert info["file_path"].startswith("theses/t-1_")
        assert info["file_size"] == 13
        assert info["file_type"] == "application/pdf"
        assert os.path.exists(os.path.join(str(local_store), info["file_path"]))

        assert file_server.download_file(info["file_path"]) == b"%PDF-1.4 test"
        assert file_server.delete_file(info["file_path"]) is True
        assert file_server.download_file(info["file_path"]) is None

    def test_replace_removes_previous(self):
        first = file_server.upload_file(b"v1", "a.pdf", "book", "b-1")
        second = file_server.upload_file(b"v2", "a.pdf", "book", "b-1", replace_path=first["file_path"])
        if first["file_path"] != second["file_path"]:
            assert file_server.download_file(first["file_path"]) is None
        assert file_server.download_file(second["file_path"]) == b"v2"

    def test_rejects_extension(self):
        with pytest.raises(ValidationError) as exc:
            file_server.upload_file(b"MZ", "virus.exe", "book", "b-1")
        assert exc.value.code == "INVALID_FILE_TYPE"

    def test_rejects_empty(self):
        with pytest.raises(ValidationError) as exc:
            file_server.upload_file(b"", "vide.pdf", "book", "b-1")
        assert exc.value.code == "EMPTY_FILE"

    def test_path_traversal(self):
        with pytest.raises(ValidationError):
            file_server.download_file("../../etc/passwd")


class TestReorderQueue:
    def test_rejects_partial_order(self, monkeypatch):
        monkeypatch.setattr(reservations, "get_reservation_queue",
                            MagicMock(return_value=[{"id": "r1"}, {"id": "r2"}]))
        with pytest.raises(ValidationError) as exc:
            reservations.reorder_queue("b-1", "book", ["r2"])
        assert exc.value.code == "INVALID_ORDER"

    def test_rejects_duplicates(self, monkeypatch):
        monkeypatch.setattr(reservations, "get_reservation_queue",
                            MagicMock(return_value=[{"id": "r1"}, {"id": "r2"}]))
        with pytest.raises(ValidationError):
            reservations.reorder_queue("b-1", "book", ["r1", "r1", "r2"])

    def test_rewrites_priorities(self, monkeypatch):
        monkeypatch.setattr(reservations, "get_reservation_queue",
                            MagicMock(return_value=[{"id": "r1"}, {"id": "r2"}]))
        cursor = MagicMock()
        tx = MagicMock()
        tx.return_value.__enter__.return_value = cursor
        monkeypatch.setattr(reservations, "transaction", tx)
        monkeypatch.setattr(reservations, "get_queue", MagicMock(return_value=["queue"]))

        assert reservations.reorder_queue("b-1", "book", ["r2", "r1"]) == ["queue"]
        positions = [c.args[1][:2] for c in cursor.execute.call_args_list]
        assert positions == [(1, "r2"), (2, "r1")]


class TestAnalyticsHelpers:
    def test_bad_month(self):
        with pytest.raises(ValidationError):
            analytics._parse_month("2024/06")

    def test_month_passthrough(self):
        assert analytics._parse_month("2024-06") == "2024-06"
        assert analytics._parse_month(None) is None

    def test_month_label(self):
        assert analytics._month_label("2024-08") == "août 2024"

    def test_last_12_months_wraps_year(self):
        months = analytics._last_12_months(date(2024, 3, 10))
        assert months[0] == "2023-04"
        assert months[-1] == "2024-03"
        assert len(months) == 12

    def test_unknown_export_section(self):
        with pytest.raises(ValidationError):
            analytics.export_dataframe("secret")

    def test_export_drops_ids(self, monkeypatch):
        monkeypatch.setitem(analytics.EXPORT_SECTIONS, "top_domains",
                            ("Domaines", lambda: [{"id": 1, "domain": "Médecine", "loans": 4}]))
        title, df = analytics.export_dataframe("top_domains")
        assert title == "Domaines"
        assert isinstance(df, pd.DataFrame)
        assert list(df.columns) == ["domain", "loans"]


class TestReturnLoan:
    def test_unpaid_penalty_blocks_return(self, monkeypatch):
        monkeypatch.setattr(circulation, "fetch_one", MagicMock(return_value={
            "id": "l-1", "status": "overdue", "user_id": "u-1", "book_id": "b-1", "due_date": "2024-06-01",
        }))
        monkeypatch.setattr(circulation, "unpaid_penalties_for_loan", MagicMock(return_value=[
            {"id": "p-1", "amount_fcfa": "1500.00", "description": "Retard", "penalty_date": "2024-06-10"},
        ]))
        with pytest.raises(ConflictError) as exc:
            circulation.return_loan("l-1")
        assert exc.value.code == "UNPAID_PENALTIES"
        assert exc.value.status == 422
        assert exc.value.details["total_amount"] == 1500.0
        assert exc.value.details["penalties"][0]["amount_fcfa"] == 1500.0

    def test_already_returned(self, monkeypatch):
        monkeypatch.setattr(circulation, "fetch_one", MagicMock(return_value={"id": "l-1", "status": "returned"}))
        with pytest.raises(ConflictError) as exc:
            circulation.return_loan("l-1")
        assert exc.value.code == "ALREADY_RETURNED"


def _count(n):
    return [{"c": n}]


def _book(copies=1):
    return [{"id": "b-1", "title": "Germinal", "author": "Zola", "total_copies": copies,
             "available_copies": copies, "document_path": None}]


def _queue_row(res_id="r-1", priority=1, user="Awa Ngono"):
    return {"id": res_id, "user_id": f"u-{res_id}", "reservation_date": date(2024, 6, 1),
            "expiry_date": date(2024, 6, 8), "priority_order": priority, "notification_sent": 0,
            "user_name": user, "user_email": "awa@udm.edu.cm"}


@pytest.fixture
def no_mail(monkeypatch):
    import email_utils

    for name in ("send_loan_confirmation", "send_reservation_confirmation"):
        monkeypatch.setattr(email_utils, name, MagicMock(return_value=True))


class TestCreateLoanRefusals:
    """Refusals come in a fixed order: queue, copies, patron limit, duplicate."""

    def _script(self, db, queue, copies, on_loan, user_loans, already):
        db.on("FROM users WHERE id = %s", [{"id": "u-1", "email": "e@udm.edu.cm", "full_name": "Paul Biya",
                                           "is_active": 1, "max_loans": 3, "max_reservations": 3}])
        db.on("FROM books WHERE id = %s", _book(copies))
        db.on("SELECT MIN(due_date)", [{"d": date(2024, 7, 1)}])
        db.on("FROM loans WHERE book_id = %s", _count(on_loan))
        db.on("FROM reservations WHERE book_id = %s AND status = 'active'", _count(len(queue)))
        db.on("FROM reading_room_consultations", _count(0))
        db.on("WHERE r.book_id = %s AND r.status = 'active'", queue)
        db.on("FROM loans WHERE user_id = %s AND status IN", _count(user_loans))
        db.on("FROM loans WHERE user_id = %s AND book_id = %s", _count(already))

    @pytest.mark.parametrize(
        "queue,copies,on_loan,user_loans,already,code",
        [
            ([_queue_row()], 1, 1, 3, 1, "DOCUMENT_HAS_RESERVATIONS"),
            ([], 1, 1, 3, 1, "DOCUMENT_UNAVAILABLE"),
            ([], 2, 1, 3, 1, "LOAN_LIMIT_EXCEEDED"),
            ([], 2, 1, 1, 1, "ALREADY_BORROWED"),
        ],
    )
    def test_refusal_order(self, fake_db, queue, copies, on_loan, user_loans, already, code):
        self._script(fake_db, queue, copies, on_loan, user_loans, already)
        with pytest.raises(ConflictError) as exc:
            circulation.create_loan({"user_id": "u-1", "document_id": "b-1"})
        assert exc.value.code == code
        assert exc.value.status == 422
        assert fake_db.executed("INSERT INTO loans") == []

    def test_queue_details(self, fake_db):
        self._script(fake_db, [_queue_row(), _queue_row("r-2", 2)], 3, 0, 0, 0)
        with pytest.raises(ConflictError) as exc:
            circulation.create_loan({"user_id": "u-1", "document_id": "b-1"})
        assert exc.value.details["reservation_id"] == "r-1"
        assert exc.value.details["queue_length"] == 2

    def test_loan_created(self, fake_db, no_mail):
        self._script(fake_db, [], 2, 0, 0, 0)
        fake_db.on("WHERE l.id = %s", [{"id": "l-1", "book_id": "b-1", "status": "active",
                                        "loan_date": date(2024, 6, 3), "due_date": date(2024, 6, 24)}])
        loan = circulation.create_loan({"user_id": "u-1", "document_id": "b-1", "loan_date": "2024-06-03",
                                        "due_date": "2024-06-24"})
        assert loan["document_id"] == "b-1"
        inserted = fake_db.executed("INSERT INTO loans")[0]
        assert inserted[1:3] == ("u-1", "b-1")
        assert inserted[5:7] == (date(2024, 6, 3), date(2024, 6, 24))
        assert fake_db.executed("UPDATE books SET available_copies = GREATEST(0, available_copies - 1)")
        assert fake_db.commits == 1


def _reservable(db, user=None, held=0, already_reserved=0, already_borrowed=0, document=True, on_loan=1,
                last_priority=0):
    """Script a patron who may reserve b-1, the single copy being out on loan by default."""
    db.on("SELECT COALESCE(MAX(priority_order), 0)", [{"p": last_priority}])
    if user is not False:
        db.on("SELECT id, is_active, max_reservations FROM users",
              [user or {"id": "u-1", "is_active": 1, "max_reservations": 3}])
    db.on("FROM reservations WHERE user_id = %s AND status = 'active'", _count(held))
    db.on("FROM reservations WHERE user_id = %s AND book_id = %s", _count(already_reserved))
    db.on("FROM loans WHERE user_id = %s AND book_id = %s", _count(already_borrowed))
    if document:
        db.on("FROM books WHERE id = %s", _book(1))
    db.on("SELECT MIN(due_date)", [{"d": date(2024, 7, 1)}])
    db.on("FROM loans WHERE book_id = %s", _count(on_loan))
    db.on("FROM reservations WHERE book_id = %s", _count(0))
    db.on("FROM reading_room_consultations", _count(0))


class TestCanUserReserve:
    @pytest.mark.parametrize(
        "kwargs,reason",
        [
            ({"user": False}, "USER_NOT_FOUND"),
            ({"user": {"id": "u-1", "is_active": 0, "max_reservations": 3}}, "USER_INACTIVE"),
            ({"held": 3}, "RESERVATION_LIMIT_EXCEEDED"),
            ({"already_reserved": 1}, "RESERVATION_ALREADY_EXISTS"),
            ({"already_borrowed": 1}, "DOCUMENT_ALREADY_BORROWED"),
            ({"document": False}, "DOCUMENT_NOT_FOUND"),
            ({"on_loan": 0}, "DOCUMENT_AVAILABLE_FOR_LOAN"),
        ],
    )
    def test_reasons(self, fake_db, kwargs, reason):
        _reservable(fake_db, **kwargs)
        ok, found, _ = availability.can_user_reserve("u-1", "b-1", "book")
        assert ok is False
        assert found == reason

    def test_limit_details(self, fake_db):
        _reservable(fake_db, held=3)
        _, _, details = availability.can_user_reserve("u-1", "b-1", "book")
        assert details == {"current": 3, "max": 3}

    def test_allowed_when_all_copies_out(self, fake_db):
        _reservable(fake_db)
        assert availability.can_user_reserve("u-1", "b-1", "book") == (True, None, {"queue_length": 0})


class TestCreateReservation:
    def test_goes_to_back_of_queue(self, fake_db, no_mail):
        _reservable(fake_db, last_priority=2)
        fake_db.on("WHERE r.id = %s", [dict(_queue_row("r-new", 3), book_id="b-1", document_type="book",
                                            status="active", document_title="Germinal")])

        reservation = reservations.create_reservation({"user_id": "u-1", "document_id": "b-1"})

        params = fake_db.executed("INSERT INTO reservations")[0]
        assert params[7] == 3
        assert params[6] == date.today() + timedelta(days=Config.RESERVATION_EXPIRY_DAYS)
        assert fake_db.executed("UPDATE books SET available_copies = available_copies - 1")
        assert reservation["document_id"] == "b-1"

    def test_explicit_expiry_in_past(self, fake_db, no_mail):
        _reservable(fake_db)
        with pytest.raises(ValidationError):
            reservations.create_reservation({"user_id": "u-1", "document_id": "b-1", "expiry_date": "2000-01-01"})
        assert fake_db.executed("INSERT INTO reservations") == []

    def test_refused_when_document_on_shelf(self, fake_db):
        _reservable(fake_db, on_loan=0)
        with pytest.raises(ConflictError) as exc:
            reservations.create_reservation({"user_id": "u-1", "document_id": "b-1"})
        assert exc.value.code == "DOCUMENT_AVAILABLE_FOR_LOAN"

    def test_unknown_user_is_404(self, fake_db):
        _reservable(fake_db, user=False)
        with pytest.raises(NotFoundError) as exc:
            reservations.create_reservation({"user_id": "u-9", "document_id": "b-1"})
        assert exc.value.code == "USER_NOT_FOUND"


class TestQueueShift:
    """Leaving the queue moves every later holder up one place."""

    SHIFT = "UPDATE reservations SET priority_order = priority_order - 1"

    def test_cancel(self, fake_db):
        fake_db.on("SELECT * FROM reservations WHERE id = %s",
                   [{"id": "r-2", "status": "active", "book_id": "b-1", "academic_document_id": None,
                     "document_type": "book", "priority_order": 2, "user_id": "u-1"}])
        fake_db.on("WHERE r.id = %s", [{"id": "r-2", "status": "cancelled", "book_id": "b-1"}])

        result = reservations.cancel_reservation("r-2")

        assert fake_db.executed("SET status = 'cancelled'") == [("r-2",)]
        assert fake_db.executed(self.SHIFT) == [("b-1", 2)]
        assert fake_db.executed("available_copies = available_copies + 1") == [("b-1",)]
        assert fake_db.commits == 1
        assert result["status"] == "cancelled"

    def test_cancel_inactive(self, fake_db):
        fake_db.on("SELECT * FROM reservations WHERE id = %s",
                   [{"id": "r-2", "status": "fulfilled", "book_id": "b-1", "priority_order": 1}])
        with pytest.raises(ConflictError) as exc:
            reservations.cancel_reservation("r-2")
        assert exc.value.code == "RESERVATION_NOT_ACTIVE"
        assert fake_db.executed(self.SHIFT) == []

    def test_fulfill(self, fake_db, no_mail):
        fake_db.on("SELECT * FROM reservations WHERE id = %s",
                   [{"id": "r-1", "status": "active", "book_id": "b-1", "academic_document_id": None,
                     "document_type": "book", "priority_order": 1, "user_id": "u-1"}])
        fake_db.on("FROM users WHERE id = %s", [{"id": "u-1", "email": "e@udm.edu.cm", "full_name": "Awa",
                                                "is_active": 1, "max_loans": 3}])
        fake_db.on("FROM loans WHERE user_id = %s AND status IN", _count(0))
        fake_db.on("FROM books WHERE id = %s", _book(1))
        fake_db.on("FROM loans WHERE book_id = %s", _count(0))
        fake_db.on("FROM reservations WHERE book_id = %s", _count(0))
        fake_db.on("FROM reading_room_consultations", _count(0))
        fake_db.on("WHERE r.id = %s", [{"id": "r-1", "status": "fulfilled", "book_id": "b-1"}])

        result = reservations.fulfill_reservation("r-1")

        assert fake_db.executed("SET status = 'fulfilled'") == [("r-1",)]
        assert fake_db.executed(self.SHIFT) == [("b-1", 1)]
        loan = fake_db.executed("INSERT INTO loans")[0]
        assert loan[1] == "u-1"
        assert result["due_date"] == loan[6].isoformat()

    def test_fulfill_over_limit(self, fake_db):
        fake_db.on("SELECT * FROM reservations WHERE id = %s",
                   [{"id": "r-1", "status": "active", "book_id": "b-1", "document_type": "book",
                     "priority_order": 1, "user_id": "u-1"}])
        fake_db.on("FROM users WHERE id = %s", [{"id": "u-1", "is_active": 1, "max_loans": 2}])
        fake_db.on("FROM loans WHERE user_id = %s AND status IN", _count(2))
        with pytest.raises(ConflictError) as exc:
            reservations.fulfill_reservation("r-1")
        assert exc.value.code == "LOAN_LIMIT_EXCEEDED"
        assert fake_db.executed(self.SHIFT) == []


class TestCleanupExpired:
    def test_counts(self, fake_db):
        fake_db.on("WHERE status = 'active' AND expiry_date < CURDATE()", [
            {"id": "r-3", "book_id": "b-1", "academic_document_id": None, "document_type": "book",
             "priority_order": 2},
            {"id": "r-4", "book_id": None, "academic_document_id": "t-1", "document_type": "these",
             "priority_order": 1},
        ])
        fake_db.on("available_copies = available_copies + 1", rowcount=1)

        result = reservations.cleanup_expired()

        assert result == {"cleaned_reservations": 2, "freed_copies": 1, "reservation_ids": ["r-3", "r-4"]}
        assert fake_db.executed("SET status = 'expired'") == [("r-3",), ("r-4",)]
        assert fake_db.executed(TestQueueShift.SHIFT) == [("b-1", 2), ("t-1", 1)]

    def test_book_already_full(self, fake_db):
        fake_db.on("WHERE status = 'active' AND expiry_date < CURDATE()", [
            {"id": "r-3", "book_id": "b-1", "document_type": "book", "priority_order": 1},
        ])
        fake_db.on("available_copies = available_copies + 1", rowcount=0)
        assert reservations.cleanup_expired()["freed_copies"] == 0

    def test_nothing_expired(self, fake_db):
        assert reservations.cleanup_expired() == {"cleaned_reservations": 0, "freed_copies": 0,
                                                  "reservation_ids": []}
        assert fake_db.commits == 1


class TestQueueStats:
    def _queue(self, fake_db, priorities):
        fake_db.on("FROM books WHERE id = %s", _book(1))
        fake_db.on("WHERE r.book_id = %s AND r.status = 'active'",
                   [_queue_row(f"r-{i}", p, user=f"Lecteur {i}") for i, p in enumerate(priorities)])
        return reservations.get_queue("b-1", "book")

    def test_wait_and_issues(self, fake_db):
        result = self._queue(fake_db, [1, 3, 4])
        assert result["stats"] == {"total": 3, "next_user": "Lecteur 0", "average_wait_time": 21,
                                   "positions_available": True}
        assert result["priority_issues"] == [
            {"reservation_id": "r-1", "current_priority": 3, "expected_priority": 2},
            {"reservation_id": "r-2", "current_priority": 4, "expected_priority": 3},
        ]
        assert result["queue"][0]["expiry_date"] == "2024-06-08"

    def test_single_holder_has_no_wait(self, fake_db):
        result = self._queue(fake_db, [1])
        assert result["stats"]["average_wait_time"] == 0
        assert result["priority_issues"] == []

    def test_full_queue(self, fake_db):
        assert self._queue(fake_db, list(range(1, 11)))["stats"]["positions_available"] is False

    def test_empty(self, fake_db):
        result = self._queue(fake_db, [])
        assert result["stats"]["next_user"] is None
        assert result["stats"]["average_wait_time"] == 0

    def test_unknown_document(self, fake_db):
        with pytest.raises(NotFoundError):
            reservations.get_queue("b-404", "book")


class TestProcessOverdueLoans:
    """Batch penalty run reports failures in its stats instead of raising."""

    def test_scan_failure(self, fake_db):
        def boom(params):
            raise RuntimeError("MySQL server has gone away")

        fake_db.on("FROM loans l WHERE l.status IN ('active', 'overdue')", boom)
        assert penalties.process_overdue_loans() == {"processed": 0, "created": 0, "errors": 1}

    def test_one_bad_loan_does_not_stop_the_rest(self, fake_db, monkeypatch):
        overdue = date.today() - timedelta(days=5)
        fake_db.on("FROM loans l WHERE l.status IN ('active', 'overdue')", [
            {"id": "l-1", "user_id": "u-1", "due_date": overdue, "document_type": "book"},
            {"id": "l-2", "user_id": "u-2", "due_date": overdue, "document_type": "these"},
            {"id": "l-3", "user_id": "u-3", "due_date": overdue, "document_type": None},
        ])
        create = MagicMock(side_effect=[RuntimeError("duplicate"), "p-2", None])
        monkeypatch.setattr(penalties, "create_late_penalty", create)

        assert penalties.process_overdue_loans() == {"processed": 3, "created": 1, "errors": 1}
        assert create.call_args_list[1].args == ("u-2", "l-2", 5, "these")
        assert create.call_args_list[2].args[3] == "book"

    def test_late_penalty_uses_settings(self, fake_db):
        fake_db.on("FROM penalty_settings", [{"daily_rate": "200", "max_penalty": "1000", "grace_period_days": 1}])
        penalty_id = penalties.create_late_penalty("u-1", "l-1", 4, "book")
        assert penalty_id
        params = fake_db.executed("INSERT INTO penalties")[0]
        assert params[3] == 600.0
        assert params[4] == 200.0
