from datetime import date, datetime, timedelta

import pytest

from services import dates


NOW = datetime(2024, 6, 15, 12, 0, 0)


class TestTimeAgo:
    """Activity-feed labels."""

    @pytest.mark.parametrize(
        "delta,expected",
        [
            (timedelta(seconds=20), "À l'instant"),
            (timedelta(minutes=1), "Il y a 1 minute"),
            (timedelta(minutes=5), "Il y a 5 minutes"),
            (timedelta(hours=1), "Il y a 1 heure"),
            (timedelta(hours=3), "Il y a 3 heures"),
            (timedelta(days=1), "Il y a 1 jour"),
            (timedelta(days=4), "Il y a 4 jours"),
            (timedelta(days=7), "Il y a 1 semaine"),
            (timedelta(days=15), "Il y a 2 semaines"),
            (timedelta(days=27), "Il y a 3 semaines"),
            (timedelta(days=29), "Il y a 1 mois"),
            (timedelta(days=65), "Il y a 2 mois"),
            (timedelta(days=365), "Il y a 1 an"),
            (timedelta(days=800), "Il y a 2 ans"),
        ],
    )
    def test_labels(self, delta, expected):
        assert dates.time_ago(NOW - delta, now=NOW) == expected

    def test_future_timestamp_is_now(self):
        assert dates.time_ago(NOW + timedelta(minutes=5), now=NOW) == "À l'instant"

    def test_accepts_mysql_string(self):
        assert dates.time_ago("2024-06-15 09:00:00", now=NOW) == "Il y a 3 heures"

    def test_invalid_date(self):
        assert dates.time_ago("not a date", now=NOW) == "Date invalide"
        assert dates.time_ago(None, now=NOW) == "Date invalide"


class TestParse:
    def test_iso_with_z_and_fraction(self):
        assert dates.parse_datetime("2024-06-15T10:20:30.123Z") == datetime(2024, 6, 15, 10, 20, 30)

    def test_date_object(self):
        assert dates.to_date(date(2024, 1, 2)) == date(2024, 1, 2)

    def test_empty(self):
        assert dates.parse_datetime("") is None


class TestOverdue:
    def test_not_yet_due(self):
        assert dates.days_overdue("2024-06-20", today=date(2024, 6, 15)) == 0

    def test_days_late(self):
        assert dates.days_overdue("2024-06-10", today=date(2024, 6, 15)) == 5

    def test_grace_period(self):
        assert dates.effective_days_overdue("2024-06-10", grace_days=2, today=date(2024, 6, 15)) == 3
        assert dates.effective_days_overdue("2024-06-14", grace_days=2, today=date(2024, 6, 15)) == 0


class TestDueDate:
    def test_skips_weekend(self):
        # Friday + 1 working day is Monday
        assert dates.add_working_days(date(2024, 6, 14), 1) == date(2024, 6, 17)

    def test_skips_national_day(self):
        # 20 May 2024 is a Monday and a public holiday
        assert dates.add_working_days(date(2024, 5, 17), 1) == date(2024, 5, 21)

    def test_calendar_days(self):
        assert dates.calculate_due_date(date(2024, 6, 14), 21, working_days=False) == date(2024, 7, 5)

    def test_working_days_default(self):
        # three full weeks of working days with no holiday in between
        assert dates.calculate_due_date(date(2024, 6, 3), 15) == date(2024, 6, 24)


class TestFormatFcfa:
    @pytest.mark.parametrize(
        "amount,expected",
        [(0, "0 FCFA"), (1500, "1 500 FCFA"), (1250000, "1 250 000 FCFA"), (99.6, "100 FCFA"), (None, "0 FCFA"),
         ("abc", "0 FCFA")],
    )
    def test_format(self, amount, expected):
        assert dates.format_fcfa(amount) == expected
