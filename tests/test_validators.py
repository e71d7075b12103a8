from datetime import date

import pytest

from errors import ValidationError
from services import validators


class TestPhone:
    @pytest.mark.parametrize(
        "value", ["699112233", "+237699112233", "237 699 11 22 33", "+237-677-11-22-33"]
    )
    def test_valid(self, value):
        assert validators.is_valid_cameroon_phone(value)

    @pytest.mark.parametrize("value", ["", "12345", "599112233", "+33612345678"])
    def test_invalid(self, value):
        assert not validators.is_valid_cameroon_phone(value)

    def test_format(self):
        assert validators.format_cameroon_phone("237699112233") == "+237 699 11 22 33"

    def test_format_leaves_unknown_as_is(self):
        assert validators.format_cameroon_phone("0044 20 1234") == "0044 20 1234"


class TestIdentifiers:
    @pytest.mark.parametrize("value", ["978-2-07-036822-8", "2070368228", "020103418X"])
    def test_isbn(self, value):
        assert validators.is_valid_isbn(value)

    def test_bad_isbn(self):
        assert not validators.is_valid_isbn("12-34")

    @pytest.mark.parametrize("value,ok", [("840", True), ("843.914", True), ("84", False), ("abc", False)])
    def test_dewey(self, value, ok):
        assert validators.is_valid_dewey(value) is ok

    def test_document_barcode_shape(self):
        code = validators.generate_document_barcode(date(2024, 3, 9))
        assert code.startswith("BIB240309")
        assert validators.is_valid_document_barcode(code)

    def test_user_barcode_shape(self):
        code = validators.generate_user_barcode(2024)
        assert validators.USER_BARCODE_RE.match(code)
        assert code.startswith("UDM2024")


class TestRequireFields:
    def test_lists_every_missing_field(self):
        with pytest.raises(ValidationError) as exc:
            validators.require_fields({"title": " ", "author": "X"}, ["title", "author", "isbn"])
        fields = [d["field"] for d in exc.value.details]
        assert fields == ["title", "isbn"]
        assert exc.value.code == "VALIDATION_ERROR"

    def test_ok(self):
        validators.require_fields({"title": "Germinal"}, ["title"])


class TestAsInt:
    def test_default_when_blank(self):
        assert validators.as_int("", "days", default=7) == 7

    def test_minimum(self):
        with pytest.raises(ValidationError):
            validators.as_int("0", "days", minimum=1)

    def test_not_a_number(self):
        with pytest.raises(ValidationError):
            validators.as_int("dix", "days")


class TestPagination:
    @pytest.mark.parametrize(
        "args,expected",
        [
            ({}, (1, 20, 0)),
            ({"page": "3", "limit": "10"}, (3, 10, 20)),
            ({"page": "-2", "limit": "1000"}, (1, 100, 0)),
            ({"page": "x", "limit": "y"}, (1, 20, 0)),
        ],
    )
    def test_page_params(self, args, expected):
        assert validators.page_params(args) == expected

    def test_pagination_block(self):
        block = validators.pagination(2, 10, 25)
        assert block == {"page": 2, "limit": 10, "total": 25, "pages": 3, "has_next": True, "has_prev": True}


def test_keywords_json_from_text():
    assert validators.keywords_json("santé, médecine ,") == '["santé", "médecine"]'
