from unittest.mock import MagicMock

import pytest

from config import Config
from services import catalog


class TestNormalizeFilters:
    def test_defaults(self):
        filters = catalog.normalize_filters(None)
        assert filters["type"] == "all"
        assert filters["availability"] == "all"
        assert filters["page"] == 1
        assert filters["limit"] == Config.CATALOG_DEFAULT_LIMIT

    def test_unknown_values_fall_back(self):
        filters = catalog.normalize_filters({"type": "videos", "availability": "lost", "page": "abc"})
        assert filters["type"] == "all"
        assert filters["availability"] == "all"
        assert filters["page"] == 1

    def test_all_means_no_filter(self):
        filters = catalog.normalize_filters({"domain": "All", "year": "2021"})
        assert filters["domain"] == ""
        assert filters["year"] == "2021"

    def test_limit_clamped(self):
        assert catalog.normalize_filters({"limit": "100000"})["limit"] == Config.CATALOG_MAX_LIMIT
        assert catalog.normalize_filters({"limit": "-4"})["limit"] == 1


class TestCacheKey:
    def test_stable_across_key_order(self):
        a = catalog.normalize_filters({"search": "paludisme", "type": "theses"})
        b = catalog.normalize_filters({"type": "theses", "search": "paludisme"})
        assert catalog.cache_key(a) == catalog.cache_key(b)

    def test_differs_by_page(self):
        a = catalog.normalize_filters({"page": 1})
        b = catalog.normalize_filters({"page": 2})
        assert catalog.cache_key(a) != catalog.cache_key(b)


class TestAvailabilityStatus:
    @pytest.mark.parametrize(
        "item,expected",
        [
            ({"document_type": "book", "available_copies": 2}, "disponible"),
            ({"document_type": "book", "available_copies": 0, "is_reserved": False}, "indisponible"),
            ({"document_type": "these", "is_borrowed": False, "is_reserved": False}, "disponible"),
            ({"document_type": "memoire", "is_borrowed": True}, "indisponible"),
            ({"document_type": "rapport_stage", "is_reserved": True}, "indisponible"),
        ],
    )
    def test_status(self, item, expected):
        assert catalog.availability_status(item) == expected


class TestSearchCache:
    """Plain searches are cached; availability searches always query."""

    @pytest.fixture
    def db(self, monkeypatch):
        fetch_one = MagicMock(return_value={"total": 1})
        fetch_all = MagicMock(return_value=[{
            "id": "b1", "title": "L'enfant noir", "document_type": "book",
            "available_copies": 1, "is_borrowed": 0, "is_reserved": 0, "created_at": None,
        }])
        monkeypatch.setattr(catalog, "fetch_one", fetch_one)
        monkeypatch.setattr(catalog, "fetch_all", fetch_all)
        return fetch_all

    def test_second_search_is_cached(self, db):
        first = catalog.search_catalog({"search": "enfant"})
        second = catalog.search_catalog({"search": "enfant"})
        assert first["cached"] is False
        assert second["cached"] is True
        assert second["total"] == 1
        assert db.call_count == 1
        assert catalog.cache_info()["entries"] == 1

    def test_invalidate(self, db):
        catalog.search_catalog({"search": "enfant"})
        catalog.invalidate_cache()
        assert catalog.search_catalog({"search": "enfant"})["cached"] is False
        assert db.call_count == 2

    def test_availability_filter_bypasses_cache(self, db):
        catalog.search_catalog({"availability": "available"})
        result = catalog.search_catalog({"availability": "available"})
        assert result["cached"] is False
        assert result["data"][0]["availability_status"] == "disponible"
        assert catalog.cache_info()["entries"] == 0

    def test_level_filter_skips_books(self, db):
        catalog.search_catalog({"type": "books", "level": "Master"})
        assert db.call_count == 0

    def test_expired_entry_dropped(self, db, monkeypatch):
        catalog.search_catalog({"search": "enfant"})
        monkeypatch.setattr(catalog.time, "monotonic", lambda: 10 ** 12)
        assert catalog.search_catalog({"search": "enfant"})["cached"] is False
