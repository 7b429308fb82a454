"""
Tests for store.py - keyed store contract and pagination.
"""

import pytest

from kvsweep.database import Base
from kvsweep.errors import ParseError, TransientIOError
from kvsweep.store import ListResult, fetch_page


class TestBasicOperations:
    """get/put/delete on the SQLite store."""

    def test_get_missing_key_returns_none(self, store):
        assert store.get("subscriber:nobody@example.com") is None

    def test_put_then_get(self, store):
        store.put("subscriber:a@example.com", '{"ipAddress": "1.2.3.4"}')
        assert store.get("subscriber:a@example.com") == '{"ipAddress": "1.2.3.4"}'

    def test_put_overwrites(self, store):
        store.put("captcha:1", "old")
        store.put("captcha:1", "new")
        assert store.get("captcha:1") == "new"

    def test_delete(self, store):
        store.put("captcha:1", "x")
        store.delete("captcha:1")
        assert store.get("captcha:1") is None

    def test_delete_missing_key_is_noop(self, store):
        store.delete("captcha:does-not-exist")

    def test_broken_database_raises_transient_error(self, store):
        """SQLAlchemy failures surface as TransientIOError."""
        Base.metadata.drop_all(store._engine)

        with pytest.raises(TransientIOError):
            store.get("captcha:1")


class TestListing:
    """Prefix-scoped, cursor-based enumeration."""

    def test_list_is_prefix_scoped_and_ordered(self, store):
        for key in ["captcha:b", "ratelimit:1", "captcha:a", "captchas:x"]:
            store.put(key, "{}")

        result = store.list(prefix="captcha:", limit=10)

        assert result.keys == ["captcha:a", "captcha:b"]
        assert result.list_complete is True
        assert result.cursor is None

    def test_list_escapes_like_wildcards(self, store):
        store.put("rate_limit:1", "{}")
        store.put("ratexlimit:1", "{}")
        store.put("rate%:1", "{}")

        assert store.list(prefix="rate_limit:").keys == ["rate_limit:1"]
        assert store.list(prefix="rate%").keys == ["rate%:1"]

    def test_pagination_visits_every_key_once(self, store):
        expected = [f"subscriber:{i:03d}@example.com" for i in range(12)]
        for key in expected:
            store.put(key, "{}")

        seen = []
        cursor = None
        pages = 0
        while True:
            result = store.list(prefix="subscriber:", limit=5, cursor=cursor)
            seen.extend(result.keys)
            pages += 1
            if result.list_complete:
                break
            cursor = result.cursor

        assert seen == expected
        assert pages == 3

    def test_exact_multiple_of_limit_reports_complete_on_last_full_page(self, store):
        for i in range(10):
            store.put(f"captcha:{i}", "{}")

        first = store.list(prefix="captcha:", limit=5)
        second = store.list(prefix="captcha:", limit=5, cursor=first.cursor)

        assert first.list_complete is False
        assert second.list_complete is True
        assert len(second.keys) == 5

    def test_cursor_survives_deletion_of_listed_keys(self, store):
        """Deleting keys already handed out does not shift the next page."""
        for i in range(10):
            store.put(f"ratelimit:{i}", "{}")

        first = store.list(prefix="ratelimit:", limit=5)
        for key in first.keys:
            store.delete(key)
        second = store.list(prefix="ratelimit:", limit=5, cursor=first.cursor)

        assert second.keys == [f"ratelimit:{i}" for i in range(5, 10)]

    def test_invalid_cursor_rejected(self, store):
        with pytest.raises(ParseError):
            store.list(prefix="captcha:", cursor="not base64!!")

    def test_non_string_cursor_rejected(self, store):
        with pytest.raises(ParseError):
            store.list(prefix="captcha:", cursor=123)

    def test_non_positive_limit_rejected(self, store):
        with pytest.raises(ValueError):
            store.list(prefix="captcha:", limit=0)


class TestFetchPage:
    """fetch_page normalizes ListResult into a Page."""

    def test_exhausted_page_has_no_cursor(self, store):
        store.put("contact:1", "{}")

        page = fetch_page(store, "contact:", 20, None)

        assert page.keys == ["contact:1"]
        assert page.exhausted is True
        assert page.cursor_for_next_page is None

    def test_empty_prefix_is_exhausted(self, store):
        page = fetch_page(store, "contact:", 20, None)

        assert page.keys == []
        assert page.exhausted is True

    def test_none_result_treated_as_exhausted(self):
        class NullStore:
            def list(self, prefix="", limit=1000, cursor=None):
                return None

        page = fetch_page(NullStore(), "contact:", 20, None)

        assert page.exhausted is True
        assert page.keys == []

    def test_cursor_dropped_once_complete(self):
        class StaleCursorStore:
            def list(self, prefix="", limit=1000, cursor=None):
                return ListResult(keys=["a"], cursor="leftover", list_complete=True)

        page = fetch_page(StaleCursorStore(), "", 20, None)

        assert page.cursor_for_next_page is None
