"""
Unit tests for the page walker.
"""

from unittest.mock import Mock

from gitlab_client import GitLabAPIError, PageResult
from pagination import should_fetch_next_page, walk_pages


def make_pager(total_items, per_page=100, reported_total_pages=None):
    """Build a fetch_page callable serving ``total_items`` numbered items."""
    items = [{'id': i} for i in range(total_items)]

    def fetch_page(page, size):
        start = (page - 1) * size
        chunk = items[start:start + size]
        total_pages = reported_total_pages
        if total_pages is None:
            total_pages = -(-total_items // size)
        return PageResult(items=chunk, total_pages=total_pages, total_items=total_items)

    return Mock(side_effect=fetch_page)


class TestTerminationPolicy:
    """Test cases for the next-page decision."""

    def test_empty_page_always_stops(self):
        result = PageResult(items=[], total_pages=10)
        assert should_fetch_next_page(result, 1, 100) is False

    def test_declared_pages_continue(self):
        result = PageResult(items=[{'id': 1}], total_pages=3)
        assert should_fetch_next_page(result, 1, 100) is True

    def test_full_page_continues_without_metadata(self):
        result = PageResult(items=[{'id': i} for i in range(100)], total_pages=0)
        assert should_fetch_next_page(result, 5, 100) is True

    def test_short_last_page_stops(self):
        result = PageResult(items=[{'id': 1}], total_pages=3)
        assert should_fetch_next_page(result, 3, 100) is False


class TestWalkPages:
    """Test cases for draining a paginated collection."""

    def test_complete_with_correct_total_pages(self):
        """250 items, page size 100, total pages reported as 3."""
        fetch_page = make_pager(250)

        result = walk_pages(fetch_page, per_page=100)

        assert len(result) == 250
        assert [item['id'] for item in result] == list(range(250))
        assert fetch_page.call_count == 3

    def test_complete_with_misreported_total_pages(self):
        """Total pages reported as 0 still yields every item via the full-page fallback."""
        fetch_page = make_pager(250, reported_total_pages=0)

        result = walk_pages(fetch_page, per_page=100)

        assert len(result) == 250
        assert [item['id'] for item in result] == list(range(250))

    def test_exact_multiple_issues_one_trailing_request(self):
        fetch_page = make_pager(200, reported_total_pages=0)

        result = walk_pages(fetch_page, per_page=100)

        assert len(result) == 200
        assert fetch_page.call_count == 3

    def test_empty_collection(self):
        fetch_page = make_pager(0)

        assert walk_pages(fetch_page, per_page=100) == []
        fetch_page.assert_called_once_with(1, 100)

    def test_first_page_failure_returns_empty(self):
        fetch_page = Mock(side_effect=GitLabAPIError("boom"))

        assert walk_pages(fetch_page, per_page=100) == []

    def test_later_failure_returns_partial(self, caplog):
        served = make_pager(250)

        def flaky(page, size):
            if page == 3:
                raise GitLabAPIError("timeout")
            return served(page, size)

        result = walk_pages(flaky, per_page=100, description="merge requests")

        assert len(result) == 200
        assert "Returning 200 merge requests collected so far" in caplog.text
