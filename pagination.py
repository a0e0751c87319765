"""
Page walker for GitLab collection endpoints.

GitLab reports pagination through X-Total-Pages / X-Total headers, but
those are omitted for large collections and can be wrong behind some
proxies. The walker therefore keeps going while either the headers promise
more pages or the last page came back full.
"""

import logging
from typing import Any, Callable, Dict, List

from gitlab_client import PageResult


logger = logging.getLogger(__name__)

PageFetcher = Callable[[int, int], PageResult]


def should_fetch_next_page(result: PageResult, page: int, per_page: int) -> bool:
    """
    Decide whether another page should be requested after ``page``.

    An empty page always stops the walk. Otherwise continue when the
    provider declares more pages than the current index, or when the page
    was full.
    """
    if not result.items:
        return False
    return result.total_pages > page or len(result.items) == per_page


def walk_pages(fetch_page: PageFetcher, per_page: int = 100,
               description: str = "items") -> List[Dict[str, Any]]:
    """
    Drain a paginated collection into a single ordered list.

    Args:
        fetch_page: Callable taking (page, per_page) and returning a PageResult
        per_page: Page size to request
        description: Label used in log messages

    Returns:
        All items in provider order. A failed request ends the walk and
        whatever was collected up to that point is returned, so callers
        must treat a short list as possibly incomplete.
    """
    all_items: List[Dict[str, Any]] = []
    page = 1

    while True:
        try:
            result = fetch_page(page, per_page)
        except Exception as e:
            logger.error(
                f"Failed to fetch page {page} of {description}: {e}. "
                f"Returning {len(all_items)} {description} collected so far"
            )
            return all_items

        all_items.extend(result.items)
        logger.debug(
            f"Retrieved {len(result.items)} {description} from page {page} "
            f"(total pages: {result.total_pages}, total items: {result.total_items})"
        )

        if not should_fetch_next_page(result, page, per_page):
            break

        page += 1

    logger.info(f"Total {description} fetched: {len(all_items)}")
    return all_items
