"""Cursor pagination over Stripe list endpoints."""

from typing import Awaitable, Callable, TypeVar

import structlog

from .models import Page

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _item_id(item: object) -> str:
    return getattr(item, "id")


async def fetch_all(
    fetch_page: Callable[[str | None], Awaitable[Page[T]]],
    cursor_of: Callable[[T], str] = _item_id,
    max_pages: int | None = None,
) -> list[T]:
    """Fetch every page of a listing.

    Pages are requested sequentially: each request uses the last item of the
    previous page as its ``starting_after`` cursor, until the provider
    reports no more pages.

    Args:
        fetch_page: Called with the cursor (None for the first page)
        cursor_of: Extracts the cursor from an item
        max_pages: Optional safety bound; exceeding it raises RuntimeError

    Returns:
        All items in provider order
    """
    items: list[T] = []
    cursor: str | None = None
    pages = 0

    while True:
        page = await fetch_page(cursor)
        pages += 1
        items.extend(page.data)

        if not page.has_more or not page.data:
            break
        if max_pages is not None and pages >= max_pages:
            raise RuntimeError(f"Pagination exceeded {max_pages} pages")

        cursor = cursor_of(page.data[-1])

    logger.debug("pagination_complete", pages=pages, items=len(items))
    return items
