from __future__ import annotations

from typing import Optional, Tuple


def page_window(
    page: Optional[int], limit: Optional[int], *, default_limit: int, max_limit: int
) -> Tuple[int, int, int]:
    """Normalize 1-based ``page``/``limit`` query values into ``(page, limit, offset)``.

    Missing or non-positive values fall back to page 1 and ``default_limit``;
    ``limit`` is clamped to ``max_limit``.
    """

    page = page if page and page > 0 else 1
    limit = limit if limit and limit > 0 else default_limit
    limit = min(limit, max_limit)
    return page, limit, (page - 1) * limit
