"""
Sequential pagination over an offset/limit page-fetch callable.

Pages are requested one at a time in increasing offset order, so the
concatenated result has a stable order and the remote API never sees bursts.
"""

from typing import Any, Awaitable, Callable, List, Optional, Union
from recordexport.core.config import settings
from recordexport.core.logging_config import logger
from recordexport.schemas.export import PageResult, PaginationResult

PageFetch = Callable[[int, int], Awaitable[Union[PageResult, dict]]]
ProgressCallback = Callable[[int, Optional[int]], None]
StopCondition = Callable[[List[Any], List[Any]], bool]

# Safety ceiling against providers that never return a short page
MAX_PAGES = 1000


def coerce_page(page: Union[PageResult, dict, list]) -> PageResult:
    """Accept a PageResult, a {data, total} dict or a bare list of records"""
    if isinstance(page, PageResult):
        return page
    if isinstance(page, list):
        return PageResult(data=page)
    return PageResult(data=page.get("data") or [], total=page.get("total"))


async def fetch_all_pages(
    fetch_page: PageFetch,
    limit: Optional[int] = None,
    offset: int = 0,
    max_records: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
    should_stop: Optional[StopCondition] = None,
    page_size_ceiling: Optional[int] = None,
) -> PaginationResult:
    """
    Fetch pages until the source is exhausted or max_records is reached.

    Args:
        fetch_page: async (offset, limit) -> page with data and optional total
        limit: Requested records per page, capped at the platform ceiling
        offset: Starting offset
        max_records: Maximum total records to collect
        on_progress: Called with (loaded, total) after every page
        should_stop: Called with (all_results, current_page); True stops fetching
        page_size_ceiling: Override of the per-request ceiling (defaults to MAX_PAGE_SIZE)

    Returns:
        PaginationResult with concatenated data, page count and hasMore flag
    """
    ceiling = page_size_ceiling or settings.MAX_PAGE_SIZE
    page_limit = min(limit or settings.DEFAULT_PAGE_SIZE, ceiling)
    if page_limit <= 0:
        raise ValueError(f"Page limit must be positive, got {page_limit}")

    results: List[Any] = []
    current_offset = offset
    total_records: Optional[int] = None
    pages = 0
    has_more = True

    logger.debug(
        f"Starting paginated fetch: limit={page_limit}, offset={offset}, max_records={max_records}"
    )

    while has_more:
        effective_limit = page_limit
        if max_records is not None:
            effective_limit = min(page_limit, max_records - len(results))
        if effective_limit <= 0:
            logger.debug(f"Reached max records limit ({max_records})")
            break

        if pages >= MAX_PAGES:
            logger.warning(f"Reached maximum page limit ({MAX_PAGES}), stopping fetch")
            break

        logger.debug(f"Fetching page {pages + 1}: offset={current_offset}, limit={effective_limit}")
        try:
            page = coerce_page(await fetch_page(current_offset, effective_limit))
        except Exception as e:
            logger.error(
                f"Error during paginated fetch at offset={current_offset}, page={pages + 1}: {str(e)}"
            )
            raise
        pages += 1

        if not page.data:
            has_more = False
            break

        results.extend(page.data)
        if page.total is not None:
            total_records = page.total

        if on_progress:
            on_progress(len(results), total_records)

        if should_stop and should_stop(results, page.data):
            logger.debug(f"Stop condition met after {len(results)} records")
            has_more = False
            break

        has_more = len(page.data) >= effective_limit
        current_offset += len(page.data)

    if has_more and max_records is not None and len(results) >= max_records:
        # Stopped on max_records; more may exist unless the reported total says otherwise
        has_more = total_records is None or len(results) < total_records

    result = PaginationResult(
        data=results,
        total=total_records if total_records is not None else len(results),
        pages=pages,
        has_more=has_more,
        last_offset=current_offset,
    )
    logger.debug(
        f"Paginated fetch completed: fetched={len(results)}, pages={pages}, has_more={result.has_more}"
    )
    return result
