"""Fetch and validate the redirect rule set from the upstream rule source.

The upstream answers either with the whole list in one document, or with a
paginated collection carrying ``meta.pagination.pageCount``. Either way the
fetch is all-or-nothing: a single bad page discards everything read so far.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import httpx

from reroute.config import RedirectConfig
from reroute.errors import UpstreamError, UpstreamErrorKind, ValidationError
from reroute.rules import RedirectRule, RuleSet
from reroute.shapes import EntryShape, shape_from_name

LOG = logging.getLogger("reroute.fetcher")

PAGE_PARAM = "pagination[page]"
PAGE_SIZE_PARAM = "pagination[pageSize]"
ERROR_BODY_LOG_LIMIT = 500


@dataclass(frozen=True)
class SkippedEntry:
    index: int
    reason: str


@dataclass(frozen=True)
class UpstreamPage:
    rules: tuple[RedirectRule, ...]
    skipped: tuple[SkippedEntry, ...]
    page_count: Optional[int] = None


@dataclass(frozen=True)
class PageOk:
    page: UpstreamPage


@dataclass(frozen=True)
class PageErr:
    kind: UpstreamErrorKind
    message: str


PageResult = Union[PageOk, PageErr]


def page_count_of(payload: dict) -> Optional[int]:
    """Return ``meta.pagination.pageCount`` when present and usable."""
    meta = payload.get("meta")
    if not isinstance(meta, dict):
        return None
    pagination = meta.get("pagination")
    if not isinstance(pagination, dict):
        return None
    count = pagination.get("pageCount")
    if isinstance(count, bool) or not isinstance(count, int) or count < 1:
        return None
    return count


def validate_page(payload: Any, shape: EntryShape) -> PageResult:
    """Check one decoded page and adapt its entries.

    Structural problems make the page an error. Bad individual entries are
    recorded as skipped and the rest of the page is kept.
    """
    if not isinstance(payload, dict):
        return PageErr(UpstreamErrorKind.MISSING_DATA, "response is not a JSON object")
    entries = payload.get("data")
    if not isinstance(entries, list):
        return PageErr(UpstreamErrorKind.MISSING_DATA, "response has no 'data' list")

    rules = []
    skipped = []
    for index, entry in enumerate(entries):
        try:
            rules.append(shape.parse(entry))
        except ValidationError as e:
            skipped.append(SkippedEntry(index, str(e)))
    return PageOk(UpstreamPage(tuple(rules), tuple(skipped), page_count_of(payload)))


class UpstreamFetcher:
    def __init__(
        self,
        config: RedirectConfig,
        client: httpx.AsyncClient,
        *,
        shape: Optional[EntryShape] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.client = client
        self.shape = shape or shape_from_name(config.entry_shape)
        self.clock = clock

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.upstream_host:
            headers["Host"] = self.config.upstream_host
        return headers

    def _params(self, page: int) -> Optional[dict[str, int]]:
        if not self.config.paginated:
            return None
        return {PAGE_PARAM: page, PAGE_SIZE_PARAM: self.config.page_size}

    async def fetch_rule_set(self) -> RuleSet:
        """Fetch every page and build a fresh RuleSet, or raise UpstreamError."""
        try:
            return await asyncio.wait_for(self._fetch_all(), timeout=self.config.fetch_timeout)
        except asyncio.TimeoutError:
            raise UpstreamError(
                UpstreamErrorKind.TIMEOUT,
                f"rule fetch took longer than {self.config.fetch_timeout}s",
            ) from None

    async def _fetch_all(self) -> RuleSet:
        rules: list[RedirectRule] = []
        skipped = 0
        page = 1
        while True:
            payload = await self._get_page(page)
            result = validate_page(payload, self.shape)
            if isinstance(result, PageErr):
                raise UpstreamError(result.kind, f"page {page}: {result.message}")
            rules.extend(result.page.rules)
            skipped += len(result.page.skipped)
            for entry in result.page.skipped:
                LOG.debug("Skipping entry page=%s index=%s reason=%s", page, entry.index, entry.reason)

            page_count = result.page.page_count
            if not self.config.paginated or page_count is None:
                LOG.debug("No pagination info, treating response as a single page")
                break
            if page_count > self.config.max_pages:
                raise UpstreamError(
                    UpstreamErrorKind.PAGE_LIMIT,
                    f"upstream reports {page_count} pages, limit is {self.config.max_pages}",
                )
            LOG.debug("Fetched page %s of %s", page, page_count)
            if page >= page_count:
                break
            page += 1

        rule_set = RuleSet.from_rules(
            rules,
            fetched_at=self.clock(),
            ttl=self.config.cache_ttl,
            skipped=skipped,
            pages=page,
        )
        LOG.info(
            "Loaded redirects rules=%s skipped=%s pages=%s url=%s",
            len(rule_set),
            skipped,
            page,
            self.config.upstream_url,
        )
        return rule_set

    async def _get_page(self, page: int) -> Any:
        url = self.config.upstream_url
        LOG.debug("Fetching redirects url=%s page=%s", url, page)
        try:
            response = await self.client.get(
                url,
                params=self._params(page),
                headers=self._headers(),
                timeout=self.config.fetch_timeout,
            )
        except httpx.TimeoutException as e:
            raise UpstreamError(UpstreamErrorKind.TIMEOUT, f"{url}: {e!r}") from e
        except httpx.HTTPError as e:
            raise UpstreamError(UpstreamErrorKind.NETWORK, f"{url}: {e!r}") from e

        if not response.is_success:
            LOG.error(
                "Upstream error url=%s status=%s body=%s",
                response.url,
                response.status_code,
                response.text[:ERROR_BODY_LOG_LIMIT],
            )
            raise UpstreamError(
                UpstreamErrorKind.STATUS,
                f"{response.url} returned {response.status_code}",
            )
        try:
            return response.json()
        except ValueError as e:
            raise UpstreamError(UpstreamErrorKind.MALFORMED_JSON, f"{response.url}: {e}") from e
