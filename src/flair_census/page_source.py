"""Paginated member flair listing.

A page source turns an opaque cursor into one page of (identifier, label)
members plus the cursor of the next page. The Reddit implementation reads
the moderator flair list:

    GET {api_base}/r/{community}/api/flairlist.json?limit=1000&after={cursor}

Response shape: {"users": [{"user": ..., "flair_text": ...}], "next": ...}
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from flair_census.config import Settings

logger = structlog.get_logger()

DEFAULT_PAGE_SIZE = 1000

RETRYABLE_ERRORS = (
    aiohttp.ServerDisconnectedError,
    asyncio.TimeoutError,
    ConnectionError,
)

RETRYABLE_HTTP_STATUSES = {429, 502, 503, 504}


class PageSourceError(Exception):
    """A page could not be obtained; fatal to the scan generation."""


class TransportError(PageSourceError):
    """The page request itself failed."""


class ShapeError(PageSourceError):
    """The page response did not have the expected structure."""


@dataclass
class Member:
    identifier: str | None
    label: str | None


@dataclass
class Page:
    members: list[Member]
    next: str | None = None


class PageSource(Protocol):
    async def fetch_page(self, cursor: str | None, limit: int = DEFAULT_PAGE_SIZE) -> Page: ...


def parse_flair_page(data: Any) -> Page:
    """Validate a raw flairlist response and convert it to a Page."""
    if not isinstance(data, Mapping):
        raise ShapeError("Invalid flair list response: expected an object")
    users = data.get("users")
    if not isinstance(users, list):
        raise ShapeError("Invalid flair list response: missing users list")

    members = []
    for raw in users:
        if not isinstance(raw, Mapping):
            raise ShapeError("Invalid flair list response: user entry is not an object")
        members.append(Member(identifier=raw.get("user"), label=raw.get("flair_text")))

    return Page(members=members, next=data.get("next") or None)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, RETRYABLE_ERRORS):
        return True
    if isinstance(exc, aiohttp.ClientResponseError) and exc.status in RETRYABLE_HTTP_STATUSES:
        return True
    return False


def _before_retry_log(retry_state: RetryCallState) -> None:
    logger.warning(
        "retrying_request",
        attempt=retry_state.attempt_number,
        exception=str(retry_state.outcome.exception()) if retry_state.outcome else None,
    )


def open_session(settings: Settings) -> aiohttp.ClientSession:
    headers = {"User-Agent": settings.user_agent}
    if settings.access_token:
        headers["Authorization"] = f"bearer {settings.access_token}"
    timeout = aiohttp.ClientTimeout(total=settings.request_timeout_seconds)
    return aiohttp.ClientSession(headers=headers, timeout=timeout, trust_env=True)


class RedditFlairSource:
    """Page source over a community's flair list."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        community: str,
        settings: Settings,
    ) -> None:
        self._session = session
        self._community = community
        self._url = f"{settings.api_base.rstrip('/')}/r/{community}/api/flairlist.json"

    async def fetch_page(self, cursor: str | None, limit: int = DEFAULT_PAGE_SIZE) -> Page:
        params = {"limit": str(limit), "raw_json": "1"}
        if cursor:
            params["after"] = cursor
        try:
            data = await self._get_json(params)
        except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError) as exc:
            raise TransportError(
                f"Flair list request failed for r/{self._community}: {str(exc) or type(exc).__name__}"
            ) from exc
        except ValueError as exc:
            raise ShapeError(f"Flair list response is not valid JSON: {exc}") from exc
        return parse_flair_page(data)

    @retry(
        retry=retry_if_exception(_is_retryable),
        wait=wait_exponential_jitter(initial=0.5, max=4, jitter=0.5),
        stop=stop_after_attempt(3),
        before_sleep=_before_retry_log,
        reraise=True,
    )
    async def _get_json(self, params: dict[str, str]) -> Any:
        async with self._session.get(self._url, params=params) as resp:
            resp.raise_for_status()
            return await resp.json(content_type=None)
