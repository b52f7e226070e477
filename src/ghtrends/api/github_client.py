import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, List, Optional

import aiohttp
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

logger = logging.getLogger(__name__)

GITHUB_API_BASE = "https://api.github.com"

# Fixed pause before every retry and after a first-try success. The search API
# allows 30 authenticated requests per minute.
DEFAULT_DELAY_SECONDS = 2.1
MAX_ATTEMPTS = 5
RATE_LIMIT_BACKOFF_SECONDS = 2.0
TRANSPORT_BACKOFF_SECONDS = 1.0

MAX_PER_PAGE = 100
# GitHub never serves more than this many results for one query, whatever the page.
SEARCH_RESULT_CAP = 1000


class SearchQuery(BaseModel):
    created_from: date
    created_to: date
    stars_min: int = Field(ge=0)
    stars_max: Optional[int] = None
    pushed_after: Optional[date] = None
    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=MAX_PER_PAGE, ge=1, le=MAX_PER_PAGE)

    @property
    def max_page(self) -> int:
        """Last page the API will serve at this page size."""
        return SEARCH_RESULT_CAP // self.per_page

    def expression(self) -> str:
        return build_search_query(self)


class Owner(BaseModel):
    login: str
    type: Optional[str] = None


class RepoItem(BaseModel):
    id: int
    full_name: str
    html_url: str
    url: str
    owner: Owner
    description: Optional[str] = None
    language: Optional[str] = None
    fork: bool = False
    archived: bool = False
    created_at: Optional[datetime] = None
    pushed_at: Optional[datetime] = None
    stargazers_count: int = 0
    forks_count: int = 0
    open_issues_count: int = 0


class SearchPage(BaseModel):
    total_count: int
    incomplete_results: bool = False
    items: List[RepoItem]


def build_search_query(query: SearchQuery) -> str:
    """Render the `q` expression for /search/repositories."""
    parts = [f"created:{query.created_from.isoformat()}..{query.created_to.isoformat()}"]
    if query.stars_max is not None:
        parts.append(f"stars:{query.stars_min}..{query.stars_max}")
    else:
        parts.append(f"stars:>={query.stars_min}")
    if query.pushed_after is not None:
        parts.append(f"pushed:>{query.pushed_after.isoformat()}")
    parts.append("is:public")
    parts.append("archived:false")
    return " ".join(parts)


class SearchError(Exception):
    """Base class for search client failures."""


class SearchAPIError(SearchError):
    """Non-retryable error status from GitHub."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        super().__init__(f"GitHub API error {status}: {body}")


class RateLimitedError(SearchError):
    """403/429 from GitHub, optionally with a Retry-After hint."""

    def __init__(self, status: int, retry_after: float | None = None):
        self.status = status
        self.retry_after = retry_after
        hint = f" Retry after {retry_after:g} seconds." if retry_after is not None else ""
        super().__init__(f"GitHub rate limit hit (HTTP {status}).{hint}")


RETRYABLE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, RateLimitedError)


def parse_retry_after(value: str | None) -> float | None:
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        logger.error(f"Could not parse Retry-After header: {value}")
        return None
    return max(seconds, 0.0)


class RequestPhase(str, Enum):
    PENDING = "pending"
    BACKING_OFF = "backing_off"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RequestTracker:
    """Explicit retry state for a single search request."""

    phase: RequestPhase = RequestPhase.PENDING
    attempt: int = 0
    last_delay: float | None = None
    last_error: str | None = None

    def start_attempt(self, number: int) -> None:
        self.attempt = number
        self.phase = RequestPhase.PENDING

    def back_off(self, delay: float, error: BaseException | None) -> None:
        self.phase = RequestPhase.BACKING_OFF
        self.last_delay = delay
        self.last_error = str(error) if error else None

    def succeed(self) -> None:
        self.phase = RequestPhase.SUCCEEDED

    def fail(self, error: BaseException) -> None:
        self.phase = RequestPhase.FAILED
        self.last_error = str(error)


class GithubSearchClient:
    """Minimal async wrapper around GitHub's repository search."""

    def __init__(
        self,
        token: str,
        *,
        api_base: str = GITHUB_API_BASE,
        delay_seconds: float = DEFAULT_DELAY_SECONDS,
        max_attempts: int = MAX_ATTEMPTS,
        rate_limit_backoff: float = RATE_LIMIT_BACKOFF_SECONDS,
        transport_backoff: float = TRANSPORT_BACKOFF_SECONDS,
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        self._endpoint = f"{api_base.rstrip('/')}/search/repositories"
        self._delay = delay_seconds
        self._max_attempts = max_attempts
        self._rate_limit_backoff = rate_limit_backoff
        self._transport_backoff = transport_backoff
        self._timeout = timeout
        self._sleep = sleep
        self._session = session
        self._owns_session = session is None
        self.last_request: RequestTracker | None = None

    async def __aenter__(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers=self._headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self

    async def __aexit__(self, *exc):
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    def _wait(self, retry_state: RetryCallState) -> float:
        """Retry-After when GitHub sends it, otherwise exponential backoff."""
        exception = retry_state.outcome.exception()
        failed_attempt = retry_state.attempt_number - 1
        if isinstance(exception, RateLimitedError):
            if exception.retry_after is not None:
                return exception.retry_after
            return self._rate_limit_backoff * 2**failed_attempt
        return self._transport_backoff * 2 ** (failed_attempt + 1)

    async def search(self, query: SearchQuery) -> SearchPage:
        """Fetch one page of results, retrying rate limits and transport errors."""
        tracker = RequestTracker()
        self.last_request = tracker

        def before_sleep(retry_state: RetryCallState) -> None:
            wait_time = retry_state.next_action.sleep
            exception = retry_state.outcome.exception()
            tracker.back_off(wait_time, exception)
            logger.warning(
                f"Retrying attempt {retry_state.attempt_number}/{self._max_attempts} "
                f"after exception {exception}. Waiting {wait_time:.2f}s."
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    tracker.start_attempt(number)
                    if number > 1:
                        await self._sleep(self._delay)
                    page = await self._fetch(query)
        except Exception as exc:
            tracker.fail(exc)
            raise

        tracker.succeed()
        if tracker.attempt == 1:
            await self._sleep(self._delay)
        return page

    async def _fetch(self, query: SearchQuery) -> SearchPage:
        if self._session is None:
            raise RuntimeError("GithubSearchClient must be used as an async context manager")

        params = {
            "q": query.expression(),
            "sort": "stars",
            "order": "desc",
            "per_page": str(query.per_page),
            "page": str(query.page),
        }
        logger.debug(f"Searching '{params['q']}' page {query.page}")

        async with self._session.get(self._endpoint, params=params, headers=self._headers) as resp:
            if resp.status in (403, 429):
                raise RateLimitedError(
                    resp.status, parse_retry_after(resp.headers.get("Retry-After"))
                )
            if not 200 <= resp.status < 300:
                raise SearchAPIError(resp.status, await resp.text())
            data: dict[str, Any] = await resp.json()

        return SearchPage.model_validate(data)
