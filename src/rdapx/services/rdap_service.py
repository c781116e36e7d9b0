"""
RDAP (Registration Data Access Protocol) fetcher.
Handles HTTPS requests to RDAP servers, retries and referral chasing.
"""

import email.utils
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlsplit

import anyio
import httpx
import structlog

from ..config import Config
from ..exceptions import (
    CancelledLookupError,
    ClientRejectedError,
    MalformedResponseError,
    NetworkExhaustedError,
    ReferralLoopError,
)
from ..models.query_models import Query

logger = structlog.get_logger(__name__)

RDAP_MEDIA_TYPE = "application/rdap+json"


def create_http_client(config: Config) -> httpx.AsyncClient:
    """HTTP client with connection pooling. Each attempt is also capped as a whole in RDAPFetcher."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.rdap_timeout),
        limits=httpx.Limits(
            max_keepalive_connections=config.max_keepalive_connections,
            max_connections=config.max_connections,
        ),
        headers={
            "User-Agent": config.user_agent,
            "Accept": f"{RDAP_MEDIA_TYPE}, application/json",
        },
        follow_redirects=True,
    )


@dataclass(frozen=True)
class ReferralPolicy:
    """
    Decides which link in an RDAP response points at a more authoritative
    object on another service.

    A link is a referral when its "rel" is in relations, its "type" is in
    media_types, and its "href" is served from a different scheme/host/port
    than the response that contained it.
    """

    relations: frozenset[str] = frozenset({"related"})
    media_types: frozenset[str] = frozenset({RDAP_MEDIA_TYPE})

    @classmethod
    def from_config(cls, config: Config) -> "ReferralPolicy":
        return cls(relations=frozenset(r.lower() for r in config.referral_relations))

    def find_referral(self, payload: dict[str, Any], current_url: str) -> Optional[str]:
        links = payload.get("links")
        if not isinstance(links, list):
            return None

        current = urlsplit(current_url)
        for link in links:
            if not isinstance(link, dict):
                continue
            rel = str(link.get("rel", "")).lower()
            media_type = str(link.get("type", "")).split(";")[0].strip().lower()
            href = link.get("href")
            if rel not in self.relations or media_type not in self.media_types:
                continue
            if not isinstance(href, str) or not href.startswith(("http://", "https://")):
                continue
            target = urlsplit(href)
            if (target.scheme, target.netloc.lower()) == (current.scheme, current.netloc.lower()):
                continue
            return href
        return None


@dataclass
class FetchResult:
    """Final response of a fetch after any referrals."""

    payload: dict[str, Any]
    content: bytes
    url: str
    hops: int = 0


class _TransientError(Exception):
    """Failure worth retrying: timeout, transport error, 5xx or 429."""

    def __init__(self, message: str, rate_limited: bool = False, retry_after: Optional[float] = None):
        super().__init__(message)
        self.rate_limited = rate_limited
        self.retry_after = retry_after


@dataclass
class _RetryBudget:
    """Retries shared by every candidate and hop of one query."""

    retries: int
    base_delay: float
    max_delay: float
    used: int = field(default=0)

    def consume(self) -> bool:
        if self.used >= self.retries:
            return False
        self.used += 1
        return True

    def backoff(self) -> float:
        return min(self.base_delay * (2 ** max(self.used - 1, 0)), self.max_delay)


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """Parse a Retry-After header given as delta-seconds or an HTTP-date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when is None:
        return None
    now = time.time() if now is None else now
    return max(when.timestamp() - now, 0.0)


def _error_detail(response: httpx.Response) -> str:
    """Summarize an RDAP error body (RFC 9083 section 6) if there is one."""
    try:
        body = response.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    parts = [str(body["title"])] if body.get("title") else []
    description = body.get("description")
    if isinstance(description, list):
        parts.extend(str(line) for line in description)
    return "; ".join(parts)


class RDAPFetcher:
    """Asynchronous RDAP fetcher with bounded retries and referral following."""

    def __init__(
        self,
        config: Config,
        http_client: httpx.AsyncClient,
        referral_policy: Optional[ReferralPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
    ):
        self.config = config
        self._http_client = http_client
        self.referral_policy = referral_policy or ReferralPolicy.from_config(config)
        self._sleep = sleep

    async def fetch(
        self,
        query: Query,
        candidate_urls: list[str],
        cancel_event: Optional[anyio.Event] = None,
    ) -> FetchResult:
        """
        Fetch query from the first responsive candidate and follow referrals.

        Raises a LookupFailedError subclass when the query cannot be resolved.
        """
        if not candidate_urls:
            raise ValueError("candidate_urls must not be empty")

        budget = _RetryBudget(
            retries=self.config.max_retries,
            base_delay=self.config.retry_delay,
            max_delay=self.config.max_retry_delay,
        )
        targets = [f"{base.rstrip('/')}/{query.rdap_path}" for base in candidate_urls]
        hops = 0

        while True:
            result = await self._fetch_hop(query, targets, budget, cancel_event)
            referral = self.referral_policy.find_referral(result.payload, result.url)
            if referral is None:
                result.hops = hops
                logger.info(
                    "RDAP lookup completed",
                    query=query.cache_key,
                    server=result.url,
                    hops=hops,
                    retries=budget.used,
                )
                return result

            if hops >= self.config.max_referral_hops:
                raise ReferralLoopError(
                    f"Referral chain for {query.canonical_value} exceeded "
                    f"{self.config.max_referral_hops} hops (last referral {referral})",
                    details={"hops": hops, "referral": referral},
                )

            hops += 1
            logger.debug("Following RDAP referral", query=query.cache_key, referral=referral, hop=hops)
            targets = [referral]

    async def _fetch_hop(
        self,
        query: Query,
        targets: list[str],
        budget: _RetryBudget,
        cancel_event: Optional[anyio.Event],
    ) -> FetchResult:
        attempt = 0
        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise CancelledLookupError(f"Lookup of {query.canonical_value} cancelled")

            url = targets[attempt % len(targets)]
            attempt += 1
            try:
                return await self._query_rdap_server(url)
            except _TransientError as e:
                if not budget.consume():
                    reason = "rate limited by server" if e.rate_limited else "transient errors"
                    raise NetworkExhaustedError(
                        f"Retry budget exhausted after {budget.used + 1} attempts "
                        f"({reason}); last error: {e}",
                        attempts=budget.used + 1,
                        rate_limited=e.rate_limited,
                        details={"url": url},
                    ) from e

                # next candidate right away; wait only once all were tried
                if e.retry_after is not None:
                    delay = min(e.retry_after, self.config.max_retry_delay)
                elif attempt % len(targets) == 0:
                    delay = budget.backoff()
                else:
                    delay = 0.0

                logger.warning(
                    "RDAP attempt failed, retrying",
                    query=query.cache_key,
                    url=url,
                    error=str(e),
                    rate_limited=e.rate_limited,
                    delay=delay,
                    retries_left=budget.retries - budget.used,
                )
                if delay > 0:
                    await self._wait(delay, cancel_event)

    async def _wait(self, delay: float, cancel_event: Optional[anyio.Event]) -> None:
        """Sleep for delay, returning early if cancel_event is set."""
        if cancel_event is None:
            await self._sleep(delay)
            return

        async def wake_on_cancel() -> None:
            await cancel_event.wait()
            tg.cancel_scope.cancel()

        async with anyio.create_task_group() as tg:
            tg.start_soon(wake_on_cancel)
            await self._sleep(delay)
            tg.cancel_scope.cancel()

    async def _query_rdap_server(self, url: str) -> FetchResult:
        """Query one RDAP URL and return the parsed response."""
        try:
            with anyio.fail_after(self.config.rdap_timeout):
                response = await self._http_client.get(url)
        except (httpx.TimeoutException, TimeoutError) as te:
            raise _TransientError(f"RDAP query timeout for {url}") from te
        except httpx.TooManyRedirects as e:
            raise ClientRejectedError(f"Too many redirects for {url}", url=url) from e
        except httpx.DecodingError as e:
            raise MalformedResponseError(
                f"Undecodable response body from {url}: {e}", details={"url": url}
            ) from e
        except httpx.HTTPError as e:
            raise _TransientError(f"RDAP connection error for {url}: {e!r}") from e

        # Log redirect information if any
        if response.history:
            logger.debug(
                "RDAP request redirected",
                original_url=url,
                final_url=str(response.url),
                redirect_count=len(response.history),
            )

        status = response.status_code
        if status == 429:
            raise _TransientError(
                f"RDAP server rate limited request to {url}",
                rate_limited=True,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
            )
        if status >= 500:
            raise _TransientError(f"RDAP server error {status} for {url}")
        if not 200 <= status < 300:
            detail = _error_detail(response)
            raise ClientRejectedError(
                f"RDAP server returned {status} for {url}" + (f": {detail}" if detail else ""),
                status_code=status,
                url=url,
            )

        content = response.content
        try:
            payload = json.loads(content)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedResponseError(
                f"Invalid JSON response from {url}: {e}", details={"url": url}
            ) from e

        if not isinstance(payload, dict) or not isinstance(payload.get("objectClassName"), str):
            raise MalformedResponseError(
                f"Response from {url} is not an RDAP object", details={"url": url}
            )

        logger.debug("RDAP query successful", url=url, response_size=len(content))
        return FetchResult(payload=payload, content=content, url=str(response.url))
