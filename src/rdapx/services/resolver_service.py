"""
Resolution of a single query through cache, bootstrap registry and fetcher.
"""

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import anyio
import httpx
import structlog

from ..config import Config
from ..exceptions import (
    CancelledLookupError,
    ErrorKind,
    LookupFailedError,
    RegistryLoadFailedError,
)
from ..models import Failure, Query, ResolutionResult, ResultSource, Success
from ..utils.validators import classify
from .bootstrap_service import BootstrapRegistry
from .cache_service import CacheRecord, TTLCache
from .rdap_service import RDAPFetcher, create_http_client

logger = structlog.get_logger(__name__)

# Failures that are a definitive answer for the key and may be negatively cached.
CACHEABLE_FAILURES = frozenset(
    {
        ErrorKind.NO_AUTHORITY_FOUND,
        ErrorKind.CLIENT_REJECTED,
        ErrorKind.MALFORMED_RESPONSE,
        ErrorKind.REFERRAL_LOOP_OR_TOO_DEEP,
    }
)


@dataclass
class ResolutionContext:
    """Everything a resolution needs, constructed once and passed in."""

    config: Config
    registry: BootstrapRegistry
    cache: TTLCache
    fetcher: RDAPFetcher
    http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    @asynccontextmanager
    async def open(cls, config: Config) -> AsyncIterator["ResolutionContext"]:
        """Build a context with a shared HTTP client and close it on exit."""
        config.validate()
        async with create_http_client(config) as client:
            yield cls(
                config=config,
                registry=BootstrapRegistry(config, client),
                cache=TTLCache.from_config(config),
                fetcher=RDAPFetcher(config, client),
                http_client=client,
            )


@dataclass(frozen=True)
class _Resolved:
    """Outcome shared by every requester of one cache key."""

    outcome: Success | Failure
    source: ResultSource
    hops: int = 0


class Resolver:
    """Resolves one raw input to exactly one ResolutionResult."""

    def __init__(self, context: ResolutionContext):
        self.context = context
        self.network_fetches = 0

    async def resolve(
        self,
        raw: str,
        limiter: anyio.CapacityLimiter,
        cancel_event: Optional[anyio.Event] = None,
    ) -> ResolutionResult:
        """
        Resolve raw. Per-query errors, including unexpected ones, become
        Failure outcomes; RegistryLoadFailedError propagates.
        """
        try:
            query = classify(raw)
        except LookupFailedError as e:
            return ResolutionResult(
                raw_input=raw,
                query=None,
                outcome=Failure(kind=e.kind, detail=e.message),
                source=ResultSource.NETWORK,
            )

        try:
            resolved = await self.context.cache.singleflight(
                query.cache_key, lambda: self._lead(query, limiter, cancel_event)
            )
        except RegistryLoadFailedError:
            raise
        except Exception as e:
            # unclassified errors fail this query only
            logger.exception("Unexpected error resolving query", key=query.cache_key)
            resolved = _Resolved(
                outcome=Failure(kind=ErrorKind.INTERNAL_ERROR, detail=f"{type(e).__name__}: {e}"),
                source=ResultSource.NETWORK,
            )
        return ResolutionResult(
            raw_input=raw,
            query=query,
            outcome=resolved.outcome,
            source=resolved.source,
            referral_hops=resolved.hops,
        )

    async def _lead(
        self,
        query: Query,
        limiter: anyio.CapacityLimiter,
        cancel_event: Optional[anyio.Event],
    ) -> _Resolved:
        config = self.context.config
        cache = self.context.cache
        key = query.cache_key

        if config.use_cache:
            record = await cache.get(key)
            if record is not None:
                try:
                    resolved = self._from_record(record)
                except ValueError as e:
                    logger.warning("Discarding unreadable cache record", key=key, error=str(e))
                    await cache.invalidate(key)
                else:
                    logger.debug("Cache hit", key=key)
                    return resolved

        try:
            if cancel_event is not None and cancel_event.is_set():
                raise CancelledLookupError(f"Lookup of {query.canonical_value} cancelled")
            candidate_urls = await self.context.registry.resolve_base(query)
            async with limiter:
                self.network_fetches += 1
                fetched = await self.context.fetcher.fetch(query, candidate_urls, cancel_event)
        except LookupFailedError as e:
            failure = Failure(kind=e.kind, detail=e.message)
            if config.use_cache and e.kind in CACHEABLE_FAILURES:
                await cache.put(
                    key,
                    e.message.encode("utf-8"),
                    config.negative_cache_ttl,
                    error_kind=e.kind.value,
                )
            logger.info("Lookup failed", key=key, kind=e.kind.value, detail=e.message)
            return _Resolved(outcome=failure, source=ResultSource.NETWORK)

        if config.use_cache:
            await cache.put(
                key, fetched.content, config.cache_ttl, url=fetched.url, hops=fetched.hops
            )
        return _Resolved(
            outcome=Success(payload=fetched.payload, server=fetched.url),
            source=ResultSource.NETWORK,
            hops=fetched.hops,
        )

    @staticmethod
    def _from_record(record: CacheRecord) -> _Resolved:
        if record.error_kind is not None:
            outcome: Success | Failure = Failure(
                kind=ErrorKind(record.error_kind),
                detail=record.payload.decode("utf-8", errors="replace"),
            )
        else:
            outcome = Success(payload=json.loads(record.payload), server=record.url)
        return _Resolved(outcome=outcome, source=ResultSource.CACHE, hops=record.hops)

