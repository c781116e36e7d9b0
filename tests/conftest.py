"""Shared test fixtures for all tests."""

from __future__ import annotations

import json
from typing import Any

import anyio
import httpx
import pytest
import respx

from rdapx.config import Config
from rdapx.exceptions import CancelledLookupError
from rdapx.models import Query
from rdapx.services.bootstrap_service import BootstrapRegistry
from rdapx.services.cache_service import TTLCache
from rdapx.services.rdap_service import FetchResult, RDAPFetcher
from rdapx.services.resolver_service import ResolutionContext

APNIC = "https://rdap.apnic.net/"
ARIN = "https://rdap.arin.net/registry/"
VERISIGN = "https://rdap.verisign.com/com/v1/"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def config(tmp_path) -> Config:
    """Config with an isolated cache directory and no real waiting."""
    return Config(
        cache_directory=tmp_path / "cache",
        use_cache=True,
        cache_ttl=3600,
        negative_cache_ttl=0,
        rdap_timeout=5,
        max_concurrent_lookups=4,
        max_retries=3,
        retry_delay=0,
        max_retry_delay=0,
        max_referral_hops=3,
        referral_relations=("related",),
        bootstrap_base_url="https://data.iana.org/rdap/",
        log_level="WARNING",
    )


# ============================================================================
# Bootstrap Fixtures
# ============================================================================


@pytest.fixture
def bootstrap_documents() -> dict[str, dict[str, Any]]:
    """Trimmed-down IANA bootstrap documents."""
    return {
        "ipv4": {
            "version": "1.0",
            "services": [
                [["1.0.0.0/8", "27.0.0.0/8"], [APNIC, "http://rdap.apnic.net/"]],
                [["8.0.0.0/8", "104.0.0.0/6"], [ARIN]],
                [["1.1.1.0/24"], ["http://rdap.cloudflare.example", "https://rdap.cloudflare.example"]],
            ],
        },
        "ipv6": {
            "version": "1.0",
            "services": [
                [["2001:4800::/23"], [ARIN]],
                [["2400::/12"], [APNIC]],
            ],
        },
        "asn": {
            "version": "1.0",
            "services": [
                [["13312-18431", "393216-399260"], [ARIN]],
                [["13335"], ["https://rdap.cloudflare.example/"]],
                [["131072-141625"], [APNIC]],
            ],
        },
        "dns": {
            "version": "1.0",
            "services": [
                [["com", "net"], [VERISIGN]],
                [["uk"], ["https://rdap.nominet.uk/uk/"]],
                [["co.uk"], ["https://rdap.nominet.uk/co.uk/"]],
            ],
        },
    }


@pytest.fixture
def registry(bootstrap_documents, config) -> BootstrapRegistry:
    return BootstrapRegistry.from_documents(bootstrap_documents, config)


# ============================================================================
# HTTP Fixtures
# ============================================================================


@pytest.fixture
def rdap_mock():
    """respx router that fails on any unmocked request."""
    with respx.mock(assert_all_called=False) as router:
        yield router


def rdap_object(object_class: str = "ip network", **fields: Any) -> dict[str, Any]:
    payload = {"objectClassName": object_class, "rdapConformance": ["rdap_level_0"]}
    payload.update(fields)
    return payload


def referral_link(href: str, rel: str = "related") -> dict[str, Any]:
    return {"rel": rel, "type": "application/rdap+json", "href": href}


# ============================================================================
# Fakes
# ============================================================================


class FakeFetcher:
    """Stands in for RDAPFetcher; records calls and in-flight concurrency."""

    def __init__(self, delays: dict[str, float] | None = None, fail: dict[str, Exception] | None = None):
        self.delays = delays or {}
        self.fail = fail or {}
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch(
        self,
        query: Query,
        candidate_urls: list[str],
        cancel_event: anyio.Event | None = None,
    ) -> FetchResult:
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledLookupError(f"Lookup of {query.canonical_value} cancelled")

        self.calls.append(query.cache_key)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await anyio.sleep(self.delays.get(query.canonical_value, 0.01))
            if query.canonical_value in self.fail:
                raise self.fail[query.canonical_value]
            payload = rdap_object(handle=query.canonical_value)
            return FetchResult(
                payload=payload,
                content=json.dumps(payload).encode(),
                url=f"{candidate_urls[0]}{query.rdap_path}",
            )
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def make_context(config, registry):
    """Build a ResolutionContext around the given fetcher or HTTP client."""

    def factory(
        fetcher: Any = None,
        http_client: httpx.AsyncClient | None = None,
        cache: TTLCache | None = None,
        registry_override: BootstrapRegistry | None = None,
    ) -> ResolutionContext:
        if fetcher is None:
            fetcher = RDAPFetcher(config, http_client)
        return ResolutionContext(
            config=config,
            registry=registry_override or registry,
            cache=cache or TTLCache(config.cache_directory),
            fetcher=fetcher,
            http_client=http_client,
        )

    return factory
