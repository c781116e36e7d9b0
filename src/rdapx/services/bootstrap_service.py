"""
IANA RDAP bootstrap registry (RFC 9224).

Maps a query to the ordered list of RDAP service base URLs that are
authoritative for it. Each registry document is fetched once, on first use,
and kept for the lifetime of the registry object so that every lookup in a
bulk run sees the same authority data.
"""

import ipaddress
from dataclasses import dataclass
from typing import Any, Optional

import anyio
import httpx
import structlog

from ..config import Config
from ..exceptions import NoAuthorityFoundError, RegistryLoadFailedError
from ..models.query_models import Query, QueryKind

logger = structlog.get_logger(__name__)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass(frozen=True)
class BootstrapEntry:
    """One service entry: the ranges or suffixes it covers and its URLs."""

    kind: str
    range_or_suffix: str
    service_urls: tuple[str, ...]


def _order_urls(urls: list[Any]) -> tuple[str, ...]:
    """Normalize URLs to end with '/', https before http, otherwise as listed."""
    cleaned = [u if u.endswith("/") else f"{u}/" for u in urls if isinstance(u, str) and u]
    return tuple(sorted(cleaned, key=lambda u: not u.lower().startswith("https://")))


class _ParsedRegistry:
    """Lookup structures for one bootstrap document."""

    def __init__(self, registry_type: str, document: dict[str, Any]):
        self.registry_type = registry_type
        self.entries: list[BootstrapEntry] = []
        self.networks: list[tuple[IPNetwork, BootstrapEntry]] = []
        self.asn_ranges: list[tuple[int, int, BootstrapEntry]] = []
        self.suffixes: dict[str, BootstrapEntry] = {}

        services = document.get("services")
        if not isinstance(services, list):
            raise ValueError("bootstrap document has no 'services' list")

        for service in services:
            if not isinstance(service, list) or len(service) < 2:
                raise ValueError(f"malformed service entry: {service!r}")
            patterns, urls = service[0], _order_urls(service[1])
            if not urls:
                continue
            for pattern in patterns:
                self._add(str(pattern).strip().lower(), urls)

        if not self.entries:
            raise ValueError("bootstrap document lists no services")

    def _add(self, pattern: str, urls: tuple[str, ...]) -> None:
        entry = BootstrapEntry(kind=self.registry_type, range_or_suffix=pattern, service_urls=urls)
        self.entries.append(entry)

        if self.registry_type in ("ipv4", "ipv6"):
            self.networks.append((ipaddress.ip_network(pattern, strict=False), entry))
        elif self.registry_type == "asn":
            start, _, end = pattern.partition("-")
            self.asn_ranges.append((int(start), int(end or start), entry))
        else:
            self.suffixes.setdefault(pattern.rstrip("."), entry)

    def match_ip(self, address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> Optional[BootstrapEntry]:
        best: Optional[tuple[IPNetwork, BootstrapEntry]] = None
        for network, entry in self.networks:
            if network.version != address.version or address not in network:
                continue
            # strictly longer prefix wins; ties keep the first listed
            if best is None or network.prefixlen > best[0].prefixlen:
                best = (network, entry)
        return best[1] if best else None

    def match_asn(self, number: int) -> Optional[BootstrapEntry]:
        best: Optional[tuple[int, BootstrapEntry]] = None
        for start, end, entry in self.asn_ranges:
            if not start <= number <= end:
                continue
            width = end - start
            if best is None or width < best[0]:
                best = (width, entry)
        return best[1] if best else None

    def match_domain(self, domain: str) -> Optional[BootstrapEntry]:
        labels = domain.split(".")
        # longest suffix first: "a.co.uk", "co.uk", "uk"
        for start in range(len(labels)):
            entry = self.suffixes.get(".".join(labels[start:]))
            if entry is not None:
                return entry
        return None


class BootstrapRegistry:
    """Lazily loaded, read-only view of the IANA RDAP bootstrap files."""

    REGISTRY_FILES = {
        "dns": "dns.json",
        "ipv4": "ipv4.json",
        "ipv6": "ipv6.json",
        "asn": "asn.json",
    }

    def __init__(self, config: Config, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http_client = http_client
        self._registries: dict[str, _ParsedRegistry] = {}
        self._failures: dict[str, RegistryLoadFailedError] = {}
        self._locks: dict[str, anyio.Lock] = {}

    @classmethod
    def from_documents(
        cls, documents: dict[str, dict[str, Any]], config: Optional[Config] = None
    ) -> "BootstrapRegistry":
        """Build a registry from already-parsed bootstrap documents."""
        registry = cls(config or Config())
        for registry_type, document in documents.items():
            if registry_type not in cls.REGISTRY_FILES:
                raise ValueError(f"Unknown registry type: {registry_type}")
            registry._registries[registry_type] = _ParsedRegistry(registry_type, document)
        return registry

    def refresh(self) -> None:
        """Forget loaded documents and failures; the next lookup reloads them."""
        self._registries.clear()
        self._failures.clear()

    async def resolve_base(self, query: Query) -> list[str]:
        """Return candidate RDAP base URLs for query, most preferred first."""
        if query.kind is QueryKind.IP:
            address = ipaddress.ip_address(query.canonical_value)
            registry_type = f"ipv{address.version}"
            registry = await self._get_registry(registry_type)
            entry = registry.match_ip(address)
        elif query.kind is QueryKind.ASN:
            registry_type = "asn"
            registry = await self._get_registry(registry_type)
            entry = registry.match_asn(int(query.canonical_value))
        else:
            registry_type = "dns"
            registry = await self._get_registry(registry_type)
            entry = registry.match_domain(query.canonical_value)

        if entry is None:
            raise NoAuthorityFoundError(
                f"No RDAP service found for {query.kind.value} {query.canonical_value}",
                details={"registry_type": registry_type},
            )

        logger.debug(
            "Bootstrap match",
            query=query.cache_key,
            match=entry.range_or_suffix,
            servers=list(entry.service_urls),
        )
        return list(entry.service_urls)

    async def _get_registry(self, registry_type: str) -> _ParsedRegistry:
        registry = self._registries.get(registry_type)
        if registry is not None:
            return registry

        lock = self._locks.setdefault(registry_type, anyio.Lock())
        async with lock:
            if registry_type in self._registries:
                return self._registries[registry_type]
            if registry_type in self._failures:
                raise self._failures[registry_type]

            try:
                registry = await self._load(registry_type)
            except RegistryLoadFailedError as e:
                self._failures[registry_type] = e
                logger.error(
                    "Failed to load bootstrap registry",
                    registry_type=registry_type,
                    error=e.message,
                )
                raise

            self._registries[registry_type] = registry
            return registry

    async def _load(self, registry_type: str) -> _ParsedRegistry:
        url = f"{self.config.bootstrap_base_url.rstrip('/')}/{self.REGISTRY_FILES[registry_type]}"
        if self._http_client is None:
            raise RegistryLoadFailedError(
                f"No HTTP client available to load {url}", registry_type=registry_type
            )

        logger.info("Loading bootstrap registry", registry_type=registry_type, url=url)
        try:
            response = await self._http_client.get(url)
            response.raise_for_status()
            document = response.json()
            if not isinstance(document, dict):
                raise ValueError("bootstrap document is not a JSON object")
            return _ParsedRegistry(registry_type, document)
        except httpx.HTTPError as e:
            raise RegistryLoadFailedError(
                f"Failed to fetch bootstrap registry {url}: {e}",
                registry_type=registry_type,
            ) from e
        except (ValueError, TypeError) as e:
            raise RegistryLoadFailedError(
                f"Invalid bootstrap registry {url}: {e}",
                registry_type=registry_type,
            ) from e
