"""Services for rdapx."""

from .bootstrap_service import BootstrapEntry, BootstrapRegistry
from .bulk_service import BulkJob, BulkScheduler, resolve_bulk
from .cache_service import CacheRecord, TTLCache
from .rdap_service import FetchResult, RDAPFetcher, ReferralPolicy
from .resolver_service import ResolutionContext, Resolver

__all__ = [
    "BootstrapEntry",
    "BootstrapRegistry",
    "BulkJob",
    "BulkScheduler",
    "CacheRecord",
    "FetchResult",
    "RDAPFetcher",
    "ReferralPolicy",
    "ResolutionContext",
    "Resolver",
    "TTLCache",
    "resolve_bulk",
]
