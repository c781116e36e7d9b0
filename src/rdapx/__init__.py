"""
rdapx - bulk RDAP resolution for domains, IP addresses and ASNs.

Resolves identifiers to registration metadata through the IANA bootstrap
registry, with referral following, bounded retries, a TTL cache and a
bounded pool of concurrent lookups.
"""

__version__ = "0.2.0"

from .config import Config
from .exceptions import ErrorKind, RDAPXError, RegistryLoadFailedError
from .models import Failure, Query, QueryKind, ResolutionResult, ResultSource, Success
from .services import BulkJob, BulkScheduler, ResolutionContext, resolve_bulk
from .utils.validators import classify

__all__ = [
    "Config",
    "ErrorKind",
    "RDAPXError",
    "RegistryLoadFailedError",
    "Failure",
    "Query",
    "QueryKind",
    "ResolutionResult",
    "ResultSource",
    "Success",
    "BulkJob",
    "BulkScheduler",
    "ResolutionContext",
    "resolve_bulk",
    "classify",
]
