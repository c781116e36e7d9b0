"""
Exception hierarchy for rdapx.

Per-query failures derive from LookupFailedError and are captured into the
query's ResolutionResult. RegistryLoadFailedError is fatal to a bulk run.
"""

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Failure categories reported in a ResolutionResult."""

    INVALID_INPUT = "InvalidInput"
    NO_AUTHORITY_FOUND = "NoAuthorityFound"
    CLIENT_REJECTED = "ClientRejected"
    MALFORMED_RESPONSE = "MalformedResponse"
    REFERRAL_LOOP_OR_TOO_DEEP = "ReferralLoopOrTooDeep"
    NETWORK_EXHAUSTED = "NetworkExhausted"
    REGISTRY_LOAD_FAILED = "RegistryLoadFailed"
    CANCELLED = "Cancelled"
    INTERNAL_ERROR = "InternalError"


class RDAPXError(Exception):
    """Base exception for all rdapx errors."""

    kind: ErrorKind

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class LookupFailedError(RDAPXError):
    """A single query could not be resolved."""


class InvalidInputError(LookupFailedError):
    """Input is not an IP address, domain name or ASN."""

    kind = ErrorKind.INVALID_INPUT


class NoAuthorityFoundError(LookupFailedError):
    """Bootstrap registry has no service for the query."""

    kind = ErrorKind.NO_AUTHORITY_FOUND


class ClientRejectedError(LookupFailedError):
    """Server returned a definitive, non-retryable error."""

    kind = ErrorKind.CLIENT_REJECTED

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        url: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.status_code = status_code
        self.url = url


class MalformedResponseError(LookupFailedError):
    """Response body is not a valid RDAP JSON object."""

    kind = ErrorKind.MALFORMED_RESPONSE


class ReferralLoopError(LookupFailedError):
    """Referral chain exceeded the configured hop limit."""

    kind = ErrorKind.REFERRAL_LOOP_OR_TOO_DEEP


class NetworkExhaustedError(LookupFailedError):
    """Retry budget was consumed by transient failures."""

    kind = ErrorKind.NETWORK_EXHAUSTED

    def __init__(
        self,
        message: str,
        attempts: int,
        rate_limited: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.attempts = attempts
        self.rate_limited = rate_limited


class CancelledLookupError(LookupFailedError):
    """Lookup was not started because the job was cancelled."""

    kind = ErrorKind.CANCELLED


class RegistryLoadFailedError(RDAPXError):
    """Bootstrap registry could not be loaded; no query can be resolved."""

    kind = ErrorKind.REGISTRY_LOAD_FAILED

    def __init__(
        self,
        message: str,
        registry_type: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.registry_type = registry_type

