"""
Input classification for IP addresses, domain names and ASNs.

classify() tries the kinds in a fixed order:

1. ASN: "AS" prefix (any case) followed by a number, or a bare integer.
   A bare integer is therefore always an ASN, never an IPv4 address.
2. IP: an IPv4 or IPv6 literal. CIDR notation is rejected.
3. Domain: two or more LDH labels; non-ASCII names are IDNA-encoded.

Anything else raises InvalidInputError.
"""

import ipaddress
import re

from ..exceptions import InvalidInputError
from ..models.query_models import Query, QueryKind

MAX_ASN = 2**32 - 1

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")
_ASDOT_RE = re.compile(r"^(\d+)\.(\d+)$")


def canonical_asn(value: str) -> str | None:
    """Return the decimal form of an ASN, or None if value is not one."""
    text = value.strip()
    prefixed = text[:2].lower() == "as"
    if prefixed:
        text = text[2:].strip()

    if text.isdigit() and text.isascii():
        number = int(text)
    elif prefixed and (match := _ASDOT_RE.match(text)):
        high, low = int(match.group(1)), int(match.group(2))
        if high > 0xFFFF or low > 0xFFFF:
            return None
        number = (high << 16) | low
    else:
        return None

    if number > MAX_ASN:
        return None
    return str(number)


def canonical_ip(value: str) -> str | None:
    """Return the compressed form of an IP literal, or None."""
    text = value.strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    if not text or "/" in text:
        return None
    try:
        return str(ipaddress.ip_address(text))
    except ValueError:
        return None


def canonical_domain(value: str) -> str | None:
    """Return the lower-cased ASCII form of a domain name, or None."""
    text = value.strip().lower()
    if text.endswith("."):
        text = text[:-1]
    if not text:
        return None

    if not text.isascii():
        try:
            text = text.encode("idna").decode("ascii")
        except UnicodeError:
            return None

    if len(text) > 253:
        return None

    labels = text.split(".")
    if len(labels) < 2:
        return None
    if not all(_LABEL_RE.match(label) for label in labels):
        return None
    if labels[-1].isdigit():
        return None
    return text


def is_valid_asn(value: str) -> bool:
    return canonical_asn(value) is not None


def is_valid_ip(value: str) -> bool:
    return canonical_ip(value) is not None


def is_valid_domain(value: str) -> bool:
    return canonical_domain(value) is not None


def classify(raw: str) -> Query:
    """Classify a raw query string into a canonical Query."""
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidInputError("Empty query", details={"input": raw})

    asn = canonical_asn(raw)
    if asn is not None:
        return Query(kind=QueryKind.ASN, canonical_value=asn, raw_input=raw)

    ip = canonical_ip(raw)
    if ip is not None:
        return Query(kind=QueryKind.IP, canonical_value=ip, raw_input=raw)

    domain = canonical_domain(raw)
    if domain is not None:
        return Query(kind=QueryKind.DOMAIN, canonical_value=domain, raw_input=raw)

    raise InvalidInputError(
        f"Cannot classify query {raw!r} (expect domain, IP, or ASN)",
        details={"input": raw},
    )
