"""
Typed, canonical queries produced by the classifier.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class QueryKind(str, Enum):
    """Kind of resource a query refers to."""

    IP = "ip"
    DOMAIN = "domain"
    ASN = "asn"

    @property
    def path_segment(self) -> str:
        """RDAP path segment used to look up this kind."""
        return "autnum" if self is QueryKind.ASN else self.value


class Query(BaseModel):
    """A classified query. Two inputs naming the same resource share canonical_value."""

    model_config = ConfigDict(frozen=True)

    kind: QueryKind = Field(..., description="Resource kind")
    canonical_value: str = Field(..., description="Normalized lookup value")
    raw_input: str = Field(..., description="Input as given by the caller")

    @property
    def cache_key(self) -> str:
        return f"{self.kind.value}:{self.canonical_value}"

    @property
    def rdap_path(self) -> str:
        return f"{self.kind.path_segment}/{self.canonical_value}"
