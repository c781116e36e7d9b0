"""
Resolution outcomes handed back to callers of the bulk engine.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import ErrorKind
from .query_models import Query


class ResultSource(str, Enum):
    """Where a result's outcome came from."""

    CACHE = "cache"
    NETWORK = "network"


class Success(BaseModel):
    """Successful lookup carrying the RDAP response object."""

    model_config = ConfigDict(frozen=True)

    status: Literal["success"] = "success"
    payload: dict[str, Any] = Field(..., description="RDAP JSON response")
    server: Optional[str] = Field(None, description="URL that answered")


class Failure(BaseModel):
    """Failed lookup with a specific error kind."""

    model_config = ConfigDict(frozen=True)

    status: Literal["failure"] = "failure"
    kind: ErrorKind
    detail: str


Outcome = Annotated[Union[Success, Failure], Field(discriminator="status")]


class ResolutionResult(BaseModel):
    """Exactly one of these is produced per input query."""

    model_config = ConfigDict(frozen=True)

    raw_input: str
    query: Optional[Query] = Field(
        None, description="Classified query; None when the input was invalid"
    )
    outcome: Outcome
    source: ResultSource = ResultSource.NETWORK
    referral_hops: int = Field(0, ge=0)

    @property
    def ok(self) -> bool:
        return isinstance(self.outcome, Success)
