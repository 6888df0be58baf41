"""Success/error result returned by every tracker operation."""
from typing import Generic, Literal, Optional, TypeVar

from pydantic import BaseModel, Field

from .errors import ErrorKind, TrackerError

T = TypeVar("T")


class TrackerResult(BaseModel, Generic[T]):
    """
    Outcome of a tracker operation.

    ``data`` may be None on success too, e.g. loading a pipeline the user has
    not started yet.
    """
    status: Literal["success", "error"]
    data: Optional[T] = None
    error: Optional[ErrorKind] = Field(None, description="Machine-readable failure kind")
    message: Optional[str] = Field(None, description="Human-readable failure description")

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(cls, data: Optional[T] = None) -> "TrackerResult[T]":
        return cls(status="success", data=data)

    @classmethod
    def failure(cls, exc: TrackerError) -> "TrackerResult[T]":
        return cls(status="error", error=exc.kind, message=exc.message)
