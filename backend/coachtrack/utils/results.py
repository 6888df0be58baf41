"""Translate tracker results into HTTP responses."""
from typing import Any, Dict

from fastapi import HTTPException, status

from ..core.result import TrackerResult

_ERROR_STATUS: Dict[str, int] = {
    "authentication_required": status.HTTP_401_UNAUTHORIZED,
    "not_found": status.HTTP_404_NOT_FOUND,
    "validation_error": status.HTTP_409_CONFLICT,
    "persistence_error": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def unwrap(result: TrackerResult) -> Any:
    """Return ``result.data`` or raise the HTTPException matching its error kind."""
    if result.ok:
        return result.data
    raise HTTPException(
        status_code=_ERROR_STATUS.get(result.error or "", status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=result.message or "Processing tracker error",
    )
