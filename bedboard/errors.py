"""Error taxonomy for the roster, its store and the bed-count workflow."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BedboardError(Exception):
    """Base class for every failure the roster reports to a caller."""

    code = "error"
    default_message = "Something went wrong"
    retryable = False

    def __init__(self, message: Optional[str] = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class StoreUnavailable(BedboardError):
    """Raised when the directory store cannot be reached or rejects a write."""

    code = "store_unavailable"
    default_message = "The provider directory is unavailable. Please try again."
    retryable = True


class Unauthorized(BedboardError):
    code = "unauthorized"
    default_message = (
        "Only providers can update their own facility bed count. "
        "Please log in with your provider account."
    )


class UnsupportedServiceType(BedboardError):
    code = "unsupported_service_type"
    default_message = "Only Skilled Nursing Facilities can update bed availability"


class BedCountValidationError(BedboardError):
    """Submitted bed counts are inconsistent; the draft stays open."""

    code = "invalid_bed_counts"


class NegativeValue(BedCountValidationError):
    code = "negative_value"
    default_message = "Bed counts cannot be negative"


class AvailableExceedsTotal(BedCountValidationError):
    code = "available_exceeds_total"
    default_message = "Available beds cannot exceed total beds"


class NotFound(BedboardError):
    code = "not_found"
    default_message = "Provider not found"


class Unimplemented(BedboardError):
    code = "unimplemented"
    default_message = "This feature is not yet available"


class EditorStateError(BedboardError):
    """An editor command arrived when the editor could not accept it."""

    code = "editor_state"
    default_message = "No bed editor is open"


__all__ = [
    "BedboardError",
    "StoreUnavailable",
    "Unauthorized",
    "UnsupportedServiceType",
    "BedCountValidationError",
    "NegativeValue",
    "AvailableExceedsTotal",
    "NotFound",
    "Unimplemented",
    "EditorStateError",
]
