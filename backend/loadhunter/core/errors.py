"""Domain errors raised by the match, booking, and invoice reversal services."""
from __future__ import annotations

from typing import List, Optional

from fastapi import HTTPException


class DispatchError(Exception):
    """Base class for dispatch-core failures."""


class InvalidTransition(DispatchError):
    """Requested match-state change is not reachable from the current state."""

    def __init__(self, reason: str, *, match_id: Optional[str] = None, current_status: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.match_id = match_id
        self.current_status = current_status


class TenantScopeViolation(DispatchError):
    """Operation attempted without, or against the wrong, tenant context."""


class PartialBookingFailure(DispatchError):
    """The load exists but the match/posting linkage did not complete."""

    def __init__(self, reason: str, *, load_id: str, match_id: str, pending_steps: List[str]) -> None:
        super().__init__(reason)
        self.reason = reason
        self.load_id = load_id
        self.match_id = match_id
        self.pending_steps = list(pending_steps)


class BookingFailed(DispatchError):
    """Booking aborted before any load was written."""


class ReversalBlocked(DispatchError):
    """Invoice has left the system and can only be voided or credited."""

    def __init__(self, reason: str, *, requires_formal_reversal: bool = True) -> None:
        super().__init__(reason)
        self.reason = reason
        self.requires_formal_reversal = requires_formal_reversal


class AuditLogWriteFailure(DispatchError):
    """Audit entry could not be appended; the primary operation still stands."""


class SequenceGenerationConflict(DispatchError):
    """Generated load number already exists for the tenant."""

    def __init__(self, load_number: str) -> None:
        super().__init__(f"Load number {load_number} already exists")
        self.load_number = load_number


class LoadExistsForMatch(DispatchError):
    """A load was already created for this match."""

    def __init__(self, match_id: str, load_id: str) -> None:
        super().__init__(f"Match {match_id} already has load {load_id}")
        self.match_id = match_id
        self.load_id = load_id


class ConcurrentUpdateConflict(DispatchError):
    """The record changed between read and write."""

    def __init__(self, reason: str, *, entity_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.entity_id = entity_id


def to_http_exception(exc: Exception, not_found: str = "Resource") -> HTTPException:
    """Translate a service-layer failure into the HTTP error the routers return."""
    if isinstance(exc, KeyError):
        return HTTPException(status_code=404, detail=f"{not_found} not found")
    if isinstance(exc, TenantScopeViolation):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, InvalidTransition):
        return HTTPException(
            status_code=409,
            detail={"reason": exc.reason, "match_id": exc.match_id, "current_status": exc.current_status},
        )
    if isinstance(exc, ConcurrentUpdateConflict):
        return HTTPException(status_code=409, detail={"reason": exc.reason, "entity_id": exc.entity_id})
    if isinstance(exc, ReversalBlocked):
        return HTTPException(
            status_code=409,
            detail={"reason": exc.reason, "requires_formal_reversal": exc.requires_formal_reversal},
        )
    if isinstance(exc, PartialBookingFailure):
        return HTTPException(
            status_code=502,
            detail={
                "reason": exc.reason,
                "load_id": exc.load_id,
                "match_id": exc.match_id,
                "pending_steps": exc.pending_steps,
            },
        )
    return HTTPException(status_code=400, detail=str(exc))
