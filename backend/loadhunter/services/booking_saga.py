"""Booking saga: turn an accepted bid into a committed load.

Steps run as individually committed writes in a fixed order:

1. validate the match, rate, and vehicle
2. resolve the customer (best-effort)
3. snapshot the truck type
4. split approval and carrier rate
5. reserve a load number
6. insert the load
7. mark the match booked
8. link the posting to the load
9. append the audit entry (non-fatal)

Anything failing after step 6 surfaces as `PartialBookingFailure`; `resume`
replays steps 7-9 for the same load. A match owns at most one load, so a
concurrent `book` that loses the insert resumes the winner's load.
"""
from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from typing import Callable, List, Optional

from loadhunter.core.config import get_settings
from loadhunter.core.errors import (
    BookingFailed,
    DispatchError,
    InvalidTransition,
    LoadExistsForMatch,
    PartialBookingFailure,
    SequenceGenerationConflict,
)
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import (
    BookingRequest,
    BookingResult,
    Load,
    LoadPosting,
    LoadStatus,
    Match,
    MatchStatus,
    TruckType,
    Vehicle,
)
from loadhunter.services.audit import AuditTrail
from loadhunter.services.dispatch_state import DispatchStateStore, get_dispatch_state_store
from loadhunter.services.match_engine import MatchEngine


CustomerLookup = Callable[..., Optional[str]]

STEP_MARK_MATCH_BOOKED = "mark_match_booked"
STEP_LINK_POSTING = "link_posting"
STEP_AUDIT = "audit"
POST_INSERT_STEPS = (STEP_MARK_MATCH_BOOKED, STEP_LINK_POSTING, STEP_AUDIT)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_carrier_rate(vehicle: Optional[Vehicle], truck_type: TruckType, rate: float) -> dict:
    """Status, approval flag, and carrier pay for a newly booked load."""
    if vehicle is not None and vehicle.requires_load_approval:
        return {
            "status": LoadStatus.AVAILABLE,
            "carrier_approved": False,
            "carrier_rate": None,
            "approved_payload": None,
        }
    if truck_type == TruckType.CONTRACTOR_TRUCK and vehicle is not None:
        return {
            "status": LoadStatus.PENDING_DISPATCH,
            "carrier_approved": True,
            "carrier_rate": round(rate * vehicle.contractor_percentage / 100, 2),
            "approved_payload": rate,
        }
    return {
        "status": LoadStatus.PENDING_DISPATCH,
        "carrier_approved": True,
        "carrier_rate": None,
        "approved_payload": None,
    }


def _location(facility: Optional[str], city: Optional[str], state: Optional[str]) -> Optional[str]:
    if facility:
        return facility
    parts = [part for part in (city, state) if part]
    return ", ".join(parts) or None


class BookingSaga:
    """Coordinates the match, posting, load, and audit writes of one booking."""

    def __init__(
        self,
        store: Optional[DispatchStateStore] = None,
        customer_lookup: Optional[CustomerLookup] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._customer_lookup = customer_lookup
        self._clock = clock
        self.settings = get_settings()

    @property
    def store(self) -> DispatchStateStore:
        return self._store or get_dispatch_state_store()

    @property
    def engine(self) -> MatchEngine:
        return MatchEngine(self.store, clock=self._clock)

    def _resolve_customer(self, tenant_id: str, posting: LoadPosting) -> Optional[str]:
        parsed = posting.parsed
        names = [parsed.broker_company, parsed.customer, parsed.broker_name, posting.sender_name]
        emails = [parsed.broker_email, posting.sender]
        lookup = self._customer_lookup or self.store.find_customer_id
        try:
            for name in names:
                if name and name.strip():
                    customer_id = lookup(tenant_id, name=name.strip())
                    if customer_id:
                        return customer_id
            for email in emails:
                if email and "@" in email:
                    customer_id = lookup(tenant_id, email=email.strip())
                    if customer_id:
                        return customer_id
        except Exception as exc:  # customer resolution never blocks a booking
            logger.warning(
                "Customer lookup failed; booking without customer",
                tenant_id=tenant_id,
                posting_id=posting.posting_id,
                error=str(exc),
            )
        return None

    def _build_load(
        self,
        *,
        load_id: str,
        load_number: str,
        match: Match,
        posting: LoadPosting,
        vehicle_id: str,
        vehicle: Optional[Vehicle],
        truck_type: TruckType,
        customer_id: Optional[str],
        rate: float,
        request: BookingRequest,
        actor: str,
    ) -> Load:
        parsed = posting.parsed
        return Load(
            load_id=load_id,
            load_number=load_number,
            rate=rate,
            truck_type_at_booking=truck_type,
            customer_id=customer_id,
            assigned_vehicle_id=vehicle_id,
            assigned_driver_id=vehicle.assigned_driver_id if vehicle else None,
            assigned_dispatcher_id=request.dispatcher_id or actor,
            carrier_id=vehicle.carrier_id if vehicle else None,
            pickup_date=request.pickup_date or parsed.pickup_date,
            pickup_time=request.pickup_time or parsed.pickup_time,
            pickup_city=parsed.origin_city,
            pickup_state=parsed.origin_state,
            pickup_zip=parsed.origin_zip,
            pickup_address=parsed.origin_address,
            pickup_location=_location(parsed.origin_facility, parsed.origin_city, parsed.origin_state),
            delivery_date=parsed.delivery_date,
            delivery_time=parsed.delivery_time,
            delivery_city=parsed.destination_city,
            delivery_state=parsed.destination_state,
            delivery_zip=parsed.destination_zip,
            delivery_address=parsed.destination_address,
            delivery_location=_location(
                parsed.destination_facility, parsed.destination_city, parsed.destination_state
            ),
            broker_name=parsed.broker_company or parsed.broker_name,
            broker_email=parsed.broker_email,
            broker_phone=parsed.broker_phone,
            broker_contact=parsed.broker_contact or parsed.broker_name,
            cargo_weight=parsed.weight,
            cargo_pieces=parsed.pieces,
            cargo_description=parsed.commodity,
            cargo_dimensions=parsed.dimensions,
            equipment_type=parsed.equipment_type,
            available_feet=parsed.available_feet,
            estimated_miles=parsed.loaded_miles,
            empty_miles=match.distance_miles,
            reference_number=parsed.order_number or parsed.reference,
            po_number=parsed.po_number,
            special_instructions=parsed.notes,
            email_source=posting.channel,
            load_email_id=posting.posting_id,
            match_id=match.match_id,
            bid_placed_at=match.bid_at,
            bid_placed_by=match.bid_by,
            **split_carrier_rate(vehicle, truck_type, rate),
        )

    def _insert_with_fresh_number(self, tenant_id: str, build: Callable[[str], Load]) -> Load:
        prefix = self.settings.load_number_prefix
        attempts = max(1, int(self.settings.booking_sequence_max_retries))
        for attempt in range(1, attempts + 1):
            load_number = self.store.next_daily_load_number(tenant_id, prefix, self._clock().date())
            try:
                return self.store.insert_load(tenant_id, build(load_number))
            except SequenceGenerationConflict as exc:
                logger.warning(
                    "Load number collision; retrying",
                    tenant_id=tenant_id,
                    load_number=exc.load_number,
                    attempt=attempt,
                )
        raise BookingFailed(f"Could not allocate a unique load number after {attempts} attempts")

    def book(
        self,
        tenant_id: str,
        match_id: str,
        actor: str,
        request: Optional[BookingRequest] = None,
    ) -> BookingResult:
        request = request or BookingRequest()
        match = self.store.get_match(tenant_id, match_id)
        if match is None:
            raise KeyError(match_id)

        if match.match_status == MatchStatus.BOOKED:
            load = None
            if match.booked_load_id:
                load = self.store.get_load(tenant_id, match.booked_load_id)
            load = load or self.store.find_load_by_match(tenant_id, match_id)
            if load is None:
                raise InvalidTransition("Match is booked but its load cannot be found", match_id=match_id)
            return BookingResult(load=load, match=match, posting_id=match.posting_id, already_booked=True)

        # A load created by an earlier attempt that timed out or failed mid-way.
        existing = self.store.find_load_by_match(tenant_id, match_id)
        if existing is not None:
            logger.info("Found load from earlier booking attempt; resuming", tenant_id=tenant_id, load_id=existing.load_id)
            return self.resume(tenant_id, match_id, existing.load_id, actor)

        if match.match_status != MatchStatus.BID:
            raise InvalidTransition(
                f"Only a match in 'bid' can be booked (current: {match.match_status.value})",
                match_id=match_id,
                current_status=match.match_status.value,
            )
        rate = request.rate or match.bid_rate
        if not rate or rate <= 0:
            raise InvalidTransition("A confirmed rate is required to book", match_id=match_id)
        vehicle_id = request.vehicle_id or match.vehicle_id
        if not vehicle_id:
            raise InvalidTransition("A vehicle is required to book", match_id=match_id)

        posting = self.store.get_posting(tenant_id, match.posting_id)
        if posting is None:
            raise KeyError(match.posting_id)
        vehicle = self.store.get_vehicle(tenant_id, vehicle_id)
        customer_id = self._resolve_customer(tenant_id, posting)
        truck_type = vehicle.truck_type if vehicle else TruckType(self.settings.default_truck_type)
        load_id = self.store.generate_id(tenant_id, "load", "LOAD")

        try:
            load = self._insert_with_fresh_number(
                tenant_id,
                lambda load_number: self._build_load(
                    load_id=load_id,
                    load_number=load_number,
                    match=match,
                    posting=posting,
                    vehicle_id=vehicle_id,
                    vehicle=vehicle,
                    truck_type=truck_type,
                    customer_id=customer_id,
                    rate=float(rate),
                    request=request,
                    actor=actor,
                ),
            )
        except LoadExistsForMatch as exc:
            logger.info(
                "Concurrent booking already created the load; resuming",
                tenant_id=tenant_id,
                match_id=match_id,
                load_id=exc.load_id,
            )
            return self.resume(tenant_id, match_id, exc.load_id, actor)
        logger.info(
            "Load created from match",
            tenant_id=tenant_id,
            load_id=load.load_id,
            load_number=load.load_number,
            match_id=match_id,
            truck_type=truck_type.value,
            carrier_approved=load.carrier_approved,
        )
        return self._complete(tenant_id, match_id, match.posting_id, load, actor, resumed=False)

    def resume(self, tenant_id: str, match_id: str, load_id: str, actor: str) -> BookingResult:
        """Re-run the post-insert steps for a load that already exists."""
        load = self.store.get_load(tenant_id, load_id)
        if load is None:
            raise KeyError(load_id)
        if load.match_id != match_id:
            raise InvalidTransition(f"Load {load_id} was not created for match {match_id}", match_id=match_id)
        match = self.store.get_match(tenant_id, match_id)
        if match is None:
            raise KeyError(match_id)
        return self._complete(tenant_id, match_id, match.posting_id, load, actor, resumed=True)

    def _complete(
        self,
        tenant_id: str,
        match_id: str,
        posting_id: str,
        load: Load,
        actor: str,
        *,
        resumed: bool,
    ) -> BookingResult:
        pending: List[str] = list(POST_INSERT_STEPS)
        try:
            match = self.engine.mark_booked(tenant_id, match_id, load.load_id, load.rate)
            pending.remove(STEP_MARK_MATCH_BOOKED)
            self.store.link_posting_to_load(tenant_id, posting_id, load.load_id)
            pending.remove(STEP_LINK_POSTING)
        except (DispatchError, KeyError, sqlite3.Error) as exc:
            logger.error(
                "Booking incomplete after load insert",
                tenant_id=tenant_id,
                load_id=load.load_id,
                match_id=match_id,
                pending_steps=pending,
                error=str(exc),
            )
            raise PartialBookingFailure(
                f"Load {load.load_number} created but booking did not complete: {exc}",
                load_id=load.load_id,
                match_id=match_id,
                pending_steps=pending,
            ) from exc

        audit_logged = AuditTrail(self.store).append(
            tenant_id,
            entity_type="load",
            entity_id=load.load_id,
            action="load_booked",
            actor=actor,
            after={
                "load_number": load.load_number,
                "match_id": match_id,
                "posting_id": posting_id,
                "rate": load.rate,
                "carrier_rate": load.carrier_rate,
                "status": load.status.value,
                "truck_type_at_booking": load.truck_type_at_booking.value,
            },
            once=True,
        )
        return BookingResult(
            load=load,
            match=match,
            posting_id=posting_id,
            resumed=resumed,
            audit_logged=audit_logged,
        )


booking_saga = BookingSaga()
