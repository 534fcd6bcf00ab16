"""Domain models for load hunting, booking, and invoice reversal."""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchStatus(str, Enum):
    """Lifecycle status for a vehicle/posting match."""

    UNREVIEWED = "unreviewed"
    SKIPPED = "skipped"
    WAITLIST = "waitlist"
    BID = "bid"
    BOOKED = "booked"
    MISSED = "missed"


TERMINAL_MATCH_STATUSES = frozenset({MatchStatus.BOOKED.value, MatchStatus.MISSED.value})
NON_TERMINAL_MATCH_STATUSES = frozenset(
    {
        MatchStatus.UNREVIEWED.value,
        MatchStatus.SKIPPED.value,
        MatchStatus.WAITLIST.value,
        MatchStatus.BID.value,
    }
)


class PostingStatus(str, Enum):
    """Ingestion status for a broker load posting."""

    NEW = "new"
    PROCESSING_FAILED = "processing_failed"
    MATCHED = "matched"
    ARCHIVED = "archived"


class TruckType(str, Enum):
    """Ownership type of a vehicle."""

    MY_TRUCK = "my_truck"
    COMPANY_TRUCK = "company_truck"
    CONTRACTOR_TRUCK = "contractor_truck"


class LoadStatus(str, Enum):
    """Operational lifecycle status for a booked load."""

    PENDING_DISPATCH = "pending_dispatch"
    AVAILABLE = "available"
    DISPATCHED = "dispatched"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    READY_FOR_AUDIT = "ready_for_audit"
    SET_ASIDE = "set_aside"
    CLOSED = "closed"


class FinancialStatus(str, Enum):
    """Billing lifecycle status for a booked load."""

    PENDING_INVOICE = "pending_invoice"
    INVOICED = "invoiced"


class InvoiceStatus(str, Enum):
    """Invoice lifecycle status."""

    DRAFT = "draft"
    OPEN = "open"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class Coordinates(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class ParsedPosting(BaseModel):
    """Structured fields produced by the external email/document parser."""

    origin_city: Optional[str] = None
    origin_state: Optional[str] = None
    origin_zip: Optional[str] = None
    origin_address: Optional[str] = None
    origin_facility: Optional[str] = None
    pickup_coordinates: Optional[Coordinates] = None
    destination_city: Optional[str] = None
    destination_state: Optional[str] = None
    destination_zip: Optional[str] = None
    destination_address: Optional[str] = None
    destination_facility: Optional[str] = None
    pickup_date: Optional[str] = None
    pickup_time: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    rate: Optional[float] = Field(default=None, ge=0)
    weight: Optional[float] = Field(default=None, ge=0)
    pieces: Optional[int] = Field(default=None, ge=0)
    equipment_type: Optional[str] = None
    available_feet: Optional[float] = Field(default=None, ge=0)
    loaded_miles: Optional[float] = Field(default=None, ge=0)
    commodity: Optional[str] = None
    dimensions: Optional[str] = None
    order_number: Optional[str] = None
    reference: Optional[str] = None
    po_number: Optional[str] = None
    broker_company: Optional[str] = None
    broker_name: Optional[str] = None
    broker_email: Optional[str] = None
    broker_phone: Optional[str] = None
    broker_contact: Optional[str] = None
    customer: Optional[str] = None
    notes: Optional[str] = None


class PostingIngestRequest(BaseModel):
    """Pre-parsed posting handed over by the ingestion pipeline."""

    channel: str = "email"
    sender: str
    sender_name: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    received_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    parsed: Optional[ParsedPosting] = None
    parse_error: Optional[str] = None
    match_immediately: bool = True


class LoadPosting(BaseModel):
    """Persisted broker load posting."""

    posting_id: str
    channel: str = "email"
    sender: str
    sender_name: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)
    expires_at: Optional[datetime] = None
    is_update: bool = False
    parent_posting_id: Optional[str] = None
    status: PostingStatus = PostingStatus.NEW
    parse_error: Optional[str] = None
    content_fingerprint: Optional[str] = None
    assigned_load_id: Optional[str] = None
    parsed: ParsedPosting = Field(default_factory=ParsedPosting)


class Vehicle(BaseModel):
    """Vehicle attributes the booking saga reads (never writes)."""

    vehicle_id: str
    unit_number: Optional[str] = None
    truck_type: TruckType = TruckType.MY_TRUCK
    contractor_percentage: float = Field(default=0.0, ge=0, le=100)
    requires_load_approval: bool = False
    carrier_id: Optional[str] = None
    assigned_driver_id: Optional[str] = None
    vehicle_size: Optional[str] = None


class HuntPlanRequest(BaseModel):
    """Create or edit a vehicle's standing search criteria."""

    vehicle_id: str
    hunt_coordinates: Coordinates
    pickup_radius_miles: Optional[float] = Field(default=None, gt=0)
    vehicle_sizes: List[str] = Field(default_factory=list)
    load_capacity_lbs: Optional[float] = Field(default=None, gt=0)
    available_feet: Optional[float] = Field(default=None, gt=0)
    enabled: bool = True
    notes: Optional[str] = None


class HuntPlanToggleRequest(BaseModel):
    enabled: bool


class HuntPlan(BaseModel):
    """Persisted hunt plan."""

    hunt_plan_id: str
    vehicle_id: str
    hunt_coordinates: Coordinates
    pickup_radius_miles: float = 200.0
    vehicle_sizes: List[str] = Field(default_factory=list)
    load_capacity_lbs: Optional[float] = None
    available_feet: Optional[float] = None
    enabled: bool = True
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class Match(BaseModel):
    """Candidate pairing of one hunting vehicle and one posting."""

    match_id: str
    posting_id: str
    hunt_plan_id: str
    vehicle_id: str
    distance_miles: float = 0.0
    match_status: MatchStatus = MatchStatus.UNREVIEWED
    version: int = Field(default=1, ge=1)
    matched_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    reviewed_by: Optional[str] = None
    bid_rate: Optional[float] = None
    bid_by: Optional[str] = None
    bid_at: Optional[datetime] = None
    booked_load_id: Optional[str] = None
    missed_at: Optional[datetime] = None


class MatchTransitionRequest(BaseModel):
    """Dispatcher action on a match."""

    target: MatchStatus
    bid_rate: Optional[float] = Field(default=None, gt=0)
    bid_by: Optional[str] = None
    expected_version: Optional[int] = Field(default=None, ge=1)


class MatchTransitionResult(BaseModel):
    """Match after a dispatcher action; `audit_logged` is False when the audit write failed."""

    match: Match
    audit_logged: bool = True


class GroupedMatchView(BaseModel):
    """Display-only grouping of the matches that share one posting."""

    posting_id: str
    primary: Match
    matches: List[Match]
    match_count: int
    is_grouped: bool


class MatchCounts(BaseModel):
    """Badge counts per match status for one tenant."""

    tenant_id: str
    unreviewed: int = 0
    skipped: int = 0
    waitlist: int = 0
    bid: int = 0
    booked: int = 0
    missed: int = 0
    refreshed_at: datetime = Field(default_factory=_utcnow)


class SweepResponse(BaseModel):
    expired: int
    tenant_id: Optional[str] = None


class Customer(BaseModel):
    customer_id: str
    name: str
    email: Optional[str] = None


class BookingRequest(BaseModel):
    """Dispatcher confirmation of a bid."""

    rate: Optional[float] = Field(default=None, gt=0)
    vehicle_id: Optional[str] = None
    dispatcher_id: Optional[str] = None
    pickup_date: Optional[str] = None
    pickup_time: Optional[str] = None


class BookingResumeRequest(BaseModel):
    load_id: str


class Load(BaseModel):
    """Committed transportation job created by the booking saga."""

    load_id: str
    load_number: str
    status: LoadStatus = LoadStatus.PENDING_DISPATCH
    financial_status: FinancialStatus = FinancialStatus.PENDING_INVOICE
    carrier_approved: bool = False
    carrier_rate: Optional[float] = None
    approved_payload: Optional[float] = None
    rate: float = 0.0
    truck_type_at_booking: TruckType = TruckType.MY_TRUCK
    customer_id: Optional[str] = None
    assigned_vehicle_id: Optional[str] = None
    assigned_driver_id: Optional[str] = None
    assigned_dispatcher_id: Optional[str] = None
    carrier_id: Optional[str] = None

    pickup_date: Optional[str] = None
    pickup_time: Optional[str] = None
    pickup_city: Optional[str] = None
    pickup_state: Optional[str] = None
    pickup_zip: Optional[str] = None
    pickup_address: Optional[str] = None
    pickup_location: Optional[str] = None
    delivery_date: Optional[str] = None
    delivery_time: Optional[str] = None
    delivery_city: Optional[str] = None
    delivery_state: Optional[str] = None
    delivery_zip: Optional[str] = None
    delivery_address: Optional[str] = None
    delivery_location: Optional[str] = None

    broker_name: Optional[str] = None
    broker_email: Optional[str] = None
    broker_phone: Optional[str] = None
    broker_contact: Optional[str] = None

    cargo_weight: Optional[float] = None
    cargo_pieces: Optional[int] = None
    cargo_description: Optional[str] = None
    cargo_dimensions: Optional[str] = None
    equipment_type: Optional[str] = None
    available_feet: Optional[float] = None
    estimated_miles: Optional[float] = None
    empty_miles: Optional[float] = None

    reference_number: Optional[str] = None
    po_number: Optional[str] = None
    special_instructions: Optional[str] = None

    email_source: Optional[str] = None
    load_email_id: Optional[str] = None
    match_id: Optional[str] = None
    bid_placed_at: Optional[datetime] = None
    bid_placed_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class BookingResult(BaseModel):
    """Outcome of the booking saga."""

    load: Load
    match: Match
    posting_id: str
    already_booked: bool = False
    resumed: bool = False
    audit_logged: bool = True


class InvoiceCreateRequest(BaseModel):
    load_ids: List[str] = Field(min_length=1)
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


class Invoice(BaseModel):
    """Billing artifact over one or more loads."""

    invoice_id: str
    invoice_number: str
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.DRAFT
    total_amount: float = 0.0
    amount_paid: float = 0.0
    balance_due: float = 0.0
    invoice_date: date = Field(default_factory=lambda: _utcnow().date())
    due_date: Optional[date] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    otr_submitted_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    version: int = 1


class InvoiceLoad(BaseModel):
    invoice_id: str
    load_id: str
    amount: float = 0.0


class InvoiceEmailLogRequest(BaseModel):
    status: str
    recipient: Optional[str] = None


class InvoicePaymentRequest(BaseModel):
    amount: float = Field(gt=0)
    reference: Optional[str] = None


class ReversalEligibility(BaseModel):
    """Whether an invoice is still internal and may be returned to audit."""

    allowed: bool
    reason: Optional[str] = None
    requires_formal_reversal: bool = False


class ReversalResult(BaseModel):
    invoice_id: str
    invoice_number: str
    load_ids: List[str] = Field(default_factory=list)
    load_numbers: List[str] = Field(default_factory=list)
    operational_status_restored: bool = False
    audit_logged: bool = True


class AuditLogEntry(BaseModel):
    """Append-only record of a state-changing operation."""

    audit_id: str
    entity_type: str
    entity_id: str
    action: str
    actor: str
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
