"""API routes for load hunting: postings, hunt plans, matches, and booking."""
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from loadhunter.core.auth import TenantContext, get_tenant_context, require_roles
from loadhunter.core.errors import DispatchError, to_http_exception
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import (
    AuditLogEntry,
    BookingRequest,
    BookingResult,
    BookingResumeRequest,
    Customer,
    GroupedMatchView,
    HuntPlan,
    HuntPlanRequest,
    HuntPlanToggleRequest,
    Load,
    LoadPosting,
    Match,
    MatchCounts,
    MatchStatus,
    MatchTransitionRequest,
    MatchTransitionResult,
    PostingIngestRequest,
    PostingStatus,
    SweepResponse,
    Vehicle,
)
from loadhunter.services.audit import AuditTrail
from loadhunter.services.booking_saga import booking_saga
from loadhunter.services.dispatch_state import get_dispatch_state_store
from loadhunter.services.hunt_plans import hunt_plan_registry
from loadhunter.services.match_counts import match_count_projector
from loadhunter.services.match_engine import match_engine
from loadhunter.services.postings import posting_service

router = APIRouter(prefix="/load-hunter", tags=["load-hunter"])

SERVICE_ERRORS = (DispatchError, KeyError, ValueError)


def _idempotency_lookup(context: TenantContext, operation: str, key: str | None):
    if not key:
        return None
    return get_dispatch_state_store().get_idempotent(context.tenant_id, f"{operation}:{key.strip()}")


def _idempotency_store(context: TenantContext, operation: str, key: str | None, response: dict):
    if not key:
        return
    get_dispatch_state_store().set_idempotent(context.tenant_id, f"{operation}:{key.strip()}", response)


@router.post("/postings")
def ingest_posting(
    request: PostingIngestRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(context, "ingest_posting", idempotency_key)
    if cached:
        return cached
    try:
        posting = posting_service.ingest(context.tenant_id, request, actor=context.actor)
        matches: List[Match] = []
        if request.match_immediately and posting.status == PostingStatus.NEW:
            matches = match_engine.create_candidates(context.tenant_id, posting, actor=context.actor)
            posting = posting_service.get(context.tenant_id, posting.posting_id)
            match_count_projector.invalidate(context.tenant_id)
        response = {
            "posting": posting.model_dump(mode="json"),
            "matches": [match.model_dump(mode="json") for match in matches],
        }
        _idempotency_store(context, "ingest_posting", idempotency_key, response)
        return response
    except SERVICE_ERRORS as exc:
        logger.error("Failed to ingest posting", tenant_id=context.tenant_id, error=str(exc))
        raise to_http_exception(exc, "Posting")


@router.get("/postings", response_model=List[LoadPosting])
def list_postings(
    limit: int = Query(default=200, ge=1, le=1000),
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        return posting_service.list_postings(context.tenant_id, limit=limit)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Posting")


@router.get("/postings/{posting_id}", response_model=LoadPosting)
def get_posting(posting_id: str, context: TenantContext = Depends(get_tenant_context)):
    try:
        return posting_service.get(context.tenant_id, posting_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Posting")


@router.post("/postings/{posting_id}/match", response_model=List[Match])
def match_posting(
    posting_id: str,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        matches = match_engine.create_candidates(context.tenant_id, posting_id, actor=context.actor)
    except SERVICE_ERRORS as exc:
        logger.error("Failed to match posting", posting_id=posting_id, error=str(exc))
        raise to_http_exception(exc, "Posting")
    match_count_projector.invalidate(context.tenant_id)
    return matches


@router.put("/vehicles/{vehicle_id}", response_model=Vehicle)
def upsert_vehicle(
    vehicle_id: str,
    vehicle: Vehicle,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return hunt_plan_registry.upsert_vehicle(
            context.tenant_id, vehicle.model_copy(update={"vehicle_id": vehicle_id}), actor=context.actor
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Vehicle")


@router.post("/hunt-plans", response_model=HuntPlan)
def create_hunt_plan(
    request: HuntPlanRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return hunt_plan_registry.create_plan(context.tenant_id, request, actor=context.actor)
    except SERVICE_ERRORS as exc:
        logger.error("Failed to create hunt plan", vehicle_id=request.vehicle_id, error=str(exc))
        raise to_http_exception(exc, "Vehicle")


@router.get("/hunt-plans", response_model=List[HuntPlan])
def list_hunt_plans(
    enabled_only: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        return hunt_plan_registry.list_plans(context.tenant_id, enabled_only=enabled_only)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Hunt plan")


@router.patch("/hunt-plans/{hunt_plan_id}", response_model=HuntPlan)
def toggle_hunt_plan(
    hunt_plan_id: str,
    request: HuntPlanToggleRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        return hunt_plan_registry.set_enabled(context.tenant_id, hunt_plan_id, request.enabled, actor=context.actor)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Hunt plan")


@router.put("/customers/{customer_id}", response_model=Customer)
def upsert_customer(
    customer_id: str,
    customer: Customer,
    context: TenantContext = Depends(require_roles("dispatcher", "billing", "admin")),
):
    try:
        saved = get_dispatch_state_store().upsert_customer(
            context.tenant_id, customer.model_copy(update={"customer_id": customer_id})
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Customer")
    AuditTrail(get_dispatch_state_store()).append(
        context.tenant_id,
        entity_type="customer",
        entity_id=customer_id,
        action="customer_upserted",
        actor=context.actor,
        after=saved.model_dump(mode="json"),
    )
    return saved


@router.get("/matches", response_model=List[Match])
def list_matches(
    status: Optional[MatchStatus] = Query(default=None),
    posting_id: Optional[str] = Query(default=None),
    vehicle_id: Optional[str] = Query(default=None),
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        return match_engine.list_matches(context.tenant_id, status=status, posting_id=posting_id, vehicle_id=vehicle_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Match")


@router.get("/matches/grouped", response_model=List[GroupedMatchView])
def list_grouped_matches(
    status: Optional[MatchStatus] = Query(default=None),
    my_vehicle_ids: str = Query(default="", description="Comma-separated vehicle ids shown first"),
    grouping_enabled: bool = Query(default=True),
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        matches = match_engine.list_matches(context.tenant_id, status=status)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Match")
    mine = [item.strip() for item in my_vehicle_ids.split(",") if item.strip()]
    return match_engine.group_by_posting(matches, my_vehicle_ids=mine, grouping_enabled=grouping_enabled)


@router.post("/matches/{match_id}/transition", response_model=MatchTransitionResult)
def transition_match(
    match_id: str,
    request: MatchTransitionRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    operation = f"transition_match:{match_id}:{request.target.value}"
    cached = _idempotency_lookup(context, operation, idempotency_key)
    if cached:
        return cached
    try:
        result = match_engine.transition(context.tenant_id, match_id, request.target, context.actor, request)
    except SERVICE_ERRORS as exc:
        logger.warning("Match transition rejected", match_id=match_id, target=request.target.value, error=str(exc))
        raise to_http_exception(exc, "Match")
    match_count_projector.invalidate(context.tenant_id)
    response = result.model_dump(mode="json")
    _idempotency_store(context, operation, idempotency_key, response)
    return response


@router.post("/matches/{match_id}/re-review", response_model=MatchTransitionResult)
def re_review_match(
    match_id: str,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        result = match_engine.re_review(context.tenant_id, match_id, context.actor)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Match")
    match_count_projector.invalidate(context.tenant_id)
    return result


@router.post("/matches/{match_id}/book", response_model=BookingResult)
def book_match(
    match_id: str,
    request: BookingRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    cached = _idempotency_lookup(context, f"book_match:{match_id}", idempotency_key)
    if cached:
        return cached
    try:
        result = booking_saga.book(context.tenant_id, match_id, context.actor, request)
    except SERVICE_ERRORS as exc:
        # A partial booking may already have moved the match.
        match_count_projector.invalidate(context.tenant_id)
        logger.error("Booking failed", tenant_id=context.tenant_id, match_id=match_id, error=str(exc))
        raise to_http_exception(exc, "Match")
    match_count_projector.invalidate(context.tenant_id)
    response = result.model_dump(mode="json")
    _idempotency_store(context, f"book_match:{match_id}", idempotency_key, response)
    return response


@router.post("/matches/{match_id}/book/resume", response_model=BookingResult)
def resume_booking(
    match_id: str,
    request: BookingResumeRequest,
    context: TenantContext = Depends(require_roles("dispatcher", "admin")),
):
    try:
        result = booking_saga.resume(context.tenant_id, match_id, request.load_id, context.actor)
    except SERVICE_ERRORS as exc:
        match_count_projector.invalidate(context.tenant_id)
        logger.error("Booking resume failed", match_id=match_id, load_id=request.load_id, error=str(exc))
        raise to_http_exception(exc, "Match or load")
    match_count_projector.invalidate(context.tenant_id)
    return result


@router.get("/counts", response_model=MatchCounts)
def get_match_counts(
    fresh: bool = Query(default=False),
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        return match_count_projector.counts(context.tenant_id, fresh=fresh)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc)


@router.post("/counts/rebuild", response_model=MatchCounts)
def rebuild_match_counts(context: TenantContext = Depends(require_roles("admin"))):
    try:
        return match_count_projector.rebuild(context.tenant_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc)


@router.post("/sweep", response_model=SweepResponse)
def sweep_expired_matches(context: TenantContext = Depends(require_roles("dispatcher", "admin"))):
    tenant_id = context.tenant_id or None
    try:
        expired = match_engine.sweep_expired(tenant_id, cross_tenant=context.cross_tenant)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc)
    if tenant_id:
        match_count_projector.invalidate(tenant_id)
    else:
        match_count_projector.invalidate()
    return SweepResponse(expired=expired, tenant_id=tenant_id)


@router.get("/loads/{load_id}", response_model=Load)
def get_load(load_id: str, context: TenantContext = Depends(get_tenant_context)):
    try:
        load = get_dispatch_state_store().get_load(context.tenant_id, load_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Load")
    if load is None:
        raise HTTPException(status_code=404, detail="Load not found")
    return load


@router.get("/audit", response_model=List[AuditLogEntry])
def list_audit_entries(
    entity_type: Optional[str] = Query(default=None),
    entity_id: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    context: TenantContext = Depends(get_tenant_context),
):
    try:
        return get_dispatch_state_store().list_audit_entries(
            context.tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            limit=limit,
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc)
