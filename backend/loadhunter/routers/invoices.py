"""API routes for invoices and their guarded return to audit."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Header

from loadhunter.core.auth import TenantContext, get_tenant_context, require_roles
from loadhunter.core.errors import DispatchError, to_http_exception
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import (
    Invoice,
    InvoiceCreateRequest,
    InvoiceEmailLogRequest,
    InvoicePaymentRequest,
    ReversalEligibility,
    ReversalResult,
)
from loadhunter.services.dispatch_state import get_dispatch_state_store
from loadhunter.services.invoice_reversal import invoice_reversal_guard
from loadhunter.services.invoicing import invoicing_service

router = APIRouter(prefix="/invoices", tags=["invoices"])

SERVICE_ERRORS = (DispatchError, KeyError, ValueError)


@router.post("", response_model=Invoice)
def create_invoice(
    request: InvoiceCreateRequest,
    context: TenantContext = Depends(require_roles("billing", "admin")),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    store = get_dispatch_state_store()
    key = f"create_invoice:{idempotency_key.strip()}" if idempotency_key else None
    if key:
        cached = store.get_idempotent(context.tenant_id, key)
        if cached:
            return cached
    try:
        invoice = invoicing_service.create_invoice(context.tenant_id, request, context.actor)
    except SERVICE_ERRORS as exc:
        logger.error("Failed to create invoice", tenant_id=context.tenant_id, error=str(exc))
        raise to_http_exception(exc, "Load")
    response = invoice.model_dump(mode="json")
    if key:
        store.set_idempotent(context.tenant_id, key, response)
    return response


@router.post("/mark-overdue")
def mark_overdue_invoices(context: TenantContext = Depends(require_roles("billing", "admin"))):
    tenant_id = context.tenant_id or None
    try:
        updated = invoicing_service.mark_overdue(tenant_id, cross_tenant=context.cross_tenant)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc)
    return {"updated": updated, "tenant_id": tenant_id}


@router.get("/{invoice_id}", response_model=Invoice)
def get_invoice(invoice_id: str, context: TenantContext = Depends(get_tenant_context)):
    try:
        return invoicing_service.get_invoice(context.tenant_id, invoice_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Invoice")


@router.get("/{invoice_id}/reversal-eligibility", response_model=ReversalEligibility)
def get_reversal_eligibility(invoice_id: str, context: TenantContext = Depends(get_tenant_context)):
    try:
        return invoice_reversal_guard.can_reverse(context.tenant_id, invoice_id)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Invoice")


@router.post("/{invoice_id}/reverse", response_model=ReversalResult)
def reverse_invoice(
    invoice_id: str,
    context: TenantContext = Depends(require_roles("billing", "admin")),
):
    try:
        return invoice_reversal_guard.reverse(context.tenant_id, invoice_id, context.actor)
    except SERVICE_ERRORS as exc:
        logger.warning("Invoice reversal rejected", invoice_id=invoice_id, error=str(exc))
        raise to_http_exception(exc, "Invoice")


@router.post("/{invoice_id}/email-log", response_model=Invoice)
def log_invoice_email(
    invoice_id: str,
    request: InvoiceEmailLogRequest,
    context: TenantContext = Depends(require_roles("billing", "admin")),
):
    try:
        return invoicing_service.record_email_delivery(
            context.tenant_id, invoice_id, request.status, request.recipient, actor=context.actor
        )
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Invoice")


@router.post("/{invoice_id}/payments", response_model=Invoice)
def record_invoice_payment(
    invoice_id: str,
    request: InvoicePaymentRequest,
    context: TenantContext = Depends(require_roles("billing", "admin")),
):
    try:
        return invoicing_service.record_payment(context.tenant_id, invoice_id, request.amount, actor=context.actor)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Invoice")


@router.post("/{invoice_id}/otr-submission", response_model=Invoice)
def submit_invoice_to_factoring(
    invoice_id: str,
    context: TenantContext = Depends(require_roles("billing", "admin")),
):
    try:
        return invoicing_service.mark_otr_submitted(context.tenant_id, invoice_id, actor=context.actor)
    except SERVICE_ERRORS as exc:
        raise to_http_exception(exc, "Invoice")
