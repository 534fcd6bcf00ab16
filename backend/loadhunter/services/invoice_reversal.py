"""Return an invoice to audit while it has not yet left the system."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from loadhunter.core.config import get_settings
from loadhunter.core.errors import ReversalBlocked
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import (
    Invoice,
    InvoiceStatus,
    LoadStatus,
    ReversalEligibility,
    ReversalResult,
)
from loadhunter.services.audit import AuditTrail
from loadhunter.services.dispatch_state import DispatchStateStore, get_dispatch_state_store


BLOCKING_INVOICE_STATUSES = {
    InvoiceStatus.PAID.value,
    InvoiceStatus.OVERDUE.value,
    InvoiceStatus.CANCELLED.value,
    InvoiceStatus.SENT.value,
}
DELIVERED_EMAIL_STATUSES = {"sent", "delivered"}
RETURNED_TO_AUDIT_MARKER = "[RETURNED TO AUDIT]"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_reversal(invoice: Invoice, last_email_status: Optional[str]) -> ReversalEligibility:
    """Checks run in a fixed order; the first failing one supplies the reason."""
    status = invoice.status.value
    if status in BLOCKING_INVOICE_STATUSES:
        return ReversalEligibility(
            allowed=False,
            reason=f'Invoice status is "{status}"',
            requires_formal_reversal=True,
        )
    if (invoice.amount_paid or 0) > 0:
        return ReversalEligibility(
            allowed=False,
            reason=f"Invoice has payments recorded (${invoice.amount_paid:.2f})",
            requires_formal_reversal=True,
        )
    if invoice.otr_submitted_at is not None:
        return ReversalEligibility(
            allowed=False,
            reason="Invoice was submitted to OTR factoring",
            requires_formal_reversal=True,
        )
    email_status = (last_email_status or "").strip().lower()
    if email_status in DELIVERED_EMAIL_STATUSES:
        return ReversalEligibility(
            allowed=False,
            reason=f"Invoice was sent via email (status: {email_status})",
            requires_formal_reversal=True,
        )
    return ReversalEligibility(allowed=True)


class InvoiceReversalGuard:
    """Decides whether an invoice is still internal and performs the return to audit."""

    def __init__(
        self,
        store: Optional[DispatchStateStore] = None,
        clock: Callable[[], datetime] = _utcnow,
        restore_operational_status: Optional[bool] = None,
    ) -> None:
        self._store = store
        self._clock = clock
        self.settings = get_settings()
        if restore_operational_status is None:
            restore_operational_status = self.settings.reversal_restores_operational_status
        self.restore_operational_status = restore_operational_status

    @property
    def store(self) -> DispatchStateStore:
        return self._store or get_dispatch_state_store()

    def _load_invoice(self, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = self.store.get_invoice(tenant_id, invoice_id)
        if invoice is None:
            raise KeyError(invoice_id)
        return invoice

    def can_reverse(self, tenant_id: str, invoice_id: str) -> ReversalEligibility:
        invoice = self._load_invoice(tenant_id, invoice_id)
        return evaluate_reversal(invoice, self.store.latest_invoice_email_status(tenant_id, invoice_id))

    def _blocked(self, tenant_id: str, invoice_id: str, eligibility: ReversalEligibility) -> ReversalBlocked:
        logger.info(
            "Invoice reversal blocked",
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            reason=eligibility.reason,
        )
        return ReversalBlocked(
            eligibility.reason or "Invoice cannot be returned to audit",
            requires_formal_reversal=eligibility.requires_formal_reversal,
        )

    def reverse(self, tenant_id: str, invoice_id: str, actor: str) -> ReversalResult:
        invoice = self._load_invoice(tenant_id, invoice_id)
        eligibility = evaluate_reversal(invoice, self.store.latest_invoice_email_status(tenant_id, invoice_id))
        if not eligibility.allowed:
            raise self._blocked(tenant_id, invoice_id, eligibility)

        # The snapshot above may already be stale; the store repeats every check
        # inside the same transaction that unlinks the loads.
        previous: Dict[str, str] = {}

        def _evaluate(current: Invoice, last_email_status: Optional[str]) -> ReversalEligibility:
            previous["status"] = current.status.value
            return evaluate_reversal(current, last_email_status)

        restored_status: Optional[str] = None
        if self.restore_operational_status:
            restored_status = LoadStatus(self.settings.reversal_restored_status).value
        stamp = self._clock().date().isoformat()
        eligibility, invoice, load_ids = self.store.return_invoice_to_audit(
            tenant_id,
            invoice_id,
            evaluate=_evaluate,
            marker=f"{RETURNED_TO_AUDIT_MARKER} {stamp}",
            restored_status=restored_status,
        )
        if not eligibility.allowed:
            raise self._blocked(tenant_id, invoice_id, eligibility)
        load_numbers = [load.load_number for load in self.store.list_loads(tenant_id, load_ids)]

        audit_logged = AuditTrail(self.store).append(
            tenant_id,
            entity_type="invoice",
            entity_id=invoice_id,
            action="invoice_returned_to_audit",
            actor=actor,
            before={"status": previous.get("status")},
            after={
                "status": InvoiceStatus.CANCELLED.value,
                "invoice_number": invoice.invoice_number,
                "load_ids": load_ids,
                "load_numbers": load_numbers,
                "operational_status_restored": restored_status,
            },
        )
        logger.info(
            "Invoice returned to audit",
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            invoice_number=invoice.invoice_number,
            loads=len(load_ids),
        )
        return ReversalResult(
            invoice_id=invoice_id,
            invoice_number=invoice.invoice_number,
            load_ids=load_ids,
            load_numbers=load_numbers,
            operational_status_restored=restored_status is not None,
            audit_logged=audit_logged,
        )


invoice_reversal_guard = InvoiceReversalGuard()
