"""Invoice creation and the lifecycle events that make an invoice leave the system."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple

from loadhunter.core.config import get_settings
from loadhunter.core.errors import ConcurrentUpdateConflict, TenantScopeViolation
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import (
    FinancialStatus,
    Invoice,
    InvoiceCreateRequest,
    InvoiceLoad,
    InvoiceStatus,
)
from loadhunter.services.audit import AuditTrail
from loadhunter.services.dispatch_state import DispatchStateStore, get_dispatch_state_store


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InvoicingService:
    """Records invoices, deliveries, payments, and factoring submissions."""

    SENDABLE_STATUSES = {InvoiceStatus.DRAFT, InvoiceStatus.OPEN}
    DELIVERED_EMAIL_STATUSES = {"sent", "delivered"}
    MAX_WRITE_ATTEMPTS = 3

    def __init__(self, store: Optional[DispatchStateStore] = None, clock: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._clock = clock
        self.settings = get_settings()

    @property
    def store(self) -> DispatchStateStore:
        return self._store or get_dispatch_state_store()

    def get_invoice(self, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = self.store.get_invoice(tenant_id, invoice_id)
        if invoice is None:
            raise KeyError(invoice_id)
        return invoice

    def create_invoice(self, tenant_id: str, request: InvoiceCreateRequest, actor: str) -> Invoice:
        load_ids = list(dict.fromkeys(request.load_ids))
        loads = self.store.list_loads(tenant_id, load_ids)
        found = {load.load_id for load in loads}
        missing = [load_id for load_id in load_ids if load_id not in found]
        if missing:
            raise KeyError(missing[0])

        already = set(self.store.list_invoiced_load_ids(tenant_id, load_ids))
        already.update(load.load_id for load in loads if load.financial_status == FinancialStatus.INVOICED)
        if already:
            raise ValueError(f"Loads already invoiced: {sorted(already)}")

        customer_ids = {load.customer_id for load in loads if load.customer_id}
        customer_id = request.customer_id
        if customer_id is None and len(customer_ids) == 1:
            customer_id = customer_ids.pop()

        total = round(sum(load.rate for load in loads), 2)
        today = self._clock().date()
        invoice = Invoice(
            invoice_id=self.store.generate_id(tenant_id, "invoice_record", "IVC"),
            invoice_number=str(self.store.next_sequence(tenant_id, "invoice")),
            customer_id=customer_id,
            customer_name=request.customer_name or (loads[0].broker_name if loads else None),
            status=InvoiceStatus.DRAFT,
            total_amount=total,
            balance_due=total,
            invoice_date=today,
            due_date=request.due_date or today + timedelta(days=self.settings.invoice_payment_terms_days),
            notes=request.notes,
        )
        links = [
            InvoiceLoad(invoice_id=invoice.invoice_id, load_id=load.load_id, amount=load.rate)
            for load in loads
        ]
        self.store.create_invoice(tenant_id, invoice, links)
        AuditTrail(self.store).append(
            tenant_id,
            entity_type="invoice",
            entity_id=invoice.invoice_id,
            action="invoice_created",
            actor=actor,
            after={"invoice_number": invoice.invoice_number, "load_ids": load_ids, "total_amount": total},
        )
        logger.info(
            "Invoice created",
            tenant_id=tenant_id,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            loads=len(load_ids),
        )
        return invoice

    def _update_invoice(
        self,
        tenant_id: str,
        invoice_id: str,
        mutate: Callable[[Invoice], bool],
    ) -> Tuple[Invoice, Optional[Invoice]]:
        """Re-read and re-apply `mutate` until the versioned write lands.

        `mutate` edits the invoice in place and returns False when nothing
        changed. Returns the current invoice and its pre-write copy, or None
        for the copy when no write was needed.
        """
        for _ in range(self.MAX_WRITE_ATTEMPTS):
            invoice = self.get_invoice(tenant_id, invoice_id)
            before = invoice.model_copy()
            if not mutate(invoice):
                return invoice, None
            try:
                return self.store.save_invoice(tenant_id, invoice), before
            except ConcurrentUpdateConflict:
                logger.info("Invoice write lost race; re-reading", tenant_id=tenant_id, invoice_id=invoice_id)
        raise ConcurrentUpdateConflict(
            f"Invoice {invoice_id} is being modified concurrently; retry",
            entity_id=invoice_id,
        )

    def record_email_delivery(
        self,
        tenant_id: str,
        invoice_id: str,
        status: str,
        recipient: Optional[str] = None,
        actor: str = "system",
    ) -> Invoice:
        self.get_invoice(tenant_id, invoice_id)
        entry = self.store.add_invoice_email_log(tenant_id, invoice_id, status, recipient)
        delivered = entry["status"] in self.DELIVERED_EMAIL_STATUSES

        def _mark_sent(invoice: Invoice) -> bool:
            if not delivered or invoice.status not in self.SENDABLE_STATUSES:
                return False
            invoice.status = InvoiceStatus.SENT
            invoice.sent_at = self._clock()
            return True

        invoice, before = self._update_invoice(tenant_id, invoice_id, _mark_sent)
        AuditTrail(self.store).append(
            tenant_id,
            entity_type="invoice",
            entity_id=invoice_id,
            action="invoice_email_logged",
            actor=actor,
            before={"status": (before or invoice).status.value},
            after={
                "status": invoice.status.value,
                "email_status": entry["status"],
                "recipient": recipient,
                "log_id": entry["log_id"],
            },
        )
        logger.info(
            "Invoice email logged",
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            email_status=entry["status"],
            invoice_status=invoice.status.value,
        )
        return invoice

    def record_payment(self, tenant_id: str, invoice_id: str, amount: float, actor: str = "system") -> Invoice:
        if amount <= 0:
            raise ValueError("Payment amount must be greater than zero")

        def _apply(invoice: Invoice) -> bool:
            if invoice.status == InvoiceStatus.CANCELLED:
                raise ValueError(f"Invoice {invoice.invoice_number} is cancelled")
            invoice.amount_paid = round(invoice.amount_paid + amount, 2)
            invoice.balance_due = round(max(0.0, invoice.total_amount - invoice.amount_paid), 2)
            if invoice.balance_due == 0:
                invoice.status = InvoiceStatus.PAID
                invoice.paid_at = self._clock()
            return True

        invoice, before = self._update_invoice(tenant_id, invoice_id, _apply)
        AuditTrail(self.store).append(
            tenant_id,
            entity_type="invoice",
            entity_id=invoice_id,
            action="invoice_payment_recorded",
            actor=actor,
            before={"status": before.status.value, "amount_paid": before.amount_paid},
            after={
                "status": invoice.status.value,
                "amount": amount,
                "amount_paid": invoice.amount_paid,
                "balance_due": invoice.balance_due,
            },
        )
        logger.info(
            "Invoice payment recorded",
            tenant_id=tenant_id,
            invoice_id=invoice_id,
            amount=amount,
            balance_due=invoice.balance_due,
        )
        return invoice

    def mark_otr_submitted(self, tenant_id: str, invoice_id: str, actor: str = "system") -> Invoice:
        def _submit(invoice: Invoice) -> bool:
            if invoice.otr_submitted_at is not None:
                return False
            if invoice.status == InvoiceStatus.CANCELLED:
                raise ValueError(f"Invoice {invoice.invoice_number} is cancelled")
            invoice.otr_submitted_at = self._clock()
            return True

        invoice, before = self._update_invoice(tenant_id, invoice_id, _submit)
        if before is not None:
            AuditTrail(self.store).append(
                tenant_id,
                entity_type="invoice",
                entity_id=invoice_id,
                action="invoice_otr_submitted",
                actor=actor,
                before={"otr_submitted_at": None},
                after={"otr_submitted_at": invoice.otr_submitted_at.isoformat()},
            )
            logger.info("Invoice submitted to factoring", tenant_id=tenant_id, invoice_id=invoice_id)
        return invoice

    def mark_overdue(
        self,
        tenant_id: Optional[str] = None,
        cross_tenant: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """Sent invoices past due with an open balance become `overdue`."""
        if tenant_id is None and not cross_tenant:
            raise TenantScopeViolation("Marking overdue invoices for every tenant requires the cross-tenant flag")
        today = (now or self._clock()).date()

        def _lapse(invoice: Invoice) -> bool:
            if invoice.status != InvoiceStatus.SENT:
                return False
            if invoice.due_date is None or invoice.due_date >= today or invoice.balance_due <= 0:
                return False
            invoice.status = InvoiceStatus.OVERDUE
            return True

        updated = 0
        for owner, candidate in self.store.list_invoices_by_status(
            tenant_id,
            InvoiceStatus.SENT.value,
            cross_tenant=cross_tenant,
        ):
            if not _lapse(candidate.model_copy()):
                continue
            invoice, before = self._update_invoice(owner, candidate.invoice_id, _lapse)
            if before is None:
                continue
            AuditTrail(self.store).append(
                owner,
                entity_type="invoice",
                entity_id=invoice.invoice_id,
                action="invoice_marked_overdue",
                actor="system",
                before={"status": before.status.value},
                after={"status": invoice.status.value, "due_date": invoice.due_date.isoformat()},
            )
            updated += 1
        logger.info("Overdue invoices marked", tenant_id=tenant_id, cross_tenant=cross_tenant, updated=updated)
        return updated


invoicing_service = InvoicingService()
