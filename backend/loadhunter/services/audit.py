"""Append-only audit trail with non-fatal write semantics."""
from __future__ import annotations

import sqlite3
from typing import Any, Dict, Optional

from loadhunter.core.errors import AuditLogWriteFailure
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import AuditLogEntry
from loadhunter.services.dispatch_state import DispatchStateStore, get_dispatch_state_store


class AuditTrail:
    """Writes audit entries; a failed write degrades the result instead of aborting it."""

    def __init__(self, store: Optional[DispatchStateStore] = None) -> None:
        self._store = store

    @property
    def store(self) -> DispatchStateStore:
        return self._store or get_dispatch_state_store()

    def append(
        self,
        tenant_id: str,
        *,
        entity_type: str,
        entity_id: str,
        action: str,
        actor: str,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        once: bool = False,
    ) -> bool:
        """Return True when the entry was persisted, or already present when `once` is set."""
        try:
            entry = AuditLogEntry(
                audit_id=self.store.generate_id(tenant_id, "audit", "AUD"),
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor=actor or "system",
                before=before,
                after=after,
                notes=notes,
            )
            self.store.append_audit_entry(tenant_id, entry, once=once)
        except (AuditLogWriteFailure, sqlite3.Error) as exc:
            logger.warning(
                "Audit log write failed",
                degraded=True,
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                error=str(exc),
            )
            return False
        return True
