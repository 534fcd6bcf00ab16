"""Load posting ingestion: persistence, fingerprinting, and update detection."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from loadhunter.core.logging import logger
from loadhunter.models.dispatch import LoadPosting, ParsedPosting, PostingIngestRequest, PostingStatus
from loadhunter.services.audit import AuditTrail
from loadhunter.services.dispatch_state import DispatchStateStore, get_dispatch_state_store


UPDATE_WINDOW_HOURS = 48
MIN_POSTING_LIFETIME = timedelta(minutes=30)

_LOWERCASE_FIELDS = (
    "origin_city",
    "origin_state",
    "destination_city",
    "destination_state",
    "equipment_type",
    "broker_email",
)
_TEXT_FIELDS = (
    "origin_zip",
    "destination_zip",
    "pickup_date",
    "delivery_date",
    "order_number",
    "reference",
    "po_number",
    "broker_company",
)
_NUMERIC_FIELDS = ("rate", "weight", "available_feet", "loaded_miles")


def _clean_text(value: Any, lower: bool = False) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text.lower() if lower else text


def compute_fingerprint(parsed: ParsedPosting) -> Optional[str]:
    """SHA-256 over the canonical load fields; None when origin or destination is unknown."""
    canonical: Dict[str, Any] = {}
    for field in _LOWERCASE_FIELDS:
        canonical[field] = _clean_text(getattr(parsed, field), lower=True)
    for field in _TEXT_FIELDS:
        canonical[field] = _clean_text(getattr(parsed, field))
    for field in _NUMERIC_FIELDS:
        value = getattr(parsed, field)
        canonical[field] = round(float(value), 2) if value is not None else None
    canonical["pieces"] = int(parsed.pieces) if parsed.pieces is not None else None

    has_origin = canonical["origin_city"] or canonical["origin_zip"]
    has_destination = canonical["destination_city"] or canonical["destination_zip"]
    if not has_origin or not has_destination:
        return None
    payload = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class PostingService:
    """Stores pre-parsed postings; parsing and geocoding happen upstream."""

    def __init__(self, store: Optional[DispatchStateStore] = None) -> None:
        self._store = store

    @property
    def store(self) -> DispatchStateStore:
        return self._store or get_dispatch_state_store()

    @staticmethod
    def _normalize_expiry(received_at: datetime, expires_at: Optional[datetime]) -> Optional[datetime]:
        if expires_at is None:
            return None
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= received_at:
            return received_at + MIN_POSTING_LIFETIME
        return expires_at

    def ingest(self, tenant_id: str, request: PostingIngestRequest, actor: str = "system") -> LoadPosting:
        received_at = request.received_at or datetime.now(timezone.utc)
        if received_at.tzinfo is None:
            received_at = received_at.replace(tzinfo=timezone.utc)

        parsed = request.parsed or ParsedPosting()
        parse_error = request.parse_error
        if request.parsed is None and not parse_error:
            parse_error = "No parsed fields supplied"
        status = PostingStatus.PROCESSING_FAILED if parse_error else PostingStatus.NEW

        fingerprint = compute_fingerprint(parsed) if status == PostingStatus.NEW else None
        parent: Optional[LoadPosting] = None
        if fingerprint:
            parent = self.store.find_posting_by_fingerprint(
                tenant_id,
                fingerprint,
                since=received_at - timedelta(hours=UPDATE_WINDOW_HOURS),
            )

        posting = LoadPosting(
            posting_id=self.store.generate_id(tenant_id, "posting", "PST"),
            channel=(request.channel or "email").strip().lower(),
            sender=request.sender.strip(),
            sender_name=request.sender_name,
            subject=request.subject,
            body=request.body,
            received_at=received_at,
            expires_at=self._normalize_expiry(received_at, request.expires_at),
            is_update=parent is not None,
            parent_posting_id=parent.posting_id if parent else None,
            status=status,
            parse_error=parse_error,
            content_fingerprint=fingerprint,
            parsed=parsed,
        )
        self.store.insert_posting(tenant_id, posting)
        AuditTrail(self.store).append(
            tenant_id,
            entity_type="posting",
            entity_id=posting.posting_id,
            action="posting_ingested",
            actor=actor,
            after={
                "status": posting.status.value,
                "channel": posting.channel,
                "is_update": posting.is_update,
                "parent_posting_id": posting.parent_posting_id,
            },
        )
        logger.info(
            "Posting ingested",
            tenant_id=tenant_id,
            posting_id=posting.posting_id,
            status=posting.status.value,
            is_update=posting.is_update,
            parent_posting_id=posting.parent_posting_id,
        )
        return posting

    def get(self, tenant_id: str, posting_id: str) -> LoadPosting:
        posting = self.store.get_posting(tenant_id, posting_id)
        if posting is None:
            raise KeyError(posting_id)
        return posting

    def list_postings(self, tenant_id: str, limit: int = 200) -> List[LoadPosting]:
        return self.store.list_postings(tenant_id, limit=limit)

    def mark_matched(self, tenant_id: str, posting: LoadPosting | str) -> LoadPosting:
        """`new -> matched`; a posting in any other status is left alone."""
        posting_id = posting if isinstance(posting, str) else posting.posting_id
        self.store.mark_posting_status(
            tenant_id,
            posting_id,
            PostingStatus.MATCHED.value,
            expected_status=PostingStatus.NEW.value,
        )
        return self.get(tenant_id, posting_id)


posting_service = PostingService()
