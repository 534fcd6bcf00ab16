"""Match lifecycle: candidate creation, dispatcher transitions, grouping, and expiry sweep."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from loadhunter.core.config import get_settings
from loadhunter.core.errors import InvalidTransition, TenantScopeViolation
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import (
    GroupedMatchView,
    HuntPlan,
    LoadPosting,
    Match,
    MatchStatus,
    MatchTransitionRequest,
    MatchTransitionResult,
)
from loadhunter.services.audit import AuditTrail
from loadhunter.services.dispatch_state import DispatchStateStore, get_dispatch_state_store, parse_iso_utc
from loadhunter.services.hunt_plans import eligible_distance
from loadhunter.services.postings import PostingService


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchEngine:
    """Owns every write to a match except the sweep's move to `missed`."""

    ALLOWED_TRANSITIONS = {
        MatchStatus.UNREVIEWED.value: {MatchStatus.SKIPPED.value, MatchStatus.WAITLIST.value, MatchStatus.BID.value},
        MatchStatus.WAITLIST.value: {MatchStatus.SKIPPED.value, MatchStatus.BID.value},
        MatchStatus.SKIPPED.value: set(),
        MatchStatus.BID.value: set(),
        MatchStatus.BOOKED.value: set(),
        MatchStatus.MISSED.value: set(),
    }
    DISPATCHER_TARGETS = {MatchStatus.SKIPPED.value, MatchStatus.WAITLIST.value, MatchStatus.BID.value}
    RE_REVIEWABLE = {MatchStatus.SKIPPED.value, MatchStatus.WAITLIST.value}
    MAX_WRITE_ATTEMPTS = 3

    def __init__(
        self,
        store: Optional[DispatchStateStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self.settings = get_settings()

    @property
    def store(self) -> DispatchStateStore:
        return self._store or get_dispatch_state_store()

    @property
    def audit(self) -> AuditTrail:
        return AuditTrail(self.store)

    # -- candidates --------------------------------------------------------

    def _resolve_plans(self, tenant_id: str, hunt_plans: Optional[Sequence[HuntPlan]]) -> List[HuntPlan]:
        if hunt_plans is None:
            return self.store.list_hunt_plans(tenant_id, enabled_only=True)
        resolved: List[HuntPlan] = []
        for plan in hunt_plans:
            stored = self.store.get_hunt_plan(tenant_id, plan.hunt_plan_id)
            if stored is None or stored.vehicle_id != plan.vehicle_id:
                raise TenantScopeViolation(f"Hunt plan {plan.hunt_plan_id} does not belong to tenant {tenant_id}")
            resolved.append(stored)
        return resolved

    def create_candidates(
        self,
        tenant_id: str,
        posting: LoadPosting | str,
        hunt_plans: Optional[Sequence[HuntPlan]] = None,
        actor: str = "system",
    ) -> List[Match]:
        """Create one `unreviewed` match per accepting plan; pairs already matched are skipped."""
        posting_id = posting if isinstance(posting, str) else posting.posting_id
        stored_posting = self.store.get_posting(tenant_id, posting_id)
        if stored_posting is None:
            raise KeyError(posting_id)

        created: List[Match] = []
        for plan in self._resolve_plans(tenant_id, hunt_plans):
            distance = eligible_distance(plan, stored_posting)
            if distance is None:
                continue
            now = self._clock()
            match = Match(
                match_id=self.store.generate_id(tenant_id, "match", "MCH"),
                posting_id=stored_posting.posting_id,
                hunt_plan_id=plan.hunt_plan_id,
                vehicle_id=plan.vehicle_id,
                distance_miles=distance,
                matched_at=now,
                updated_at=now,
            )
            if self.store.insert_match_if_absent(tenant_id, match):
                created.append(match)
                self.audit.append(
                    tenant_id,
                    entity_type="match",
                    entity_id=match.match_id,
                    action="match_created",
                    actor=actor,
                    after={
                        "match_status": match.match_status.value,
                        "posting_id": match.posting_id,
                        "vehicle_id": match.vehicle_id,
                        "hunt_plan_id": match.hunt_plan_id,
                        "distance_miles": match.distance_miles,
                    },
                )

        if created:
            PostingService(self.store).mark_matched(tenant_id, stored_posting)
        logger.info(
            "Match candidates created",
            tenant_id=tenant_id,
            posting_id=stored_posting.posting_id,
            created=len(created),
        )
        return created

    # -- transitions -------------------------------------------------------

    def _write_with_retry(
        self,
        tenant_id: str,
        match_id: str,
        build: Callable[[Match], Optional[Match]],
    ) -> Match:
        """Read, validate via `build`, and conditionally write; a lost race re-validates."""
        for _ in range(self.MAX_WRITE_ATTEMPTS):
            current = self.store.get_match(tenant_id, match_id)
            if current is None:
                raise KeyError(match_id)
            updated = build(current)
            if updated is None:
                return current
            updated.version = current.version + 1
            updated.updated_at = self._clock()
            if self.store.compare_and_set_match(
                tenant_id,
                updated,
                expected_status=current.match_status.value,
                expected_version=current.version,
            ):
                return updated
            logger.info("Match write lost race; re-validating", tenant_id=tenant_id, match_id=match_id)
        raise InvalidTransition("Match is being modified concurrently; retry", match_id=match_id)

    def transition(
        self,
        tenant_id: str,
        match_id: str,
        target: MatchStatus | str,
        actor: str,
        payload: Optional[MatchTransitionRequest] = None,
    ) -> MatchTransitionResult:
        target_value = MatchStatus(target).value
        if target_value not in self.DISPATCHER_TARGETS:
            raise InvalidTransition(
                f"'{target_value}' cannot be requested by a dispatcher",
                match_id=match_id,
            )
        payload = payload or MatchTransitionRequest(target=MatchStatus(target_value))
        if target_value == MatchStatus.BID.value:
            if not payload.bid_rate or payload.bid_rate <= 0:
                raise InvalidTransition("bid_rate must be greater than zero", match_id=match_id)
            if not (payload.bid_by or "").strip():
                raise InvalidTransition("bid_by is required to place a bid", match_id=match_id)

        previous: Dict[str, str] = {}

        def _build(current: Match) -> Optional[Match]:
            current_status = current.match_status.value
            if payload.expected_version is not None and payload.expected_version != current.version:
                raise InvalidTransition(
                    f"Version conflict for {match_id}. expected={payload.expected_version} current={current.version}",
                    match_id=match_id,
                    current_status=current_status,
                )
            allowed = self.ALLOWED_TRANSITIONS.get(current_status, set())
            if target_value not in allowed:
                raise InvalidTransition(
                    f"Invalid match transition {current_status} -> {target_value}. Allowed: {sorted(allowed)}",
                    match_id=match_id,
                    current_status=current_status,
                )
            previous["status"] = current_status
            changes: Dict[str, object] = {"match_status": MatchStatus(target_value), "reviewed_by": actor}
            if target_value == MatchStatus.BID.value:
                changes.update(bid_rate=payload.bid_rate, bid_by=payload.bid_by.strip(), bid_at=self._clock())
            return current.model_copy(update=changes)

        updated = self._write_with_retry(tenant_id, match_id, _build)
        audit_logged = self.audit.append(
            tenant_id,
            entity_type="match",
            entity_id=match_id,
            action=f"match_{target_value}",
            actor=actor,
            before={"match_status": previous.get("status")},
            after={"match_status": target_value, "bid_rate": updated.bid_rate},
        )
        logger.info(
            "Match transitioned",
            tenant_id=tenant_id,
            match_id=match_id,
            from_status=previous.get("status"),
            to_status=target_value,
            actor=actor,
            audit_logged=audit_logged,
        )
        return MatchTransitionResult(match=updated, audit_logged=audit_logged)

    def re_review(self, tenant_id: str, match_id: str, actor: str) -> MatchTransitionResult:
        """Return a skipped or waitlisted match to `unreviewed`."""
        previous: Dict[str, str] = {}

        def _build(current: Match) -> Optional[Match]:
            current_status = current.match_status.value
            if current_status not in self.RE_REVIEWABLE:
                raise InvalidTransition(
                    f"Only skipped or waitlisted matches can be re-reviewed (current: {current_status})",
                    match_id=match_id,
                    current_status=current_status,
                )
            previous["status"] = current_status
            return current.model_copy(update={"match_status": MatchStatus.UNREVIEWED, "reviewed_by": actor})

        updated = self._write_with_retry(tenant_id, match_id, _build)
        audit_logged = self.audit.append(
            tenant_id,
            entity_type="match",
            entity_id=match_id,
            action="match_re_review",
            actor=actor,
            before={"match_status": previous.get("status")},
            after={"match_status": MatchStatus.UNREVIEWED.value},
        )
        return MatchTransitionResult(match=updated, audit_logged=audit_logged)

    def mark_booked(self, tenant_id: str, match_id: str, load_id: str, rate: float) -> Match:
        """`bid -> booked`; repeating it for the same load is a no-op."""

        def _build(current: Match) -> Optional[Match]:
            current_status = current.match_status.value
            if current_status == MatchStatus.BOOKED.value:
                if current.booked_load_id == load_id:
                    return None
                raise InvalidTransition(
                    f"Match already booked to load {current.booked_load_id}",
                    match_id=match_id,
                    current_status=current_status,
                )
            if current_status != MatchStatus.BID.value:
                raise InvalidTransition(
                    f"Only a match in 'bid' can be booked (current: {current_status})",
                    match_id=match_id,
                    current_status=current_status,
                )
            return current.model_copy(
                update={"match_status": MatchStatus.BOOKED, "booked_load_id": load_id, "bid_rate": rate}
            )

        return self._write_with_retry(tenant_id, match_id, _build)

    # -- reads -------------------------------------------------------------

    def get_match(self, tenant_id: str, match_id: str) -> Match:
        match = self.store.get_match(tenant_id, match_id)
        if match is None:
            raise KeyError(match_id)
        return match

    def list_matches(
        self,
        tenant_id: str,
        status: Optional[MatchStatus] = None,
        posting_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
    ) -> List[Match]:
        return self.store.list_matches(tenant_id, status=status, posting_id=posting_id, vehicle_id=vehicle_id)

    @staticmethod
    def group_by_posting(
        matches: Iterable[Match],
        my_vehicle_ids: Iterable[str] = (),
        grouping_enabled: bool = True,
    ) -> List[GroupedMatchView]:
        """View-only grouping; the caller's own vehicles sort first, then nearest."""
        mine = set(my_vehicle_ids)

        def _rank(match: Match) -> tuple:
            return (match.vehicle_id not in mine, match.distance_miles, match.matched_at, match.match_id)

        if not grouping_enabled:
            return [
                GroupedMatchView(posting_id=m.posting_id, primary=m, matches=[m], match_count=1, is_grouped=False)
                for m in matches
            ]

        buckets: Dict[str, List[Match]] = {}
        for match in matches:
            buckets.setdefault(match.posting_id, []).append(match)

        views: List[GroupedMatchView] = []
        for posting_id, members in buckets.items():
            ordered = sorted(members, key=_rank)
            views.append(
                GroupedMatchView(
                    posting_id=posting_id,
                    primary=ordered[0],
                    matches=ordered,
                    match_count=len(ordered),
                    is_grouped=len(ordered) > 1,
                )
            )
        return views

    # -- expiry ------------------------------------------------------------

    def sweep_expired(
        self,
        tenant_id: Optional[str] = None,
        cross_tenant: bool = False,
        now: Optional[datetime] = None,
    ) -> int:
        """Move expired non-terminal matches to `missed`; returns how many moved."""
        if tenant_id is None and not cross_tenant:
            raise TenantScopeViolation("Sweeping every tenant requires the cross-tenant flag")
        now = now or self._clock()
        fallback = timedelta(hours=self.settings.match_expiry_fallback_hours)

        expired = 0
        for row in self.store.list_expirable_matches(tenant_id, cross_tenant=cross_tenant):
            expires_at = parse_iso_utc(row.get("expires_at"))
            if expires_at is None:
                matched_at = parse_iso_utc(row.get("matched_at"))
                if matched_at is None:
                    continue
                expires_at = matched_at + fallback
            if expires_at > now:
                continue
            previous = self.store.expire_match(row["tenant_id"], row["match_id"], missed_at=now)
            if previous is None:
                continue
            expired += 1
            self.audit.append(
                row["tenant_id"],
                entity_type="match",
                entity_id=row["match_id"],
                action="match_missed",
                actor="system",
                before={"match_status": previous},
                after={"match_status": MatchStatus.MISSED.value, "expires_at": expires_at.isoformat()},
            )

        logger.info(
            "Expired matches swept",
            tenant_id=tenant_id,
            cross_tenant=cross_tenant,
            expired=expired,
        )
        return expired


match_engine = MatchEngine()
