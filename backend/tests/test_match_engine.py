"""Match lifecycle tests: candidate creation, transitions, grouping, and the expiry sweep."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
import os
import sys
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_state"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["OPS_STATE_PATH"] = str(TMP / "dispatch_state.json")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from loadhunter.core.errors import AuditLogWriteFailure, InvalidTransition, TenantScopeViolation  # noqa: E402
from loadhunter.models.dispatch import (  # noqa: E402
    Coordinates,
    HuntPlan,
    HuntPlanRequest,
    LoadPosting,
    Match,
    MatchStatus,
    MatchTransitionRequest,
    ParsedPosting,
    PostingIngestRequest,
    PostingStatus,
    Vehicle,
)
from loadhunter.services.dispatch_state import DispatchStateStore  # noqa: E402
from loadhunter.services.hunt_plans import HuntPlanRegistry, equipment_compatible, haversine_miles  # noqa: E402
from loadhunter.services.match_engine import MatchEngine  # noqa: E402
from loadhunter.services.postings import PostingService  # noqa: E402


NOW = datetime(2025, 3, 14, 15, 0, tzinfo=timezone.utc)
CHICAGO = Coordinates(lat=41.8781, lng=-87.6298)
MILWAUKEE = Coordinates(lat=43.0389, lng=-87.9065)
DALLAS = Coordinates(lat=32.7767, lng=-96.7970)


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _store(tmp_path: Path) -> DispatchStateStore:
    return DispatchStateStore(tmp_path / "dispatch_state.db")


def _plan(
    store: DispatchStateStore,
    tenant: str,
    vehicle_id: str,
    coords: Coordinates = MILWAUKEE,
    **kwargs,
) -> HuntPlan:
    registry = HuntPlanRegistry(store)
    registry.upsert_vehicle(tenant, Vehicle(vehicle_id=vehicle_id, unit_number=vehicle_id))
    return registry.create_plan(tenant, HuntPlanRequest(vehicle_id=vehicle_id, hunt_coordinates=coords, **kwargs))


def _posting(
    store: DispatchStateStore,
    tenant: str,
    *,
    order_number: str = "ORD-1",
    expires_at: datetime | None = None,
    parse_error: str | None = None,
    **parsed,
) -> LoadPosting:
    fields = {
        "origin_city": "Chicago",
        "origin_state": "IL",
        "destination_city": "Detroit",
        "destination_state": "MI",
        "pickup_coordinates": CHICAGO,
        "rate": 1000.0,
        "weight": 2000.0,
        "equipment_type": "Sprinter Van",
        "order_number": order_number,
    }
    fields.update(parsed)
    request = PostingIngestRequest(
        channel="sylectus",
        sender="loads@acme.test",
        received_at=NOW,
        expires_at=expires_at,
        parsed=ParsedPosting(**fields),
        parse_error=parse_error,
    )
    return PostingService(store).ingest(tenant, request)


def _engine(store: DispatchStateStore, now: datetime = NOW) -> MatchEngine:
    return MatchEngine(store, clock=FrozenClock(now))


def _bid(engine: MatchEngine, tenant: str, match_id: str, rate: float = 1000.0) -> Match:
    return engine.transition(
        tenant,
        match_id,
        MatchStatus.BID,
        "dispatcher-1",
        MatchTransitionRequest(target=MatchStatus.BID, bid_rate=rate, bid_by="dispatcher-1"),
    ).match


def test_haversine_and_equipment_helpers():
    assert 75 < haversine_miles(CHICAGO, MILWAUKEE) < 90
    assert haversine_miles(CHICAGO, CHICAGO) == pytest.approx(0.0)
    assert equipment_compatible("Sprinter Van", ["SPRINTER"])
    assert equipment_compatible("Large Straight", ["small straight"])
    assert equipment_compatible(None, ["flatbed"])
    assert not equipment_compatible("Flatbed", ["Cargo Van"])


def test_create_candidates_applies_radius_equipment_and_capacity(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "hunt"
    _plan(store, tenant, "V-MKE", vehicle_sizes=["Sprinter"])
    _plan(store, tenant, "V-DAL", coords=DALLAS)
    _plan(store, tenant, "V-FLAT", vehicle_sizes=["Flatbed"])
    _plan(store, tenant, "V-LIGHT", load_capacity_lbs=1500)
    _plan(store, tenant, "V-OFF", enabled=False)
    posting = _posting(store, tenant)

    matches = _engine(store).create_candidates(tenant, posting)

    assert [m.vehicle_id for m in matches] == ["V-MKE"]
    assert matches[0].match_status == MatchStatus.UNREVIEWED
    assert 75 < matches[0].distance_miles < 90
    assert store.get_posting(tenant, posting.posting_id).status == PostingStatus.MATCHED


def test_create_candidates_never_duplicates_a_vehicle_posting_pair(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "single-live"
    _plan(store, tenant, "V-1")
    posting = _posting(store, tenant)
    engine = _engine(store)

    first = engine.create_candidates(tenant, posting)
    assert len(first) == 1
    assert engine.create_candidates(tenant, posting) == []

    engine.transition(tenant, first[0].match_id, MatchStatus.SKIPPED, "dispatcher-1")
    assert engine.create_candidates(tenant, posting.posting_id) == []
    assert len(engine.list_matches(tenant, posting_id=posting.posting_id)) == 1


def test_concurrent_candidate_creation_keeps_one_match_per_pair(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "race-create"
    _plan(store, tenant, "V-1")
    posting = _posting(store, tenant)
    engine = _engine(store)

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda _: engine.create_candidates(tenant, posting.posting_id), range(16)))

    assert sum(len(created) for created in results) == 1
    assert len(engine.list_matches(tenant)) == 1


def test_failed_or_uncoordinated_postings_produce_no_candidates(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "no-coords"
    _plan(store, tenant, "V-1")
    engine = _engine(store)

    failed = _posting(store, tenant, order_number="ORD-F", parse_error="unreadable attachment")
    assert failed.status == PostingStatus.PROCESSING_FAILED
    assert engine.create_candidates(tenant, failed) == []

    missing = _posting(store, tenant, order_number="ORD-M", pickup_coordinates=None)
    assert engine.create_candidates(tenant, missing) == []
    assert store.get_posting(tenant, missing.posting_id).status == PostingStatus.NEW


def test_foreign_hunt_plan_is_rejected(tmp_path: Path):
    store = _store(tmp_path)
    _plan(store, "tenant-a", "V-A")
    foreign = _plan(store, "tenant-b", "V-B")
    posting = _posting(store, "tenant-a")

    with pytest.raises(TenantScopeViolation):
        _engine(store).create_candidates("tenant-a", posting, hunt_plans=[foreign])


def test_repost_is_flagged_as_update_of_original(tmp_path: Path):
    store = _store(tmp_path)
    original = _posting(store, "updates")
    repost = _posting(store, "updates")
    different = _posting(store, "updates", order_number="ORD-2")

    assert original.is_update is False
    assert repost.is_update is True
    assert repost.parent_posting_id == original.posting_id
    assert different.is_update is False


def test_dispatcher_transitions_follow_the_state_machine(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "machine"
    _plan(store, tenant, "V-1")
    engine = _engine(store)
    match = engine.create_candidates(tenant, _posting(store, tenant))[0]

    result = engine.transition(tenant, match.match_id, MatchStatus.WAITLIST, "dispatcher-1")
    assert result.audit_logged is True
    waitlisted = result.match
    assert waitlisted.match_status == MatchStatus.WAITLIST
    assert waitlisted.version == 2
    assert waitlisted.reviewed_by == "dispatcher-1"

    bid = _bid(engine, tenant, match.match_id, rate=1250.0)
    assert bid.match_status == MatchStatus.BID
    assert bid.bid_rate == 1250.0
    assert bid.bid_by == "dispatcher-1"
    assert bid.bid_at == NOW
    assert bid.version == 3

    with pytest.raises(InvalidTransition):
        engine.transition(tenant, match.match_id, MatchStatus.SKIPPED, "dispatcher-1")
    with pytest.raises(InvalidTransition):
        engine.transition(tenant, match.match_id, MatchStatus.WAITLIST, "dispatcher-1")


def test_bid_requires_positive_rate_and_bidder(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "bid-rules"
    _plan(store, tenant, "V-1")
    engine = _engine(store)
    match = engine.create_candidates(tenant, _posting(store, tenant))[0]

    with pytest.raises(InvalidTransition):
        engine.transition(tenant, match.match_id, MatchStatus.BID, "dispatcher-1")
    with pytest.raises(InvalidTransition):
        engine.transition(
            tenant,
            match.match_id,
            MatchStatus.BID,
            "dispatcher-1",
            MatchTransitionRequest(target=MatchStatus.BID, bid_rate=900.0),
        )
    assert engine.get_match(tenant, match.match_id).match_status == MatchStatus.UNREVIEWED


@pytest.mark.parametrize("target", [MatchStatus.BOOKED, MatchStatus.MISSED, MatchStatus.UNREVIEWED])
def test_system_owned_targets_cannot_be_requested(tmp_path: Path, target: MatchStatus):
    store = _store(tmp_path)
    tenant = "system-targets"
    _plan(store, tenant, "V-1")
    engine = _engine(store)
    match = engine.create_candidates(tenant, _posting(store, tenant))[0]

    with pytest.raises(InvalidTransition):
        engine.transition(tenant, match.match_id, target, "dispatcher-1")


def test_no_transition_leaves_booked_or_missed(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "terminal"
    _plan(store, tenant, "V-1")
    _plan(store, tenant, "V-2")
    engine = _engine(store)
    booked, missed = engine.create_candidates(tenant, _posting(store, tenant))

    _bid(engine, tenant, booked.match_id)
    engine.mark_booked(tenant, booked.match_id, "LOAD-000001", 1000.0)
    engine.sweep_expired(tenant, now=NOW + timedelta(hours=3))
    assert engine.get_match(tenant, missed.match_id).match_status == MatchStatus.MISSED

    for match_id in (booked.match_id, missed.match_id):
        for target in (MatchStatus.SKIPPED, MatchStatus.WAITLIST, MatchStatus.BID):
            with pytest.raises(InvalidTransition):
                engine.transition(
                    tenant,
                    match_id,
                    target,
                    "dispatcher-1",
                    MatchTransitionRequest(target=target, bid_rate=10.0, bid_by="dispatcher-1"),
                )
        with pytest.raises(InvalidTransition):
            engine.re_review(tenant, match_id, "dispatcher-1")

    with pytest.raises(InvalidTransition):
        engine.mark_booked(tenant, missed.match_id, "LOAD-000002", 1000.0)
    with pytest.raises(InvalidTransition):
        engine.mark_booked(tenant, booked.match_id, "LOAD-000002", 1000.0)
    assert engine.mark_booked(tenant, booked.match_id, "LOAD-000001", 1000.0).booked_load_id == "LOAD-000001"


def test_re_review_returns_skipped_and_waitlisted_matches(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "re-review"
    _plan(store, tenant, "V-1")
    _plan(store, tenant, "V-2")
    engine = _engine(store)
    skipped, waitlisted = engine.create_candidates(tenant, _posting(store, tenant))

    engine.transition(tenant, skipped.match_id, MatchStatus.SKIPPED, "dispatcher-1")
    engine.transition(tenant, waitlisted.match_id, MatchStatus.WAITLIST, "dispatcher-1")

    for match_id in (skipped.match_id, waitlisted.match_id):
        restored = engine.re_review(tenant, match_id, "dispatcher-2").match
        assert restored.match_status == MatchStatus.UNREVIEWED
        assert restored.reviewed_by == "dispatcher-2"

    with pytest.raises(InvalidTransition):
        engine.re_review(tenant, skipped.match_id, "dispatcher-2")


def test_expected_version_mismatch_is_rejected(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "versions"
    _plan(store, tenant, "V-1")
    engine = _engine(store)
    match = engine.create_candidates(tenant, _posting(store, tenant))[0]
    engine.transition(tenant, match.match_id, MatchStatus.WAITLIST, "dispatcher-1")

    with pytest.raises(InvalidTransition):
        engine.transition(
            tenant,
            match.match_id,
            MatchStatus.SKIPPED,
            "dispatcher-2",
            MatchTransitionRequest(target=MatchStatus.SKIPPED, expected_version=1),
        )


def test_concurrent_transitions_have_a_single_winner(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "race"
    _plan(store, tenant, "V-1")
    engine = _engine(store)
    match = engine.create_candidates(tenant, _posting(store, tenant))[0]

    def _attempt(i: int) -> str:
        target = MatchStatus.SKIPPED if i % 2 else MatchStatus.BID
        request = MatchTransitionRequest(target=target, bid_rate=800.0, bid_by=f"dispatcher-{i}")
        try:
            engine.transition(tenant, match.match_id, target, f"dispatcher-{i}", request)
        except InvalidTransition:
            return "rejected"
        return "won"

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_attempt, range(16)))

    assert outcomes.count("won") == 1
    final = engine.get_match(tenant, match.match_id)
    assert final.version == 2
    assert final.match_status in {MatchStatus.SKIPPED, MatchStatus.BID}


def test_missing_or_foreign_match_raises_key_error(tmp_path: Path):
    store = _store(tmp_path)
    _plan(store, "owner", "V-1")
    engine = _engine(store)
    match = engine.create_candidates("owner", _posting(store, "owner"))[0]

    with pytest.raises(KeyError):
        engine.transition("intruder", match.match_id, MatchStatus.SKIPPED, "dispatcher-1")
    assert engine.get_match("owner", match.match_id).match_status == MatchStatus.UNREVIEWED


def _view_match(match_id: str, posting_id: str, vehicle_id: str, distance: float) -> Match:
    return Match(
        match_id=match_id,
        posting_id=posting_id,
        hunt_plan_id=f"HNT-{vehicle_id}",
        vehicle_id=vehicle_id,
        distance_miles=distance,
        matched_at=NOW,
    )


def test_group_by_posting_prefers_callers_vehicle_then_nearest():
    matches = [
        _view_match("M1", "P1", "V-FAR", 150.0),
        _view_match("M2", "P1", "V-NEAR", 20.0),
        _view_match("M3", "P1", "V-MINE", 90.0),
        _view_match("M4", "P2", "V-NEAR", 40.0),
    ]

    grouped = MatchEngine.group_by_posting(matches, my_vehicle_ids=["V-MINE"])
    by_posting = {view.posting_id: view for view in grouped}

    assert by_posting["P1"].primary.match_id == "M3"
    assert [m.match_id for m in by_posting["P1"].matches] == ["M3", "M2", "M1"]
    assert by_posting["P1"].match_count == 3
    assert by_posting["P1"].is_grouped is True
    assert by_posting["P2"].is_grouped is False

    nearest_first = MatchEngine.group_by_posting(matches)
    assert {v.posting_id: v.primary.match_id for v in nearest_first}["P1"] == "M2"


def test_grouping_disabled_returns_one_view_per_match():
    matches = [_view_match("M1", "P1", "V-1", 10.0), _view_match("M2", "P1", "V-2", 5.0)]
    views = MatchEngine.group_by_posting(matches, grouping_enabled=False)
    assert [(v.primary.match_id, v.match_count, v.is_grouped) for v in views] == [("M1", 1, False), ("M2", 1, False)]


def test_sweep_expires_non_terminal_matches_but_never_booked(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "sweep"
    for vehicle_id in ("V-1", "V-2", "V-3", "V-4"):
        _plan(store, tenant, vehicle_id)
    engine = _engine(store)
    posting = _posting(store, tenant, expires_at=NOW + timedelta(hours=1))
    unreviewed, waitlisted, bid, booked = engine.create_candidates(tenant, posting)

    engine.transition(tenant, waitlisted.match_id, MatchStatus.WAITLIST, "dispatcher-1")
    _bid(engine, tenant, bid.match_id)
    _bid(engine, tenant, booked.match_id)
    engine.mark_booked(tenant, booked.match_id, "LOAD-000001", 1000.0)

    assert engine.sweep_expired(tenant, now=NOW + timedelta(minutes=30)) == 0
    assert engine.sweep_expired(tenant, now=NOW + timedelta(hours=2)) == 3
    assert engine.sweep_expired(tenant, now=NOW + timedelta(hours=2)) == 0

    statuses = {m.match_id: m.match_status for m in engine.list_matches(tenant)}
    assert statuses[booked.match_id] == MatchStatus.BOOKED
    for match in (unreviewed, waitlisted, bid):
        assert statuses[match.match_id] == MatchStatus.MISSED


def test_sweep_falls_back_to_match_age_without_posting_expiry(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "fallback"
    _plan(store, tenant, "V-1")
    engine = _engine(store)
    match = engine.create_candidates(tenant, _posting(store, tenant))[0]

    assert engine.sweep_expired(tenant, now=NOW + timedelta(hours=1)) == 0
    assert engine.sweep_expired(tenant, now=NOW + timedelta(hours=2, minutes=1)) == 1
    assert engine.get_match(tenant, match.match_id).missed_at == NOW + timedelta(hours=2, minutes=1)


def test_sweep_across_tenants_requires_explicit_flag(tmp_path: Path):
    store = _store(tmp_path)
    engine = _engine(store)
    for tenant in ("fleet-a", "fleet-b"):
        _plan(store, tenant, "V-1")
        engine.create_candidates(tenant, _posting(store, tenant, expires_at=NOW + timedelta(minutes=5)))

    with pytest.raises(TenantScopeViolation):
        engine.sweep_expired(now=NOW + timedelta(hours=1))

    assert engine.sweep_expired("fleet-a", now=NOW + timedelta(hours=1)) == 1
    assert engine.list_matches("fleet-b")[0].match_status == MatchStatus.UNREVIEWED
    assert engine.sweep_expired(cross_tenant=True, now=NOW + timedelta(hours=1)) == 1
    assert engine.list_matches("fleet-b")[0].match_status == MatchStatus.MISSED


def test_transition_reports_a_failed_audit_write(tmp_path: Path, monkeypatch):
    store = _store(tmp_path)
    tenant = "audit-down"
    _plan(store, tenant, "V-1")
    engine = _engine(store)
    match = engine.create_candidates(tenant, _posting(store, tenant))[0]

    def _audit_fails(*args, **kwargs):
        raise AuditLogWriteFailure("audit table unavailable")

    monkeypatch.setattr(store, "append_audit_entry", _audit_fails)
    waitlisted = engine.transition(tenant, match.match_id, MatchStatus.WAITLIST, "dispatcher-1")
    restored = engine.re_review(tenant, match.match_id, "dispatcher-1")
    monkeypatch.undo()

    assert waitlisted.audit_logged is False
    assert waitlisted.match.match_status == MatchStatus.WAITLIST
    assert restored.audit_logged is False
    assert restored.match.match_status == MatchStatus.UNREVIEWED
    assert engine.get_match(tenant, match.match_id).version == 3
    entries = store.list_audit_entries(tenant, entity_type="match", entity_id=match.match_id)
    assert [entry.action for entry in entries] == ["match_created"]


def test_candidate_creation_and_expiry_are_audited(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "audited"
    plan = _plan(store, tenant, "V-1")
    engine = _engine(store)
    posting = _posting(store, tenant, expires_at=NOW + timedelta(hours=1))
    match = engine.create_candidates(tenant, posting)[0]
    engine.transition(tenant, match.match_id, MatchStatus.WAITLIST, "dispatcher-1")
    engine.sweep_expired(tenant, now=NOW + timedelta(hours=2))

    entries = {
        entry.action: entry
        for entry in store.list_audit_entries(tenant, entity_type="match", entity_id=match.match_id)
    }
    assert sorted(entries) == ["match_created", "match_missed", "match_waitlist"]
    created = entries["match_created"]
    assert created.actor == "system"
    assert created.after["posting_id"] == posting.posting_id
    assert created.after["hunt_plan_id"] == plan.hunt_plan_id
    missed = entries["match_missed"]
    assert missed.actor == "system"
    assert missed.before == {"match_status": "waitlist"}
    assert missed.after["match_status"] == "missed"

    ingested = store.list_audit_entries(tenant, entity_type="posting", entity_id=posting.posting_id)
    assert [entry.action for entry in ingested] == ["posting_ingested"]


def test_hunt_plan_changes_are_audited(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "plans"
    plan = _plan(store, tenant, "V-1")
    HuntPlanRegistry(store).set_enabled(tenant, plan.hunt_plan_id, False, actor="dispatcher-7")

    actions = [
        entry.action
        for entry in store.list_audit_entries(tenant, entity_type="hunt_plan", entity_id=plan.hunt_plan_id)
    ]
    assert sorted(actions) == ["hunt_plan_created", "hunt_plan_disabled"]
    vehicle = store.list_audit_entries(tenant, entity_type="vehicle", entity_id="V-1")
    assert [entry.action for entry in vehicle] == ["vehicle_upserted"]


def test_sweep_racing_dispatchers_writes_each_match_once_per_winner(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "sweep-race"
    for index in range(1, 9):
        _plan(store, tenant, f"V-{index}")
    engine = _engine(store)
    matches = engine.create_candidates(tenant, _posting(store, tenant, expires_at=NOW + timedelta(hours=1)))
    assert len(matches) == 8

    def _dispatch(match: Match) -> bool:
        target = MatchStatus.BID if match.vehicle_id.endswith(("1", "3", "5", "7")) else MatchStatus.WAITLIST
        request = MatchTransitionRequest(target=target, bid_rate=900.0, bid_by="dispatcher-1")
        try:
            engine.transition(tenant, match.match_id, target, "dispatcher-1", request)
        except InvalidTransition:
            return False
        return True

    with ThreadPoolExecutor(max_workers=8) as pool:
        dispatched = [pool.submit(_dispatch, match) for match in matches[:4]]
        sweep = pool.submit(engine.sweep_expired, tenant, False, NOW + timedelta(hours=2))
        dispatched += [pool.submit(_dispatch, match) for match in matches[4:]]
        won = [future.result() for future in dispatched]
        expired = sweep.result()

    assert expired == 8
    for match, dispatcher_won in zip(matches, won):
        final = engine.get_match(tenant, match.match_id)
        assert final.match_status == MatchStatus.MISSED
        assert final.version == (3 if dispatcher_won else 2)
        actions = [
            entry.action
            for entry in store.list_audit_entries(tenant, entity_type="match", entity_id=match.match_id)
        ]
        assert actions.count("match_missed") == 1
        assert len(actions) == (3 if dispatcher_won else 2)
    counts = {status: count for status, count in store.get_match_counts(tenant).items() if count}
    assert counts == store.rebuild_match_counts(tenant) == {"missed": 8}


def test_marking_a_posting_matched_keeps_its_load_link(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "posting-link"
    posting = _posting(store, tenant)
    assert posting.status == PostingStatus.NEW
    store.link_posting_to_load(tenant, posting.posting_id, "LOAD-000009")

    matched = PostingService(store).mark_matched(tenant, posting)

    assert matched.status == PostingStatus.MATCHED
    assert matched.assigned_load_id == "LOAD-000009"
    stored = store.get_posting(tenant, posting.posting_id)
    assert stored.assigned_load_id == "LOAD-000009"
    assert stored.status == PostingStatus.MATCHED
    assert store.mark_posting_status(tenant, posting.posting_id, "matched", expected_status="new") is False
    with pytest.raises(KeyError):
        PostingService(store).mark_matched(tenant, "PST-404404")
