"""Unit tests for dispatch state persistence: sequences, tenancy, and conditional writes."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
import os
import sys
from pathlib import Path

import pytest


TMP = Path(__file__).resolve().parent / ".tmp_state"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["OPS_STATE_PATH"] = str(TMP / "dispatch_state.json")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from loadhunter.core.errors import SequenceGenerationConflict, TenantScopeViolation  # noqa: E402
from loadhunter.models.dispatch import (  # noqa: E402
    Coordinates,
    Customer,
    Load,
    LoadPosting,
    Match,
    MatchStatus,
    ParsedPosting,
)
from loadhunter.services.dispatch_state import DispatchStateStore  # noqa: E402


def _store(tmp_path: Path) -> DispatchStateStore:
    return DispatchStateStore(tmp_path / "dispatch_state.db")


def _posting(store: DispatchStateStore, tenant: str, sender: str) -> LoadPosting:
    posting = LoadPosting(
        posting_id=store.generate_id(tenant, "posting", "PST"),
        sender=sender,
        parsed=ParsedPosting(origin_city="Chicago", pickup_coordinates=Coordinates(lat=41.88, lng=-87.63)),
    )
    return store.insert_posting(tenant, posting)


def _match(store: DispatchStateStore, tenant: str, posting_id: str, vehicle_id: str = "V-1") -> Match:
    return Match(
        match_id=store.generate_id(tenant, "match", "MCH"),
        posting_id=posting_id,
        hunt_plan_id="HNT-000001",
        vehicle_id=vehicle_id,
        distance_miles=12.5,
    )


def test_concurrent_sequence_generation_is_unique(tmp_path: Path):
    store = _store(tmp_path)
    tenant = "concurrency"

    def _next() -> str:
        return store.generate_id(tenant, "load", "LOAD")

    with ThreadPoolExecutor(max_workers=12) as pool:
        load_ids = list(pool.map(lambda _: _next(), range(200)))

    assert len(load_ids) == 200
    assert len(set(load_ids)) == 200


def test_concurrent_daily_load_numbers_are_unique(tmp_path: Path):
    store = _store(tmp_path)
    day = date(2025, 3, 14)

    with ThreadPoolExecutor(max_workers=8) as pool:
        numbers = list(pool.map(lambda _: store.next_daily_load_number("fleet", "LH", day), range(60)))

    assert len(set(numbers)) == 60
    assert min(numbers) == "LH-250314-001"
    assert max(numbers) == "LH-250314-060"


def test_daily_load_number_seeds_from_existing_loads(tmp_path: Path):
    store = _store(tmp_path)
    for number in ("LH-250314-001", "LH-250314-002", "LH-250313-007"):
        store.insert_load("seeded", Load(load_id=f"L-{number}", load_number=number))

    assert store.next_daily_load_number("seeded", "LH", date(2025, 3, 14)) == "LH-250314-003"
    assert store.next_daily_load_number("seeded", "LH", date(2025, 3, 14)) == "LH-250314-004"
    assert store.next_daily_load_number("other", "LH", date(2025, 3, 14)) == "LH-250314-001"


def test_duplicate_load_number_raises_sequence_conflict(tmp_path: Path):
    store = _store(tmp_path)
    store.insert_load("dup", Load(load_id="L-1", load_number="LH-250314-001"))
    with pytest.raises(SequenceGenerationConflict):
        store.insert_load("dup", Load(load_id="L-2", load_number="LH-250314-001"))
    # The same number is free in another tenant.
    store.insert_load("dup-other", Load(load_id="L-2", load_number="LH-250314-001"))


@pytest.mark.parametrize(
    "call",
    [
        lambda s: s.next_sequence("", "load"),
        lambda s: s.get_posting("  ", "PST-000001"),
        lambda s: s.list_matches(""),
        lambda s: s.get_match_counts(None),
        lambda s: s.list_expirable_matches(None),
        lambda s: s.list_audit_entries(""),
    ],
)
def test_store_calls_without_tenant_are_rejected(tmp_path: Path, call):
    store = _store(tmp_path)
    with pytest.raises(TenantScopeViolation):
        call(store)


def test_colliding_ids_stay_isolated_per_tenant(tmp_path: Path):
    store = _store(tmp_path)
    alpha = _posting(store, "alpha", "ops@alpha.test")
    beta = _posting(store, "beta", "ops@beta.test")
    assert alpha.posting_id == beta.posting_id == "PST-000001"

    assert store.get_posting("alpha", alpha.posting_id).sender == "ops@alpha.test"
    assert store.get_posting("beta", beta.posting_id).sender == "ops@beta.test"

    store.link_posting_to_load("alpha", alpha.posting_id, "LOAD-000001")
    assert store.get_posting("alpha", alpha.posting_id).assigned_load_id == "LOAD-000001"
    assert store.get_posting("beta", beta.posting_id).assigned_load_id is None


def test_insert_match_if_absent_allows_one_match_per_pair(tmp_path: Path):
    store = _store(tmp_path)
    posting = _posting(store, "pairs", "ops@pairs.test")

    assert store.insert_match_if_absent("pairs", _match(store, "pairs", posting.posting_id)) is True
    assert store.insert_match_if_absent("pairs", _match(store, "pairs", posting.posting_id)) is False
    assert store.insert_match_if_absent("pairs", _match(store, "pairs", posting.posting_id, vehicle_id="V-2")) is True

    assert len(store.list_matches("pairs", posting_id=posting.posting_id)) == 2
    assert store.get_match_counts("pairs") == {"unreviewed": 2}


def test_compare_and_set_rejects_stale_version(tmp_path: Path):
    store = _store(tmp_path)
    posting = _posting(store, "cas", "ops@cas.test")
    match = _match(store, "cas", posting.posting_id)
    store.insert_match_if_absent("cas", match)

    skipped = match.model_copy(update={"match_status": MatchStatus.SKIPPED, "version": 2})
    assert store.compare_and_set_match("cas", skipped, expected_status="unreviewed", expected_version=1) is True

    stale = match.model_copy(update={"match_status": MatchStatus.WAITLIST, "version": 2})
    assert store.compare_and_set_match("cas", stale, expected_status="unreviewed", expected_version=1) is False

    current = store.get_match("cas", match.match_id)
    assert current.match_status == MatchStatus.SKIPPED
    assert current.version == 2
    assert store.get_match_counts("cas") == {"unreviewed": 0, "skipped": 1}


def test_expire_match_only_moves_non_terminal_matches(tmp_path: Path):
    store = _store(tmp_path)
    posting = _posting(store, "expiry", "ops@expiry.test")
    live = _match(store, "expiry", posting.posting_id)
    booked = _match(store, "expiry", posting.posting_id, vehicle_id="V-2").model_copy(
        update={"match_status": MatchStatus.BOOKED}
    )
    store.insert_match_if_absent("expiry", live)
    store.insert_match_if_absent("expiry", booked)

    now = datetime(2025, 3, 14, 18, 0, tzinfo=timezone.utc)
    assert store.expire_match("expiry", live.match_id, missed_at=now) == "unreviewed"
    assert store.expire_match("expiry", live.match_id, missed_at=now) is None
    assert store.expire_match("expiry", booked.match_id, missed_at=now) is None

    missed = store.get_match("expiry", live.match_id)
    assert missed.match_status == MatchStatus.MISSED
    assert missed.missed_at == now
    assert missed.version == 2
    assert store.get_match("expiry", booked.match_id).match_status == MatchStatus.BOOKED


def test_rebuild_match_counts_matches_incremental_projection(tmp_path: Path):
    store = _store(tmp_path)
    posting = _posting(store, "counts", "ops@counts.test")
    for vehicle_id in ("V-1", "V-2", "V-3"):
        store.insert_match_if_absent("counts", _match(store, "counts", posting.posting_id, vehicle_id=vehicle_id))
    first = store.list_matches("counts")[0]
    store.compare_and_set_match(
        "counts",
        first.model_copy(update={"match_status": MatchStatus.WAITLIST, "version": 2}),
        expected_status="unreviewed",
        expected_version=1,
    )

    incremental = {status: count for status, count in store.get_match_counts("counts").items() if count}
    assert store.rebuild_match_counts("counts") == incremental == {"unreviewed": 2, "waitlist": 1}


def test_customer_lookup_is_case_insensitive_and_tenant_scoped(tmp_path: Path):
    store = _store(tmp_path)
    store.upsert_customer("cust", Customer(customer_id="C-1", name="Acme Logistics", email="Billing@Acme.test"))

    assert store.find_customer_id("cust", name="ACME LOGISTICS") == "C-1"
    assert store.find_customer_id("cust", name="Unknown", email="billing@acme.TEST") == "C-1"
    assert store.find_customer_id("cust-other", name="Acme Logistics") is None


def test_idempotency_round_trip_is_tenant_scoped(tmp_path: Path):
    store = _store(tmp_path)
    store.set_idempotent("idem", "book_match:MCH-000001:key-1", {"load_id": "LOAD-000001"})

    assert store.get_idempotent("idem", "book_match:MCH-000001:key-1") == {"load_id": "LOAD-000001"}
    assert store.get_idempotent("idem-other", "book_match:MCH-000001:key-1") is None
