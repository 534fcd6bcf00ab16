"""Smoke tests for the match expiry sweep script."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json
import os
import subprocess
import sys
from pathlib import Path


TMP = Path(__file__).resolve().parent / ".tmp_state"
TMP.mkdir(parents=True, exist_ok=True)
os.environ["OPS_STATE_PATH"] = str(TMP / "dispatch_state.json")

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from loadhunter.models.dispatch import (  # noqa: E402
    Coordinates,
    HuntPlanRequest,
    MatchStatus,
    ParsedPosting,
    PostingIngestRequest,
    Vehicle,
)
from loadhunter.services.dispatch_state import DispatchStateStore  # noqa: E402
from loadhunter.services.hunt_plans import HuntPlanRegistry  # noqa: E402
from loadhunter.services.match_engine import MatchEngine  # noqa: E402
from loadhunter.services.postings import PostingService  # noqa: E402


def _seed_lapsed_match(db_path: Path, tenant: str) -> str:
    store = DispatchStateStore(db_path)
    registry = HuntPlanRegistry(store)
    registry.upsert_vehicle(tenant, Vehicle(vehicle_id="V-1"))
    registry.create_plan(tenant, HuntPlanRequest(vehicle_id="V-1", hunt_coordinates=Coordinates(lat=41.95, lng=-87.70)))
    now = datetime.now(timezone.utc)
    posting = PostingService(store).ingest(
        tenant,
        PostingIngestRequest(
            sender="loads@acme.test",
            received_at=now - timedelta(hours=3),
            expires_at=now - timedelta(hours=1),
            parsed=ParsedPosting(
                origin_city="Chicago",
                destination_city="Detroit",
                pickup_coordinates=Coordinates(lat=41.88, lng=-87.63),
            ),
        ),
    )
    return MatchEngine(store).create_candidates(tenant, posting)[0].match_id


def _run(backend_root: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "scripts/sweep_expired_matches.py", *args],
        cwd=str(backend_root),
        capture_output=True,
        text=True,
        check=False,
    )


def test_sweep_script_expires_lapsed_matches_and_emits_report(tmp_path: Path):
    backend_root = Path(__file__).resolve().parents[1]
    db_path = tmp_path / "sweep.db"
    report_path = tmp_path / "sweep_report.json"
    match_id = _seed_lapsed_match(db_path, "fleet")

    proc = _run(backend_root, "--tenant", "fleet", "--db-path", str(db_path), "--output", str(report_path))
    assert proc.returncode == 0, f"sweep failed:\nSTDOUT:\n{proc.stdout}\nSTDERR:\n{proc.stderr}"

    payload = json.loads(report_path.read_text(encoding="utf-8"))
    assert payload == {"mode": "local", "tenant_id": "fleet", "expired": 1}
    assert DispatchStateStore(db_path).get_match("fleet", match_id).match_status == MatchStatus.MISSED


def test_sweep_script_requires_a_scope(tmp_path: Path):
    backend_root = Path(__file__).resolve().parents[1]
    proc = _run(backend_root, "--db-path", str(tmp_path / "sweep.db"))
    assert proc.returncode != 0
    assert "--tenant" in proc.stderr
