#!/usr/bin/env python3
"""Move expired load-hunter matches to `missed`, in-process or through the API."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import requests

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from loadhunter.core.config import get_settings  # noqa: E402
from loadhunter.core.logging import configure_logging, logger  # noqa: E402
from loadhunter.services.dispatch_state import DispatchStateStore  # noqa: E402
from loadhunter.services.invoicing import InvoicingService  # noqa: E402
from loadhunter.services.match_engine import MatchEngine  # noqa: E402


def sweep_local(db_path: Path | None, tenant_id: str | None, all_tenants: bool, overdue: bool) -> dict:
    store = DispatchStateStore(db_path)
    expired = MatchEngine(store).sweep_expired(tenant_id, cross_tenant=all_tenants)
    report = {"mode": "local", "tenant_id": tenant_id, "expired": expired}
    if overdue:
        report["overdue_invoices"] = InvoicingService(store).mark_overdue(tenant_id, cross_tenant=all_tenants)
    return report


def sweep_remote(base_url: str, token: str | None, tenant_id: str | None, all_tenants: bool, timeout: float) -> dict:
    headers = {"X-Actor": "sweep-script", "X-Actor-Role": "admin"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if tenant_id:
        headers["X-Tenant-ID"] = tenant_id
    if all_tenants:
        headers["X-Cross-Tenant"] = "true"
    response = requests.post(f"{base_url.rstrip('/')}/load-hunter/sweep", headers=headers, timeout=timeout)
    if response.status_code != 200:
        raise RuntimeError(f"HTTP {response.status_code}: {response.text}")
    payload = response.json()
    return {"mode": "remote", "tenant_id": payload.get("tenant_id"), "expired": payload.get("expired", 0)}


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire load-hunter matches whose posting has lapsed")
    scope = parser.add_mutually_exclusive_group(required=True)
    scope.add_argument("--tenant", help="Tenant to sweep")
    scope.add_argument("--all-tenants", action="store_true", help="Sweep every tenant (cross-tenant run)")
    parser.add_argument("--db-path", type=Path, help="SQLite path; defaults to OPS_DB_PATH / OPS_STATE_PATH")
    parser.add_argument("--mark-overdue", action="store_true", help="Also flag sent invoices past due")
    parser.add_argument("--base-url", help="Call a running API instead of opening the database")
    parser.add_argument("--token", help="Bearer token for --base-url")
    parser.add_argument("--timeout", type=float, default=10.0, help="Per-request timeout in seconds")
    parser.add_argument("--output", type=Path, help="Optional output path for JSON report")
    args = parser.parse_args()

    settings = get_settings()
    configure_logging(settings.log_level, json_output=settings.log_json)

    if args.base_url:
        report = sweep_remote(args.base_url, args.token, args.tenant, args.all_tenants, max(1.0, args.timeout))
    else:
        report = sweep_local(args.db_path, args.tenant, args.all_tenants, args.mark_overdue)
    logger.info("Sweep finished", **report)

    if args.output:
        args.output.parent.mkdir(parents=True, exist_ok=True)
        args.output.write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))


if __name__ == "__main__":
    main()
