"""Hunt plan registry and the posting eligibility predicate."""
from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import List, Optional

from loadhunter.core.config import get_settings
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import Coordinates, HuntPlan, HuntPlanRequest, LoadPosting, PostingStatus, Vehicle
from loadhunter.services.audit import AuditTrail
from loadhunter.services.dispatch_state import DispatchStateStore, get_dispatch_state_store


EARTH_RADIUS_MILES = 3959.0
_EQUIPMENT_FAMILIES = ("cargo", "sprinter", "straight")
_NON_ALPHA = re.compile(r"[^a-z-]")


def haversine_miles(a: Coordinates, b: Coordinates) -> float:
    """Great-circle distance between two points in statute miles."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_MILES * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def _normalize_equipment(value: str) -> str:
    return _NON_ALPHA.sub("", value.lower())


def equipment_compatible(posting_equipment: Optional[str], vehicle_sizes: List[str]) -> bool:
    """Unknown equipment on either side is treated as compatible."""
    wanted = _normalize_equipment(posting_equipment or "")
    if not wanted or not vehicle_sizes:
        return True
    for size in vehicle_sizes:
        offered = _normalize_equipment(size)
        if not offered:
            continue
        if wanted == offered or wanted in offered or offered in wanted:
            return True
        if any(family in wanted and family in offered for family in _EQUIPMENT_FAMILIES):
            return True
    return False


def eligible_distance(plan: HuntPlan, posting: LoadPosting) -> Optional[float]:
    """Distance in miles when the plan accepts the posting, otherwise None."""
    if not plan.enabled:
        return None
    if posting.status == PostingStatus.PROCESSING_FAILED:
        return None
    parsed = posting.parsed
    if parsed.pickup_coordinates is None:
        return None

    distance = haversine_miles(parsed.pickup_coordinates, plan.hunt_coordinates)
    if distance > plan.pickup_radius_miles:
        return None
    if not equipment_compatible(parsed.equipment_type, plan.vehicle_sizes):
        return None
    if plan.load_capacity_lbs and parsed.weight and parsed.weight > plan.load_capacity_lbs:
        return None
    if plan.available_feet and parsed.available_feet and parsed.available_feet > plan.available_feet:
        return None
    return round(distance, 1)


class HuntPlanRegistry:
    """Tenant-scoped hunt plans and the vehicles they hunt for."""

    def __init__(self, store: Optional[DispatchStateStore] = None) -> None:
        self._store = store
        self.settings = get_settings()

    @property
    def store(self) -> DispatchStateStore:
        return self._store or get_dispatch_state_store()

    def upsert_vehicle(self, tenant_id: str, vehicle: Vehicle, actor: str = "system") -> Vehicle:
        previous = self.store.get_vehicle(tenant_id, vehicle.vehicle_id)
        saved = self.store.upsert_vehicle(tenant_id, vehicle)
        AuditTrail(self.store).append(
            tenant_id,
            entity_type="vehicle",
            entity_id=saved.vehicle_id,
            action="vehicle_upserted",
            actor=actor,
            before=previous.model_dump(mode="json") if previous else None,
            after=saved.model_dump(mode="json"),
        )
        return saved

    def get_vehicle(self, tenant_id: str, vehicle_id: str) -> Optional[Vehicle]:
        return self.store.get_vehicle(tenant_id, vehicle_id)

    def create_plan(self, tenant_id: str, request: HuntPlanRequest, actor: str = "system") -> HuntPlan:
        if self.store.get_vehicle(tenant_id, request.vehicle_id) is None:
            raise KeyError(request.vehicle_id)
        plan = HuntPlan(
            hunt_plan_id=self.store.generate_id(tenant_id, "hunt_plan", "HNT"),
            vehicle_id=request.vehicle_id,
            hunt_coordinates=request.hunt_coordinates,
            pickup_radius_miles=request.pickup_radius_miles or self.settings.default_pickup_radius_miles,
            vehicle_sizes=[size.strip() for size in request.vehicle_sizes if size.strip()],
            load_capacity_lbs=request.load_capacity_lbs,
            available_feet=request.available_feet,
            enabled=request.enabled,
            notes=request.notes,
        )
        self.store.upsert_hunt_plan(tenant_id, plan)
        AuditTrail(self.store).append(
            tenant_id,
            entity_type="hunt_plan",
            entity_id=plan.hunt_plan_id,
            action="hunt_plan_created",
            actor=actor,
            after={"vehicle_id": plan.vehicle_id, "enabled": plan.enabled, "pickup_radius_miles": plan.pickup_radius_miles},
        )
        logger.info("Hunt plan created", tenant_id=tenant_id, hunt_plan_id=plan.hunt_plan_id, vehicle_id=plan.vehicle_id)
        return plan

    def set_enabled(self, tenant_id: str, hunt_plan_id: str, enabled: bool, actor: str = "system") -> HuntPlan:
        plan = self.store.get_hunt_plan(tenant_id, hunt_plan_id)
        if plan is None:
            raise KeyError(hunt_plan_id)
        was_enabled = plan.enabled
        plan.enabled = enabled
        plan.updated_at = datetime.now(timezone.utc)
        saved = self.store.upsert_hunt_plan(tenant_id, plan)
        AuditTrail(self.store).append(
            tenant_id,
            entity_type="hunt_plan",
            entity_id=hunt_plan_id,
            action="hunt_plan_enabled" if enabled else "hunt_plan_disabled",
            actor=actor,
            before={"enabled": was_enabled},
            after={"enabled": enabled},
        )
        return saved

    def list_plans(self, tenant_id: str, enabled_only: bool = False) -> List[HuntPlan]:
        return self.store.list_hunt_plans(tenant_id, enabled_only=enabled_only)


hunt_plan_registry = HuntPlanRegistry()
