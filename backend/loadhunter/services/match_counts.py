"""Per-tenant match status counts served from the projection table."""
from __future__ import annotations

import time
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from loadhunter.core.config import get_settings
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import MatchCounts, MatchStatus
from loadhunter.services.dispatch_state import DispatchStateStore, get_dispatch_state_store


class MatchCountProjector:
    """Short-lived cache over `match_status_counts`; rebuild recomputes from matches."""

    def __init__(
        self,
        store: Optional[DispatchStateStore] = None,
        ttl_seconds: Optional[float] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = get_settings().match_counts_cache_seconds if ttl_seconds is None else ttl_seconds
        self._monotonic = monotonic
        self._cache: Dict[str, Tuple[float, MatchCounts]] = {}
        self._guard = Lock()

    @property
    def store(self) -> DispatchStateStore:
        return self._store or get_dispatch_state_store()

    @staticmethod
    def _to_model(tenant_id: str, raw: Dict[str, int]) -> MatchCounts:
        values = {status.value: int(raw.get(status.value, 0)) for status in MatchStatus}
        return MatchCounts(tenant_id=tenant_id, **values)

    def counts(self, tenant_id: str, fresh: bool = False) -> MatchCounts:
        now = self._monotonic()
        with self._guard:
            cached = self._cache.get(tenant_id)
        if cached and not fresh and now - cached[0] < self._ttl:
            return cached[1]
        model = self._to_model(tenant_id, self.store.get_match_counts(tenant_id))
        with self._guard:
            self._cache[tenant_id] = (now, model)
        return model

    def invalidate(self, tenant_id: Optional[str] = None) -> None:
        with self._guard:
            if tenant_id is None:
                self._cache.clear()
            else:
                self._cache.pop(tenant_id, None)

    def rebuild(self, tenant_id: str) -> MatchCounts:
        raw = self.store.rebuild_match_counts(tenant_id)
        self.invalidate(tenant_id)
        logger.info("Match counts rebuilt", tenant_id=tenant_id, counts=raw)
        return self.counts(tenant_id, fresh=True)


match_count_projector = MatchCountProjector()
