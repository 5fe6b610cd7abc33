"""In-process telemetry for gift cycle runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GiftCycleSnapshot:
    """Serializable view of cycle telemetry."""

    totals: Dict[str, int]
    last_started_at: datetime | None
    last_completed_at: datetime | None
    last_triggered_by: str | None
    last_shop_errors: Dict[str, list[str]]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_completed_at": self.last_completed_at.isoformat() if self.last_completed_at else None,
            "last_triggered_by": self.last_triggered_by,
            "last_shop_errors": self.last_shop_errors,
        }


@dataclass
class _GiftCycleState:
    runs: int = 0
    skipped_overlaps: int = 0
    shops_processed: int = 0
    shops_failed: int = 0
    eligibilities_created: int = 0
    emails_sent: int = 0
    emails_failed: int = 0
    last_started_at: datetime | None = None
    last_completed_at: datetime | None = None
    last_triggered_by: str | None = None
    last_shop_errors: Dict[str, list[str]] = field(default_factory=dict)


class GiftCycleObservabilityStore:
    """Tracks gift cycle dispatch metrics for readiness reporting."""

    def __init__(self) -> None:
        self._lock: Lock = Lock()
        self._state = _GiftCycleState()

    def reset(self) -> None:
        with self._lock:
            self._state = _GiftCycleState()

    def record_start(self, triggered_by: str) -> None:
        with self._lock:
            self._state.runs += 1
            self._state.last_started_at = _utcnow()
            self._state.last_triggered_by = triggered_by

    def record_overlap(self) -> None:
        with self._lock:
            self._state.skipped_overlaps += 1

    def record_shop(
        self,
        shop: str,
        *,
        eligibilities_created: int,
        emails_sent: int,
        emails_failed: int,
        errors: list[str],
    ) -> None:
        with self._lock:
            self._state.shops_processed += 1
            self._state.eligibilities_created += eligibilities_created
            self._state.emails_sent += emails_sent
            self._state.emails_failed += emails_failed
            if errors:
                self._state.shops_failed += 1
                self._state.last_shop_errors[shop] = list(errors)
            else:
                self._state.last_shop_errors.pop(shop, None)

    def record_complete(self) -> None:
        with self._lock:
            self._state.last_completed_at = _utcnow()

    def snapshot(self) -> GiftCycleSnapshot:
        with self._lock:
            state = self._state
            return GiftCycleSnapshot(
                totals={
                    "runs": state.runs,
                    "skipped_overlaps": state.skipped_overlaps,
                    "shops_processed": state.shops_processed,
                    "shops_failed": state.shops_failed,
                    "eligibilities_created": state.eligibilities_created,
                    "emails_sent": state.emails_sent,
                    "emails_failed": state.emails_failed,
                },
                last_started_at=state.last_started_at,
                last_completed_at=state.last_completed_at,
                last_triggered_by=state.last_triggered_by,
                last_shop_errors={shop: list(errors) for shop, errors in state.last_shop_errors.items()},
            )


_STORE = GiftCycleObservabilityStore()


def get_gift_cycle_store() -> GiftCycleObservabilityStore:
    return _STORE


__all__ = ["GiftCycleObservabilityStore", "GiftCycleSnapshot", "get_gift_cycle_store"]
