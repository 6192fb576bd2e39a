"""Validated bed-count writes for skilled-nursing providers."""

from __future__ import annotations

import structlog
from prometheus_client import Counter

from bedboard.errors import (
    AvailableExceedsTotal,
    BedboardError,
    NegativeValue,
    NotFound,
    Unauthorized,
    UnsupportedServiceType,
)
from bedboard.models import BedPreview, Capability, EditDraft, Provider
from bedboard.store import SERVER_TIMESTAMP, DirectoryStore

logger = structlog.get_logger(__name__)

BED_UPDATES = Counter(
    "bedboard_bed_updates_total",
    "Bed-count submissions by outcome",
    ("outcome",),
)


def validate_bed_counts(available: int, total: int) -> None:
    """Raise if the pair cannot be written; equality is allowed."""

    if available < 0 or total < 0:
        raise NegativeValue(bedsAvailable=available, totalBeds=total)
    if available > total:
        raise AvailableExceedsTotal(bedsAvailable=available, totalBeds=total)


def adjust_available(draft: EditDraft, delta: int) -> EditDraft:
    """Step the draft's available beds, clamped to ``[0, total]``."""

    upper = max(draft.total_beds, 0)
    value = max(0, min(draft.beds_available + delta, upper))
    return draft.with_counts(value, draft.total_beds)


def bed_preview(available: int, total: int) -> BedPreview:
    occupied = total - available
    percent = (occupied / total) * 100 if total > 0 else 0.0
    return BedPreview(available=available, occupied=occupied, occupied_percent=percent)


class BedCountWorkflow:
    """Check a submission against the capability and record, then write it.

    The workflow never touches a roster snapshot.  Viewers, the submitter
    included, see the new counts when the store echoes the committed write
    through their subscriptions.
    """

    def __init__(self, store: DirectoryStore) -> None:
        self._store = store

    async def submit(
        self,
        capability: Capability,
        provider_id: str,
        available: int,
        total: int,
    ) -> Provider:
        try:
            provider = await self._check(capability, provider_id, available, total)
        except BedboardError as exc:
            BED_UPDATES.labels(outcome=exc.code).inc()
            logger.info("bed_update_rejected", provider_id=provider_id, reason=exc.code)
            raise

        try:
            acknowledged = await self._store.update_fields(
                provider.id,
                {
                    "bedsAvailable": available,
                    "totalBeds": total,
                    "lastBedUpdate": SERVER_TIMESTAMP,
                    "updatedAt": SERVER_TIMESTAMP,
                },
            )
        except BedboardError as exc:
            BED_UPDATES.labels(outcome=exc.code).inc()
            logger.error("bed_update_failed", provider_id=provider_id, error=exc.message)
            raise

        BED_UPDATES.labels(outcome="committed").inc()
        logger.info(
            "bed_update_committed",
            provider_id=provider_id,
            beds_available=available,
            total_beds=total,
        )
        return acknowledged

    async def _check(
        self,
        capability: Capability,
        provider_id: str,
        available: int,
        total: int,
    ) -> Provider:
        if not capability.allows(provider_id):
            raise Unauthorized(provider_id=provider_id)
        provider = await self._store.get(provider_id)
        if provider is None:
            raise NotFound(provider_id=provider_id)
        if not provider.is_skilled_nursing:
            raise UnsupportedServiceType(provider_id=provider_id)
        validate_bed_counts(available, total)
        return provider


__all__ = [
    "BED_UPDATES",
    "BedCountWorkflow",
    "adjust_available",
    "bed_preview",
    "validate_bed_counts",
]
