"""Provider documents and the immutable values derived from them.

``Provider`` mirrors one document of the directory store.  Field names follow
Python conventions while the camelCase aliases match the wire and document
format, so ``Provider.model_validate(doc)`` accepts raw documents and
``provider.model_dump(by_alias=True)`` reproduces them.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from bedboard.time_utils import isoformat_utc

SKILLED_NURSING = "Skilled Nursing"
PALLIATIVE_CARE = "Palliative Care"
BOARD_AND_CARE = "Board and Care Facilities"
MEMORY_CARE = "Memory Care"
ALL_CATEGORIES = "All"

SERVICE_TYPES: Tuple[str, ...] = (
    SKILLED_NURSING,
    PALLIATIVE_CARE,
    BOARD_AND_CARE,
    MEMORY_CARE,
)


class LotusRating(BaseModel):
    compassionate: bool = False
    responsive: bool = False
    supportive: bool = False
    professional: bool = False

    model_config = ConfigDict(frozen=True, extra="ignore")

    @property
    def flowers(self) -> int:
        return sum(
            1
            for flag in (self.compassionate, self.responsive, self.supportive, self.professional)
            if flag
        )


class Provider(BaseModel):
    """A provider facility as held by the directory store."""

    id: str
    name: Optional[str] = None
    service_type: Optional[str] = Field(default=None, alias="serviceType")
    location: Optional[str] = None
    description: Optional[str] = None
    contact: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    admin_email: Optional[str] = Field(default=None, alias="adminEmail")
    beds_available: Optional[int] = Field(default=None, alias="bedsAvailable")
    total_beds: Optional[int] = Field(default=None, alias="totalBeds")
    lotus_rating: Optional[LotusRating] = Field(default=None, alias="lotusRating")
    last_bed_update: Optional[datetime] = Field(default=None, alias="lastBedUpdate")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @property
    def is_skilled_nursing(self) -> bool:
        return self.service_type == SKILLED_NURSING

    def to_document(self) -> Dict[str, Any]:
        """Return the camelCase document form with ISO timestamps."""

        doc = self.model_dump(by_alias=True, exclude_none=True)
        for key in ("lastBedUpdate", "updatedAt"):
            if key in doc:
                doc[key] = isoformat_utc(doc[key])
        return doc


@dataclass(frozen=True)
class Capability:
    """Whether the current session may edit one provider's bed counts."""

    provider_id: Optional[str] = None

    @classmethod
    def none(cls) -> "Capability":
        return cls(None)

    @classmethod
    def can_edit(cls, provider_id: str) -> "Capability":
        return cls(provider_id)

    @property
    def is_editor(self) -> bool:
        return self.provider_id is not None

    def allows(self, provider_id: Optional[str]) -> bool:
        return self.provider_id is not None and self.provider_id == provider_id


@dataclass(frozen=True)
class EditDraft:
    """Unsaved bed counts for the provider currently open in the editor."""

    provider: Provider
    beds_available: int
    total_beds: int

    @property
    def provider_id(self) -> str:
        return self.provider.id

    @classmethod
    def from_provider(cls, provider: Provider) -> "EditDraft":
        return cls(
            provider=provider,
            beds_available=provider.beds_available or 0,
            total_beds=provider.total_beds or 0,
        )

    def with_counts(self, beds_available: int, total_beds: int) -> "EditDraft":
        return replace(self, beds_available=beds_available, total_beds=total_beds)


@dataclass(frozen=True)
class BedAggregate:
    """Skilled-nursing totals shown in the stats banner."""

    beds_available_total: int = 0
    facility_count: int = 0
    total_beds_total: int = 0

    def to_payload(self) -> Dict[str, int]:
        return {
            "bedsAvailable": self.beds_available_total,
            "facilities": self.facility_count,
            "totalBeds": self.total_beds_total,
        }


@dataclass(frozen=True)
class BedPreview:
    available: int
    occupied: int
    occupied_percent: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "occupied": self.occupied,
            "occupiedPercent": self.occupied_percent,
        }


@dataclass(frozen=True)
class BedBadge:
    available: int
    total: int
    low: bool
    editable: bool

    def to_payload(self) -> Dict[str, Any]:
        return {
            "available": self.available,
            "total": self.total,
            "low": self.low,
            "editable": self.editable,
        }


@dataclass(frozen=True)
class ProviderCard:
    """Display structure for one provider; independent of any UI toolkit."""

    provider_id: str
    name: str
    location: str
    service_type: str
    service_icon: str
    description: str
    contact: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None
    beds: Optional[BedBadge] = None
    lotus_flowers: int = 0
    visible: bool = True

    def to_payload(self) -> Dict[str, Any]:
        return {
            "id": self.provider_id,
            "name": self.name,
            "location": self.location,
            "serviceType": self.service_type,
            "serviceIcon": self.service_icon,
            "description": self.description,
            "contact": self.contact,
            "email": self.email,
            "website": self.website,
            "beds": self.beds.to_payload() if self.beds else None,
            "lotusFlowers": self.lotus_flowers,
            "visible": self.visible,
        }


@dataclass(frozen=True)
class RosterView:
    """A complete render of the roster; each render replaces the previous."""

    category: str = ALL_CATEGORIES
    cards: Tuple[ProviderCard, ...] = ()
    aggregate: BedAggregate = field(default_factory=BedAggregate)
    banner_visible: bool = False
    search_term: str = ""
    error: Optional[Dict[str, Any]] = None
    version: int = 0

    @property
    def is_empty(self) -> bool:
        return self.error is None and not self.cards

    def to_payload(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "cards": [card.to_payload() for card in self.cards],
            "banner": self.aggregate.to_payload() if self.banner_visible else None,
            "searchTerm": self.search_term,
            "empty": self.is_empty,
            "error": self.error,
            "version": self.version,
        }


__all__ = [
    "SKILLED_NURSING",
    "PALLIATIVE_CARE",
    "BOARD_AND_CARE",
    "MEMORY_CARE",
    "ALL_CATEGORIES",
    "SERVICE_TYPES",
    "LotusRating",
    "Provider",
    "Capability",
    "EditDraft",
    "BedAggregate",
    "BedPreview",
    "BedBadge",
    "ProviderCard",
    "RosterView",
]
