"""Pure view policy for the provider roster.

Nothing in this module touches the store.  Every function derives a new
value from a snapshot, so a render can always be rebuilt from the latest
snapshot alone.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, Optional, Sequence, Tuple

from bedboard.models import (
    ALL_CATEGORIES,
    BOARD_AND_CARE,
    MEMORY_CARE,
    PALLIATIVE_CARE,
    SKILLED_NURSING,
    BedAggregate,
    BedBadge,
    Capability,
    Provider,
    ProviderCard,
    RosterView,
)

LOW_AVAILABILITY_RATIO = 0.1

DEFAULT_ICON = "🏥"
_SERVICE_ICONS: Dict[str, str] = {
    PALLIATIVE_CARE: "❤️",
    SKILLED_NURSING: "🏥",
    BOARD_AND_CARE: "🏠",
    MEMORY_CARE: "🧠",
}


def apply_filter(snapshot: Iterable[Provider], category: str) -> Tuple[Provider, ...]:
    """Keep providers whose ``serviceType`` equals *category* (``All`` keeps all)."""

    if category == ALL_CATEGORIES:
        return tuple(snapshot)
    return tuple(p for p in snapshot if p.service_type == category)


def apply_sort(view: Sequence[Provider], category: str) -> Tuple[Provider, ...]:
    """Order skilled nursing by available beds, most first; keep arrival order otherwise."""

    if category != SKILLED_NURSING:
        return tuple(view)
    return tuple(sorted(view, key=lambda p: p.beds_available or 0, reverse=True))


def compute_aggregate(snapshot: Iterable[Provider]) -> BedAggregate:
    """Totals over skilled-nursing providers, whatever filter is active."""

    available = 0
    total = 0
    count = 0
    for provider in snapshot:
        if not provider.is_skilled_nursing:
            continue
        count += 1
        available += provider.beds_available or 0
        total += provider.total_beds or 0
    return BedAggregate(
        beds_available_total=available,
        facility_count=count,
        total_beds_total=total,
    )


def is_low_availability(provider: Provider) -> bool:
    if provider.beds_available is None or provider.total_beds is None:
        return False
    return provider.beds_available < provider.total_beds * LOW_AVAILABILITY_RATIO


def shows_bed_counts(provider: Provider) -> bool:
    return (
        provider.is_skilled_nursing
        and provider.beds_available is not None
        and bool(provider.total_beds)
    )


def service_icon(service_type: Optional[str]) -> str:
    return _SERVICE_ICONS.get(service_type or "", DEFAULT_ICON)


def build_card(provider: Provider, capability: Capability) -> ProviderCard:
    beds: Optional[BedBadge] = None
    if shows_bed_counts(provider):
        beds = BedBadge(
            available=provider.beds_available or 0,
            total=provider.total_beds or 0,
            low=is_low_availability(provider),
            editable=capability.allows(provider.id),
        )
    return ProviderCard(
        provider_id=provider.id,
        name=provider.name or "Provider Name",
        location=provider.location or "Location not specified",
        service_type=provider.service_type or "Service Type",
        service_icon=service_icon(provider.service_type),
        description=provider.description or "No description available",
        contact=provider.contact or None,
        email=provider.email or None,
        website=provider.website or None,
        beds=beds,
        lotus_flowers=provider.lotus_rating.flowers if provider.lotus_rating else 0,
    )


def matches_search(card: ProviderCard, term: str) -> bool:
    needle = term.lower()
    if not needle:
        return True
    return any(
        needle in text.lower() for text in (card.name, card.location, card.description)
    )


def apply_search(view: RosterView, term: str) -> RosterView:
    """Show or hide the rendered cards; membership of the view is unchanged."""

    cards = tuple(replace(card, visible=matches_search(card, term)) for card in view.cards)
    return replace(view, cards=cards, search_term=term)


def render_roster(
    snapshot: Sequence[Provider],
    category: str,
    capability: Capability,
    *,
    search_term: str = "",
    version: int = 0,
) -> RosterView:
    """Build the complete view for *snapshot* under the active filter."""

    ordered = apply_sort(apply_filter(snapshot, category), category)
    view = RosterView(
        category=category,
        cards=tuple(build_card(provider, capability) for provider in ordered),
        aggregate=compute_aggregate(snapshot),
        banner_visible=category == SKILLED_NURSING,
        version=version,
    )
    if search_term:
        view = apply_search(view, search_term)
    return view


def error_view(category: str, error: Dict[str, object], *, version: int = 0) -> RosterView:
    return RosterView(
        category=category,
        banner_visible=False,
        error=dict(error),
        version=version,
    )


__all__ = [
    "LOW_AVAILABILITY_RATIO",
    "apply_filter",
    "apply_sort",
    "compute_aggregate",
    "is_low_availability",
    "shows_bed_counts",
    "service_icon",
    "build_card",
    "matches_search",
    "apply_search",
    "render_roster",
    "error_view",
]
