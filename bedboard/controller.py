"""Live roster controller: one subscription, full re-renders, one editor.

The controller owns all per-session state and mutates it only on the event
loop.  A new subscription always cancels the previous one, and snapshot
callbacks from an older subscription are ignored by generation number, so
the rendered view is always derived from the newest snapshot of the newest
subscription.
"""

from __future__ import annotations

import enum
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from prometheus_client import Counter

from bedboard.authz import AuthorizationResolver, Identity
from bedboard.errors import (
    BedboardError,
    EditorStateError,
    NotFound,
    Unauthorized,
    Unimplemented,
    UnsupportedServiceType,
)
from bedboard.models import (
    ALL_CATEGORIES,
    SKILLED_NURSING,
    BedPreview,
    Capability,
    EditDraft,
    Provider,
    RosterView,
)
from bedboard.roster import apply_search, error_view, render_roster
from bedboard.store import DirectoryStore, Snapshot, Subscription
from bedboard.time_utils import isoformat_utc
from bedboard.workflow import BedCountWorkflow, adjust_available, bed_preview

logger = structlog.get_logger(__name__)

ROSTER_RENDERS = Counter(
    "bedboard_roster_renders_total",
    "Roster renders produced from subscription events and searches",
    ("kind",),
)

RenderCallback = Callable[[RosterView], Awaitable[None]]


class EditorState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    SUBMITTING = "submitting"


class LiveRosterController:
    """Keep one viewer's roster in sync with the directory store."""

    def __init__(
        self,
        store: DirectoryStore,
        resolver: AuthorizationResolver,
        identity: Optional[Identity] = None,
        *,
        workflow: Optional[BedCountWorkflow] = None,
        on_render: Optional[RenderCallback] = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._identity = identity or Identity.anonymous()
        self._workflow = workflow or BedCountWorkflow(store)
        self._on_render = on_render
        self._capability = Capability.none()
        self._initialized = False

        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._category = ALL_CATEGORIES
        self._snapshot: Optional[Snapshot] = None
        self._view = RosterView()
        self._version = 0
        self._search_term = ""

        self._editor_state = EditorState.CLOSED
        self._draft: Optional[EditDraft] = None
        self._editor_error: Optional[BedboardError] = None

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def capability(self) -> Capability:
        return self._capability

    @property
    def category(self) -> str:
        return self._category

    @property
    def view(self) -> RosterView:
        return self._view

    @property
    def snapshot(self) -> Optional[Snapshot]:
        return self._snapshot

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    @property
    def editor_state(self) -> EditorState:
        return self._editor_state

    @property
    def draft(self) -> Optional[EditDraft]:
        return self._draft

    @property
    def banner_visible(self) -> bool:
        return self._category == SKILLED_NURSING

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def initialize(self) -> RosterView:
        """Wait for the store, resolve the capability once, open the roster."""

        if self._initialized:
            raise RuntimeError("controller already initialized")
        self._initialized = True
        await self._store.wait_ready()
        self._capability = await self._resolver.resolve(self._identity)
        logger.info(
            "roster_initialized",
            editor=self._capability.is_editor,
            provider_id=self._capability.provider_id,
        )
        await self.subscribe(ALL_CATEGORIES)
        return self._view

    async def close(self) -> None:
        self._generation += 1
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self._snapshot = None
        self._discard_draft()

    # ------------------------------------------------------------------
    # Subscription and rendering
    # ------------------------------------------------------------------
    async def subscribe(self, category: str) -> Subscription:
        """Replace the active subscription with one rendering *category*."""

        self._generation += 1
        generation = self._generation
        previous, self._subscription = self._subscription, None
        if previous is not None:
            previous.cancel()
        self._category = category

        async def _deliver(snapshot: Snapshot) -> None:
            await self._handle_snapshot(generation, snapshot)

        async def _fail(error: BedboardError) -> None:
            await self._handle_error(generation, error)

        subscription = await self._store.subscribe(_deliver, on_error=_fail)
        if generation != self._generation:
            # a newer subscribe() started while this one was being opened
            subscription.cancel()
            return subscription
        self._subscription = subscription
        logger.debug("roster_subscription_opened", category=category, subscription=subscription.id)
        return subscription

    async def filter_by_category(self, category: str) -> bool:
        """Resubscribe with *category*; returns whether the banner is shown."""

        await self.subscribe(category)
        return self.banner_visible

    async def search_providers(self, term: str) -> RosterView:
        self._search_term = term or ""
        self._version += 1
        self._view = replace(apply_search(self._view, self._search_term), version=self._version)
        ROSTER_RENDERS.labels(kind="search").inc()
        await self._publish()
        return self._view

    async def _handle_snapshot(self, generation: int, snapshot: Snapshot) -> None:
        if generation != self._generation:
            return
        self._snapshot = snapshot
        self._version += 1
        self._view = render_roster(
            snapshot,
            self._category,
            self._capability,
            search_term=self._search_term,
            version=self._version,
        )
        ROSTER_RENDERS.labels(kind="snapshot").inc()
        await self._publish()

    async def _handle_error(self, generation: int, error: BedboardError) -> None:
        if generation != self._generation:
            return
        logger.error("roster_subscription_failed", category=self._category, error=error.message)
        self._snapshot = None
        self._version += 1
        self._view = error_view(
            self._category,
            {
                **error.to_payload(),
                "message": "Error loading providers. Please refresh the page.",
            },
            version=self._version,
        )
        ROSTER_RENDERS.labels(kind="error").inc()
        await self._publish()

    async def _publish(self) -> None:
        if self._on_render is not None:
            await self._on_render(self._view)

    # ------------------------------------------------------------------
    # Editor
    # ------------------------------------------------------------------
    async def open_editor(self, provider_id: str) -> EditDraft:
        """Load *provider_id* into a fresh draft, closing any open draft."""

        if not self._capability.allows(provider_id):
            logger.info("bed_editor_refused", provider_id=provider_id)
            raise Unauthorized(provider_id=provider_id)
        self._discard_draft()
        provider = await self._store.get(provider_id)
        if provider is None:
            raise NotFound(provider_id=provider_id)
        if not provider.is_skilled_nursing:
            raise UnsupportedServiceType(provider_id=provider_id)
        self._draft = EditDraft.from_provider(provider)
        self._editor_state = EditorState.OPEN
        return self._draft

    def close_editor(self) -> None:
        self._discard_draft()

    def adjust_draft(self, delta: int) -> EditDraft:
        draft = self._require_open_draft()
        self._draft = adjust_available(draft, delta)
        return self._draft

    def set_draft(self, beds_available: int, total_beds: int) -> EditDraft:
        draft = self._require_open_draft()
        self._draft = draft.with_counts(beds_available, total_beds)
        return self._draft

    @property
    def preview(self) -> Optional[BedPreview]:
        if self._draft is None:
            return None
        return bed_preview(self._draft.beds_available, self._draft.total_beds)

    async def submit_editor(self, provider_id: str) -> Provider:
        """Write the open draft; the roster updates when the store echoes it."""

        if not self._capability.allows(provider_id):
            logger.info("bed_submit_refused", provider_id=provider_id)
            raise Unauthorized(provider_id=provider_id)
        draft = self._require_open_draft()
        if draft.provider_id != provider_id:
            raise EditorStateError(
                f"The open editor belongs to provider {draft.provider_id}",
                provider_id=provider_id,
            )
        self._editor_state = EditorState.SUBMITTING
        self._editor_error = None
        try:
            acknowledged = await self._workflow.submit(
                self._capability,
                provider_id,
                draft.beds_available,
                draft.total_beds,
            )
        except BedboardError as exc:
            if self._draft is draft:
                self._editor_state = EditorState.OPEN
                self._editor_error = exc
            raise
        if self._draft is draft:
            self._discard_draft()
        return acknowledged

    def _require_open_draft(self) -> EditDraft:
        if self._editor_state is EditorState.SUBMITTING:
            raise EditorStateError("An update is already being saved")
        if self._draft is None or self._editor_state is not EditorState.OPEN:
            raise EditorStateError()
        return self._draft

    def _discard_draft(self) -> None:
        self._draft = None
        self._editor_error = None
        self._editor_state = EditorState.CLOSED

    def editor_payload(self) -> Dict[str, Any]:
        draft = self._draft
        payload: Dict[str, Any] = {"state": self._editor_state.value}
        if draft is None:
            return payload
        preview = self.preview
        payload.update(
            {
                "providerId": draft.provider_id,
                "providerName": draft.provider.name,
                "lastBedUpdate": isoformat_utc(draft.provider.last_bed_update),
                "bedsAvailable": draft.beds_available,
                "totalBeds": draft.total_beds,
                "preview": preview.to_payload() if preview else None,
                "error": self._editor_error.to_payload() if self._editor_error else None,
            }
        )
        return payload

    # ------------------------------------------------------------------
    # Reviews
    # ------------------------------------------------------------------
    def view_reviews(self, provider_id: str) -> None:
        logger.info("reviews_requested", provider_id=provider_id)
        raise Unimplemented("Reviews feature coming soon!", provider_id=provider_id)

    def leave_review(self, provider_id: str) -> None:
        logger.info("review_submission_requested", provider_id=provider_id)
        raise Unimplemented("Leave review feature coming soon!", provider_id=provider_id)


__all__ = ["EditorState", "LiveRosterController", "RenderCallback"]
