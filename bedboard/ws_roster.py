"""WebSocket channel driving one live roster controller per connection."""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from structlog.contextvars import bind_contextvars, unbind_contextvars

from bedboard.authz import AuthorizationResolver, Identity
from bedboard.controller import LiveRosterController
from bedboard.errors import BedboardError, EditorStateError
from bedboard.models import RosterView
from bedboard.store import DirectoryStore

logger = structlog.get_logger(__name__)

SendCallable = Callable[[Mapping[str, Any]], Awaitable[None]]


class RosterCommand(BaseModel):
    """A client instruction received over ``/ws/roster``."""

    action: str
    category: Optional[str] = None
    term: Optional[str] = None
    provider_id: Optional[str] = Field(default=None, alias="providerId")
    delta: int = 0
    beds_available: Optional[int] = Field(default=None, alias="bedsAvailable")
    total_beds: Optional[int] = Field(default=None, alias="totalBeds")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _RosterPusher:
    """Coalesce roster renders so a socket only ever receives the latest one.

    With ``min_interval`` at zero every render is sent immediately.  Otherwise
    renders arriving inside the interval replace the pending one and a single
    delayed flush sends whatever is newest.
    """

    def __init__(self, send: SendCallable, *, min_interval: float = 0.0) -> None:
        self._send = send
        self.min_interval = min_interval
        self._pending: Optional[Dict[str, Any]] = None
        self._last_sent_monotonic = 0.0
        self._flush_task: Optional[asyncio.Task[None]] = None
        self._lock = asyncio.Lock()

    async def push(self, view: RosterView) -> None:
        payload = {"type": "roster", **view.to_payload()}
        async with self._lock:
            self._pending = payload
            delay = self._compute_delay()
            if delay <= 0:
                await self._flush_locked()
                return
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.create_task(self._delayed_flush(delay))

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass

    async def _delayed_flush(self, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            async with self._lock:
                await self._flush_locked()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("roster_flush_failed", error=str(exc))
        finally:
            self._flush_task = None

    async def _flush_locked(self) -> None:
        if self._pending is None:
            return
        payload, self._pending = self._pending, None
        self._last_sent_monotonic = time.monotonic()
        await self._send(payload)

    def _compute_delay(self) -> float:
        if self._last_sent_monotonic <= 0 or self.min_interval <= 0:
            return 0.0
        elapsed = time.monotonic() - self._last_sent_monotonic
        remaining = self.min_interval - elapsed
        return remaining if remaining > 0 else 0.0


class RosterWebSocketManager:
    """Accept roster viewers and dispatch their commands to a controller."""

    def __init__(self, store: DirectoryStore, *, min_interval: float = 0.0) -> None:
        self._store = store
        self._resolver = AuthorizationResolver(store)
        self.min_interval = min_interval
        self._sessions: Dict[str, LiveRosterController] = {}
        self._handlers: Dict[str, Callable[[LiveRosterController, RosterCommand, SendCallable], Awaitable[None]]] = {
            "filter": self._on_filter,
            "search": self._on_search,
            "openEditor": self._on_open_editor,
            "closeEditor": self._on_close_editor,
            "adjust": self._on_adjust,
            "setDraft": self._on_set_draft,
            "submit": self._on_submit,
            "viewReviews": self._on_view_reviews,
            "leaveReview": self._on_leave_review,
        }

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    @property
    def actions(self) -> Set[str]:
        return set(self._handlers)

    async def handle(self, websocket: WebSocket, identity: Identity) -> None:
        """Stream the roster to *websocket* until it disconnects."""

        await websocket.accept()
        session_id = uuid.uuid4().hex
        bind_contextvars(roster_session=session_id)
        send_lock = asyncio.Lock()

        async def _send(payload: Mapping[str, Any]) -> None:
            async with send_lock:
                await websocket.send_json(dict(payload))

        pusher = _RosterPusher(_send, min_interval=self.min_interval)
        controller = LiveRosterController(
            self._store,
            self._resolver,
            identity,
            on_render=pusher.push,
        )
        self._sessions[session_id] = controller
        try:
            await _send({"event": "connected", "channel": "roster", "sessionId": session_id})
            await controller.initialize()
            await _send(
                {
                    "type": "capability",
                    "canEdit": controller.capability.is_editor,
                    "providerId": controller.capability.provider_id,
                }
            )
            while True:
                raw = await websocket.receive_text()
                await self._dispatch(controller, raw, _send)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            logger.exception("roster_ws_failed", error=str(exc))
            raise
        finally:
            await controller.close()
            await pusher.close()
            self._sessions.pop(session_id, None)
            unbind_contextvars("roster_session")

    async def _dispatch(
        self,
        controller: LiveRosterController,
        raw: str,
        send: SendCallable,
    ) -> None:
        try:
            command = RosterCommand.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as exc:
            await send({"type": "error", "code": "invalid_command", "message": str(exc)})
            return
        handler = self._handlers.get(command.action)
        if handler is None:
            await send(
                {
                    "type": "error",
                    "code": "unknown_action",
                    "message": f"Unknown action {command.action!r}",
                    "action": command.action,
                }
            )
            return
        try:
            await handler(controller, command, send)
        except BedboardError as exc:
            logger.info("roster_command_failed", action=command.action, code=exc.code)
            await send({"type": "error", "action": command.action, **exc.to_payload()})
            if command.action in {"openEditor", "submit", "adjust", "setDraft"}:
                await send({"type": "editor", **controller.editor_payload()})

    @staticmethod
    def _require_provider(command: RosterCommand) -> str:
        if not command.provider_id:
            raise EditorStateError("providerId is required")
        return command.provider_id

    async def _on_filter(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        visible = await controller.filter_by_category(command.category or "All")
        await send({"type": "banner", "visible": visible, "category": controller.category})

    async def _on_search(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        await controller.search_providers(command.term or "")

    async def _on_open_editor(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        await controller.open_editor(self._require_provider(command))
        await send({"type": "editor", **controller.editor_payload()})

    async def _on_close_editor(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        controller.close_editor()
        await send({"type": "editor", **controller.editor_payload()})

    async def _on_adjust(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        controller.adjust_draft(command.delta)
        await send({"type": "editor", **controller.editor_payload()})

    async def _on_set_draft(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        draft = controller.draft
        if draft is None:
            raise EditorStateError()
        available = command.beds_available if command.beds_available is not None else draft.beds_available
        total = command.total_beds if command.total_beds is not None else draft.total_beds
        controller.set_draft(available, total)
        await send({"type": "editor", **controller.editor_payload()})

    async def _on_submit(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        await controller.submit_editor(self._require_provider(command))
        await send({"type": "notice", "message": "Bed availability updated successfully!"})
        await send({"type": "editor", **controller.editor_payload()})

    async def _on_view_reviews(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        controller.view_reviews(self._require_provider(command))

    async def _on_leave_review(self, controller: LiveRosterController, command: RosterCommand, send: SendCallable) -> None:
        controller.leave_review(self._require_provider(command))


__all__ = ["RosterCommand", "RosterWebSocketManager"]
