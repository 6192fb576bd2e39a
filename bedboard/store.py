"""SQL-backed provider directory with live change subscriptions.

The store is the single shared mutable resource.  Writes are serialised by an
``asyncio.Lock``; after each committed write the full collection is reloaded
while the lock is still held and offered to every subscriber, so each
subscriber observes snapshots in commit order.  SQL runs in worker threads via
``asyncio.to_thread`` and is serialised again with a ``threading.Lock`` because
SQLite connections may be shared through ``StaticPool``.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import threading
from contextlib import contextmanager
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    TypeVar,
    Union,
)

import structlog
from sqlalchemy import (
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bedboard.errors import BedboardError, NotFound, StoreUnavailable
from bedboard.models import Provider
from bedboard.time_utils import timestamp_from_column, timestamp_to_column, utc_now

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Snapshot = Tuple[Provider, ...]
SnapshotCallback = Callable[[Snapshot], Awaitable[None]]
ErrorCallback = Callable[[BedboardError], Awaitable[None]]


class _ServerTimestamp:
    """Placeholder replaced with the store clock inside the write transaction."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


metadata = MetaData()

providers_table = Table(
    "providers",
    metadata,
    Column("id", String, primary_key=True),
    Column("seq", Integer, nullable=False),
    Column("name", Text),
    Column("service_type", String),
    Column("location", Text),
    Column("description", Text),
    Column("contact", Text),
    Column("email", String),
    Column("website", String),
    Column("admin_email", String),
    Column("beds_available", Integer),
    Column("total_beds", Integer),
    Column("lotus_rating", Text),
    Column("last_bed_update", Float),
    Column("updated_at", Float),
)
Index("idx_providers_admin_email", providers_table.c.admin_email)
Index("idx_providers_seq", providers_table.c.seq)

# document field -> column
_FIELD_COLUMNS: Dict[str, str] = {
    "name": "name",
    "serviceType": "service_type",
    "location": "location",
    "description": "description",
    "contact": "contact",
    "email": "email",
    "website": "website",
    "adminEmail": "admin_email",
    "bedsAvailable": "beds_available",
    "totalBeds": "total_beds",
    "lotusRating": "lotus_rating",
    "lastBedUpdate": "last_bed_update",
    "updatedAt": "updated_at",
}
_TIMESTAMP_FIELDS = {"lastBedUpdate", "updatedAt"}


def build_engine(url: str, **options: Any) -> Engine:
    """Create an engine, sharing one connection for in-memory SQLite."""

    if url in {"sqlite://", "sqlite:///:memory:"}:
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(url, **options)


def _row_to_provider(row: Mapping[str, Any]) -> Provider:
    doc: Dict[str, Any] = {"id": row["id"]}
    for field_name, column in _FIELD_COLUMNS.items():
        value = row[column]
        if value is None:
            continue
        if field_name == "lotusRating":
            value = json.loads(value)
        elif field_name in _TIMESTAMP_FIELDS:
            value = timestamp_from_column(value)
        doc[field_name] = value
    return Provider.model_validate(doc)


class Subscription:
    """Cancellation token for one live listener on the provider collection.

    Snapshots are queued and delivered sequentially by a dedicated task, so
    callbacks never overlap.  After :meth:`cancel` nothing else is delivered,
    including snapshots already queued.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        store: "DirectoryStore",
        callback: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.id = next(self._ids)
        self._store = store
        self._callback = callback
        self._on_error = on_error
        self._queue: asyncio.Queue[Union[Snapshot, BedboardError, None]] = asyncio.Queue()
        self._active = True
        self._task: asyncio.Task[None] = asyncio.create_task(self._drain())

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._store._detach(self)
        self._queue.put_nowait(None)
        logger.debug("store_subscription_cancelled", subscription=self.id)

    async def wait_closed(self) -> None:
        """Wait for the delivery task to finish after :meth:`cancel`."""

        if not self._task.done():
            await asyncio.shield(self._task)

    def _offer(self, item: Union[Snapshot, BedboardError]) -> None:
        if self._active:
            self._queue.put_nowait(item)

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            if item is None or not self._active:
                return
            try:
                if isinstance(item, BedboardError):
                    if self._on_error is not None:
                        await self._on_error(item)
                    else:
                        logger.error(
                            "store_subscription_error_unhandled",
                            subscription=self.id,
                            error=item.message,
                        )
                else:
                    await self._callback(item)
            except Exception:
                logger.exception("store_subscription_callback_failed", subscription=self.id)


class DirectoryStore:
    """Provider documents keyed by id, observable as a whole collection."""

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Callable[[], Any] = utc_now,
    ) -> None:
        self._engine = engine
        self._session_factory = sessionmaker(bind=engine)
        self._clock = clock
        self._subscriptions: Set[Subscription] = set()
        self._write_lock = asyncio.Lock()
        self._db_lock = threading.Lock()
        self._ready = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Create the schema if needed and signal readiness."""

        await self._run("start", metadata.create_all, self._engine)
        self._ready.set()
        logger.info("store_ready", url=self._engine.url.render_as_string(hide_password=True))

    async def wait_ready(self) -> None:
        await self._ready.wait()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.cancel()
        self._ready.clear()
        await asyncio.to_thread(self._engine.dispose)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get(self, provider_id: str) -> Optional[Provider]:
        return await self._run("get", self._get_sync, provider_id)

    async def find_by_admin_email(self, email: str) -> List[Provider]:
        return await self._run("find_by_admin_email", self._find_by_admin_email_sync, email)

    async def snapshot(self) -> Snapshot:
        return await self._run("snapshot", self._load_all_sync)

    async def subscribe(
        self,
        callback: SnapshotCallback,
        *,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        """Listen for the full collection, starting with its current state."""

        subscription = Subscription(self, callback, on_error)
        async with self._write_lock:
            self._subscriptions.add(subscription)
            try:
                initial = await self._run("subscribe", self._load_all_sync)
            except StoreUnavailable as exc:
                subscription._offer(exc)
            else:
                subscription._offer(initial)
        logger.debug(
            "store_subscription_opened",
            subscription=subscription.id,
            listeners=len(self._subscriptions),
        )
        return subscription

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def update_fields(self, provider_id: str, fields: Mapping[str, Any]) -> Provider:
        """Atomically set *fields* on one provider and notify subscribers."""

        async with self._write_lock:
            provider = await self._run("update_fields", self._update_sync, provider_id, dict(fields))
            await self._emit_locked()
        return provider

    async def put(self, provider: Union[Provider, Mapping[str, Any]]) -> Provider:
        """Insert or replace a provider document."""

        if not isinstance(provider, Provider):
            provider = Provider.model_validate(provider)
        async with self._write_lock:
            stored = await self._run("put", self._put_sync, provider)
            await self._emit_locked()
        return stored

    async def delete(self, provider_id: str) -> bool:
        async with self._write_lock:
            removed = await self._run("delete", self._delete_sync, provider_id)
            if removed:
                await self._emit_locked()
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _detach(self, subscription: Subscription) -> None:
        self._subscriptions.discard(subscription)

    async def _emit_locked(self) -> None:
        if not self._subscriptions:
            return
        try:
            current: Union[Snapshot, BedboardError] = await self._run("emit", self._load_all_sync)
        except StoreUnavailable as exc:
            current = exc
        for subscription in list(self._subscriptions):
            subscription._offer(current)

    async def _run(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(self._locked_call, fn, *args)
        except SQLAlchemyError as exc:
            logger.error("store_operation_failed", operation=operation, error=str(exc))
            raise StoreUnavailable(operation=operation) from exc

    def _locked_call(self, fn: Callable[..., T], *args: Any) -> T:
        with self._db_lock:
            return fn(*args)

    @contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _get_sync(self, provider_id: str) -> Optional[Provider]:
        with self.session_scope() as session:
            row = (
                session.execute(select(providers_table).where(providers_table.c.id == provider_id))
                .mappings()
                .first()
            )
            return _row_to_provider(row) if row else None

    def _find_by_admin_email_sync(self, email: str) -> List[Provider]:
        with self.session_scope() as session:
            rows = session.execute(
                select(providers_table)
                .where(providers_table.c.admin_email == email)
                .order_by(providers_table.c.seq)
            ).mappings()
            return [_row_to_provider(row) for row in rows]

    def _load_all_sync(self) -> Snapshot:
        with self.session_scope() as session:
            rows = session.execute(
                select(providers_table).order_by(providers_table.c.seq)
            ).mappings()
            return tuple(_row_to_provider(row) for row in rows)

    def _update_sync(self, provider_id: str, fields: Dict[str, Any]) -> Provider:
        unknown = sorted(set(fields) - set(_FIELD_COLUMNS))
        if unknown:
            raise ValueError(f"Unknown provider fields: {', '.join(unknown)}")
        now = timestamp_to_column(self._clock())
        values: Dict[str, Any] = {}
        for field_name, value in fields.items():
            if value is SERVER_TIMESTAMP:
                value = now
            elif field_name in _TIMESTAMP_FIELDS and value is not None:
                value = timestamp_to_column(value)
            elif field_name == "lotusRating" and value is not None:
                value = json.dumps(dict(value))
            values[_FIELD_COLUMNS[field_name]] = value
        with self.session_scope() as session:
            result = session.execute(
                update(providers_table)
                .where(providers_table.c.id == provider_id)
                .values(**values)
            )
            if result.rowcount == 0:
                raise NotFound(provider_id=provider_id)
            row = (
                session.execute(select(providers_table).where(providers_table.c.id == provider_id))
                .mappings()
                .one()
            )
            return _row_to_provider(row)

    def _put_sync(self, provider: Provider) -> Provider:
        doc = provider.model_dump(by_alias=True)
        values: Dict[str, Any] = {}
        for field_name, column in _FIELD_COLUMNS.items():
            value = doc.get(field_name)
            if field_name == "lotusRating" and value is not None:
                value = json.dumps(value)
            elif field_name in _TIMESTAMP_FIELDS:
                value = timestamp_to_column(value)
            values[column] = value
        with self.session_scope() as session:
            exists = session.execute(
                select(providers_table.c.id).where(providers_table.c.id == provider.id)
            ).first()
            if exists:
                session.execute(
                    update(providers_table)
                    .where(providers_table.c.id == provider.id)
                    .values(**values)
                )
            else:
                next_seq = session.execute(
                    select(func.coalesce(func.max(providers_table.c.seq), 0) + 1)
                ).scalar_one()
                session.execute(
                    insert(providers_table).values(id=provider.id, seq=next_seq, **values)
                )
            row = (
                session.execute(select(providers_table).where(providers_table.c.id == provider.id))
                .mappings()
                .one()
            )
            return _row_to_provider(row)

    def _delete_sync(self, provider_id: str) -> bool:
        with self.session_scope() as session:
            result = session.execute(
                delete(providers_table).where(providers_table.c.id == provider_id)
            )
            return bool(result.rowcount)


__all__ = [
    "SERVER_TIMESTAMP",
    "DirectoryStore",
    "Snapshot",
    "Subscription",
    "build_engine",
    "metadata",
    "providers_table",
]
