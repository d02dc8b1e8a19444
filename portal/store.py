"""
portal/store.py -- SQLAlchemy-backed persistence layer for the AppPortal core.

Uses SQLAlchemy Core (not ORM) so the dataclasses in portal/models.py remain
the authoritative domain representation. Swapping SQLite for PostgreSQL is a
connection string change, not a rewrite.

Pattern: Repository + Data Mapper. PortalStore is the repository (one method
per query). The _row_to_* functions are the mappers. Services and routes never
touch SQL directly.

Transactions:
  Methods that take a ``conn`` argument participate in the caller's
  transaction (opened with ``store.transaction()``). Methods that accept
  ``conn=None`` open and commit their own transaction when none is given.
  Lifecycle transitions and reconciliation always run inside one
  caller-owned transaction so a failure rolls back every write.

Legacy status literal:
  Old rows may carry status 'PENDING'. It is normalized to
  RequestStatus.submitted in _row_to_request and nowhere else. Filters and
  conditional writes match both spellings via _stored_values(); storage is
  not rewritten.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = PortalStore()                               # SQLite default
    store = PortalStore("postgresql://user:pw@host/db") # PostgreSQL
    with store.transaction() as conn:
        request_id = store.insert_request(conn, req)
    store.close()
"""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    case,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from core.exceptions import ConcurrentModification
from portal.models import (
    AppRequest,
    ApplicationTile,
    AuditEntry,
    CatalogSyncLog,
    RequestHistoryEntry,
    RequestStatus,
    UserAppAssignment,
)

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'appportal.db'}"

# Upsert / insert-ignore need the dialect's own insert() construct.
_DIALECT_INSERTS = {
    "sqlite": sqlite_insert,
    "postgresql": pg_insert,
}

_LEGACY_STATUS_ALIASES: dict[str, RequestStatus] = {
    "PENDING": RequestStatus.submitted,
}

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_requests = Table(
    "app_requests",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("app_id", String(36)),
    Column("app_identifier_or_name", String(255), nullable=False),
    # lower(strip(name)) when unresolved, app_id when resolved
    Column("target_key", String(255), nullable=False),
    Column("app_exists_in_store", Boolean, nullable=False, server_default="0"),
    Column("reason", Text, nullable=False),
    Column("status", String(20), nullable=False, server_default="submitted"),
    Column("cost_center", String(100)),
    Column("priority", String(20)),
    Column("desired_by_date", String(10)),  # YYYY-MM-DD
    Column("notes", Text),
    Column("reviewed_by", Integer),
    Column("reviewed_at", String(32)),
    Column("admin_note", Text),
    Column("deny_reason", Text),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_history = Table(
    "app_request_history",
    metadata,
    # Autoincrement id doubles as a tiebreaker for rows written in the same
    # microsecond (approve + implement).
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("request_id", String(36), nullable=False, index=True),
    Column("status", String(20), nullable=False),
    Column("changed_by", Integer),
    Column("note", Text),
    Column("created_at", String(32), nullable=False),
)

_tiles = Table(
    "application_tiles",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("short_description", String(500)),
    Column("category", String(100), nullable=False, server_default="General"),
    Column("logo_url", Text),
    Column("icon_url", Text),
    Column("launch_url", Text),
    Column("auth_type", String(50)),
    Column("tags", Text),  # JSON array serialized as text
    Column("publisher", String(255)),
    Column("version", String(50)),
    Column("app_identifier", String(255), unique=True),
    Column("is_available_in_store", Boolean, nullable=False, server_default="0"),
    Column("requires_approval", Boolean, nullable=False, server_default="1"),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("sync_status", String(20), nullable=False, server_default="pending"),
    Column("master_catalog_synced_at", String(32)),
    Column("created_by", Integer),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_assignments = Table(
    "user_app_assignments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", Integer, nullable=False),
    Column("app_tile_id", String(36), nullable=False),
    Column("app_username", String(255)),
    Column("pin_hash", Text),
    Column("requires_pin", Boolean, nullable=False, server_default="0"),
    Column("encrypted_credentials", Text),
    Column("assigned_by", Integer),
    Column("assigned_at", String(32), nullable=False),
    UniqueConstraint("user_id", "app_tile_id", name="uq_user_app"),
)

_sync_logs = Table(
    "catalog_sync_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sync_id", String(64), nullable=False, unique=True),
    Column("start_time", String(32), nullable=False),
    Column("end_time", String(32)),
    Column("status", String(20), nullable=False, server_default="running"),
    Column("apps_added", Integer, nullable=False, server_default="0"),
    Column("apps_updated", Integer, nullable=False, server_default="0"),
    Column("apps_marked_unavailable", Integer, nullable=False, server_default="0"),
    Column("errors", Text),  # JSON array of {field, message}
    Column("triggered_by", Integer),
    Column("sync_mode", String(20), nullable=False, server_default="on_demand"),
)

_settings = Table(
    "system_settings",
    metadata,
    Column("key", String(100), primary_key=True),
    Column("value", Text),  # JSON
    Column("description", Text),
    Column("updated_by", Integer),
    Column("updated_at", String(32), nullable=False),
)

_audit = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),
    Column("action", String(100), nullable=False),
    Column("target_id", String(64)),
    Column("details", Text),  # JSON object
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return str(uuid.uuid4())


_WHITESPACE_RE = re.compile(r"\s+")


def normalize_target(name: str) -> str:
    """Return the addressing key for a free-text app name: lowercased, whitespace runs collapsed."""
    return _WHITESPACE_RE.sub(" ", name.strip().lower())


def _normalize_status(raw: str) -> RequestStatus:
    alias = _LEGACY_STATUS_ALIASES.get(raw)
    return alias if alias is not None else RequestStatus(raw)


def _stored_values(statuses: Iterable[RequestStatus]) -> list[str]:
    """Expand domain statuses to every literal that may be stored for them."""
    values: list[str] = []
    for status in statuses:
        values.append(status.value)
        values.extend(raw for raw, alias in _LEGACY_STATUS_ALIASES.items() if alias == status)
    return values


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _on_sqlite_connect(dbapi_conn, connection_record) -> None:
    """Enable WAL and hand transaction control to SQLAlchemy.

    pysqlite's own implicit BEGIN handling breaks SAVEPOINT, which the sync
    job uses to isolate per-tile failures. Disabling it here and emitting
    BEGIN from the "begin" event (below) is the SQLAlchemy-documented recipe.
    """
    dbapi_conn.isolation_level = None
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _on_sqlite_begin(conn) -> None:
    conn.exec_driver_sql("BEGIN")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class PortalStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if self.engine.dialect.name not in _DIALECT_INSERTS:
            raise ValueError(f"Unsupported database dialect: {self.engine.dialect.name}")
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _on_sqlite_connect)
            event.listen(self.engine, "begin", _on_sqlite_begin)
        metadata.create_all(self.engine)

    @property
    def _insert(self):
        return _DIALECT_INSERTS[self.engine.dialect.name]

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        """Open a transaction; commit on clean exit, roll back on exception."""
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _use(self, conn: Optional[Connection]) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as own:
                yield own

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # App requests
    # ------------------------------------------------------------------

    def insert_request(self, conn: Connection, req: AppRequest) -> str:
        """Insert a new request row and return its id. Timestamps are set here."""
        now = _now_iso()
        request_id = req.id or _new_id()
        target_key = req.app_id if req.app_id else normalize_target(req.app_identifier_or_name)
        conn.execute(
            _requests.insert().values(
                id=request_id,
                user_id=req.user_id,
                app_id=req.app_id,
                app_identifier_or_name=req.app_identifier_or_name,
                target_key=target_key,
                app_exists_in_store=req.app_exists_in_store,
                reason=req.reason,
                status=req.status.value,
                cost_center=req.cost_center,
                priority=req.priority,
                desired_by_date=req.desired_by_date,
                notes=req.notes,
                created_at=now,
                updated_at=now,
            )
        )
        return request_id

    def get_request(self, request_id: str, conn: Optional[Connection] = None) -> Optional[AppRequest]:
        with self._use(conn) as c:
            row = c.execute(_requests.select().where(_requests.c.id == request_id)).fetchone()
        return _row_to_request(row) if row is not None else None

    def find_open_request(
        self,
        conn: Connection,
        user_id: int,
        target_key: Optional[str] = None,
        app_id: Optional[str] = None,
    ) -> Optional[AppRequest]:
        """Return the user's open request for a target, or None.

        Matches on the normalized free-text key or on the bound app_id.
        """
        # bind_request_app() rewrites target_key to the app_id, so one IN
        # covers both addressing modes.
        keys = [k for k in (target_key, app_id) if k]
        if not keys:
            return None
        stmt = (
            _requests.select()
            .where(_requests.c.user_id == user_id)
            .where(_requests.c.status.in_(_stored_values([RequestStatus.submitted, RequestStatus.in_review])))
            .where(_requests.c.target_key.in_(keys))
            .order_by(_requests.c.created_at)
            .limit(1)
        )
        row = conn.execute(stmt).fetchone()
        return _row_to_request(row) if row is not None else None

    def update_request_status(
        self,
        conn: Connection,
        request_id: str,
        expected: Iterable[RequestStatus],
        new_status: RequestStatus,
        **fields: Any,
    ) -> None:
        """Conditionally move a request to ``new_status``.

        The UPDATE only matches while the stored status is still one of
        ``expected`` (legacy spellings included). Zero matched rows means a
        concurrent writer got there first; raises ConcurrentModification so
        the caller's transaction rolls back.
        """
        result = conn.execute(
            _requests.update()
            .where(_requests.c.id == request_id)
            .where(_requests.c.status.in_(_stored_values(expected)))
            .values(status=new_status.value, updated_at=_now_iso(), **fields)
        )
        if result.rowcount == 0:
            raise ConcurrentModification(request_id=request_id)

    def bind_request_app(self, conn: Connection, request_id: str, app_id: str) -> None:
        """Point a request at a resolved tile and switch its addressing mode."""
        conn.execute(
            _requests.update()
            .where(_requests.c.id == request_id)
            .values(app_id=app_id, app_exists_in_store=True, target_key=app_id, updated_at=_now_iso())
        )

    def _request_filter(self, stmt, user_id: Optional[int], status: Optional[RequestStatus]):
        if user_id is not None:
            stmt = stmt.where(_requests.c.user_id == user_id)
        if status is not None:
            stmt = stmt.where(_requests.c.status.in_(_stored_values([status])))
        return stmt

    def list_requests(
        self,
        user_id: Optional[int] = None,
        status: Optional[RequestStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AppRequest]:
        """Return requests, open ones first (submitted, then in_review), newest first within a group."""
        open_first = case(
            (_requests.c.status.in_(_stored_values([RequestStatus.submitted])), 0),
            (_requests.c.status == RequestStatus.in_review.value, 1),
            else_=2,
        )
        stmt = self._request_filter(_requests.select(), user_id, status)
        stmt = stmt.order_by(open_first, _requests.c.created_at.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_request(r) for r in rows]

    def count_requests(self, user_id: Optional[int] = None, status: Optional[RequestStatus] = None) -> int:
        stmt = self._request_filter(select(func.count()).select_from(_requests), user_id, status)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0

    def count_requests_by_status(self) -> dict[str, int]:
        """Return {status: count} over all requests, legacy literals folded in."""
        counts = {s.value: 0 for s in RequestStatus}
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_requests.c.status, func.count()).group_by(_requests.c.status)
            ).fetchall()
        for raw, n in rows:
            counts[_normalize_status(raw).value] += n
        return counts

    # ------------------------------------------------------------------
    # Request history
    # ------------------------------------------------------------------

    def insert_history(self, conn: Connection, entry: RequestHistoryEntry) -> None:
        conn.execute(
            _history.insert().values(
                request_id=entry.request_id,
                status=entry.status.value,
                changed_by=entry.changed_by,
                note=entry.note,
                created_at=_now_iso(),
            )
        )

    def get_history(self, request_id: str) -> list[RequestHistoryEntry]:
        """Return the transition trail for a request, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _history.select()
                .where(_history.c.request_id == request_id)
                .order_by(_history.c.created_at, _history.c.id)
            ).fetchall()
        return [_row_to_history(r) for r in rows]

    # ------------------------------------------------------------------
    # Application tiles
    # ------------------------------------------------------------------

    def find_store_tile(
        self,
        conn: Connection,
        name_or_identifier: str,
        active_only: bool = True,
    ) -> Optional[ApplicationTile]:
        """Case-insensitive lookup of an in-store tile by name or app_identifier."""
        key = normalize_target(name_or_identifier)
        stmt = (
            _tiles.select()
            .where((func.lower(_tiles.c.name) == key) | (func.lower(_tiles.c.app_identifier) == key))
            .where(_tiles.c.is_available_in_store.is_(True))
        )
        if active_only:
            stmt = stmt.where(_tiles.c.status == "active")
        row = conn.execute(stmt.order_by(_tiles.c.created_at).limit(1)).fetchone()
        return _row_to_tile(row) if row is not None else None

    def create_tile(self, tile: ApplicationTile, conn: Optional[Connection] = None) -> str:
        """Insert a tile and return its id."""
        now = _now_iso()
        tile_id = tile.id or _new_id()
        with self._use(conn) as c:
            c.execute(
                _tiles.insert().values(
                    id=tile_id,
                    name=tile.name,
                    description=tile.description,
                    short_description=tile.short_description,
                    category=tile.category,
                    logo_url=tile.logo_url,
                    icon_url=tile.icon_url,
                    launch_url=tile.launch_url,
                    auth_type=tile.auth_type,
                    tags=json.dumps(tile.tags),
                    publisher=tile.publisher,
                    version=tile.version,
                    app_identifier=tile.app_identifier,
                    is_available_in_store=tile.is_available_in_store,
                    requires_approval=tile.requires_approval,
                    status=tile.status,
                    sync_status=tile.sync_status,
                    master_catalog_synced_at=tile.master_catalog_synced_at,
                    created_by=tile.created_by,
                    created_at=now,
                    updated_at=now,
                )
            )
        return tile_id

    def get_tile(self, tile_id: str, conn: Optional[Connection] = None) -> Optional[ApplicationTile]:
        with self._use(conn) as c:
            row = c.execute(_tiles.select().where(_tiles.c.id == tile_id)).fetchone()
        return _row_to_tile(row) if row is not None else None

    def get_tile_by_identifier(self, identifier: str, conn: Optional[Connection] = None) -> Optional[ApplicationTile]:
        with self._use(conn) as c:
            row = c.execute(_tiles.select().where(_tiles.c.app_identifier == identifier)).fetchone()
        return _row_to_tile(row) if row is not None else None

    def list_tiles(self, store_only: bool = False) -> list[ApplicationTile]:
        """Return tiles ordered by name. store_only limits to active, in-store tiles."""
        stmt = _tiles.select()
        if store_only:
            stmt = stmt.where(_tiles.c.is_available_in_store.is_(True)).where(_tiles.c.status == "active")
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_tiles.c.name)).fetchall()
        return [_row_to_tile(r) for r in rows]

    def update_tile(self, tile_id: str, conn: Optional[Connection] = None, **fields: Any) -> bool:
        """Update mutable tile fields. tags must be passed as list[str].

        Returns True if a row was updated, False if tile_id was not found.
        """
        if "tags" in fields:
            fields["tags"] = json.dumps(fields["tags"])
        with self._use(conn) as c:
            result = c.execute(_tiles.update().where(_tiles.c.id == tile_id).values(updated_at=_now_iso(), **fields))
        return result.rowcount > 0

    def delete_tile(self, tile_id: str) -> bool:
        """Delete a tile and every assignment that grants it."""
        with self.transaction() as conn:
            conn.execute(_assignments.delete().where(_assignments.c.app_tile_id == tile_id))
            result = conn.execute(_tiles.delete().where(_tiles.c.id == tile_id))
        return result.rowcount > 0

    def list_master_candidates(self, conn: Connection) -> list[ApplicationTile]:
        """Tiles carrying an app_identifier: the simulated master catalog."""
        rows = conn.execute(
            _tiles.select().where(_tiles.c.app_identifier.is_not(None)).order_by(_tiles.c.created_at)
        ).fetchall()
        return [_row_to_tile(r) for r in rows]

    def list_store_tiles_by_identifier(self, conn: Connection) -> dict[str, ApplicationTile]:
        """Current store view, indexed by app_identifier (tiles without one are skipped)."""
        rows = conn.execute(_tiles.select().where(_tiles.c.is_available_in_store.is_(True))).fetchall()
        tiles = (_row_to_tile(r) for r in rows)
        return {t.app_identifier: t for t in tiles if t.app_identifier}

    def mark_tile_synced(self, conn: Connection, tile_id: str, synced_at: str) -> None:
        """Publish a master-catalog tile into the store."""
        conn.execute(
            _tiles.update()
            .where(_tiles.c.id == tile_id)
            .values(
                is_available_in_store=True,
                sync_status="synced",
                master_catalog_synced_at=synced_at,
                updated_at=synced_at,
            )
        )

    def refresh_tile_from_master(
        self,
        conn: Connection,
        tile_id: str,
        master: ApplicationTile,
        synced_at: str,
    ) -> None:
        """Overwrite descriptive fields only where the master value is non-null."""
        c = _tiles.c
        master_tags = json.dumps(master.tags) if master.tags else None
        conn.execute(
            _tiles.update()
            .where(c.id == tile_id)
            .values(
                name=func.coalesce(master.name, c.name),
                description=func.coalesce(master.description, c.description),
                short_description=func.coalesce(master.short_description, c.short_description),
                category=func.coalesce(master.category, c.category),
                version=func.coalesce(master.version, c.version),
                publisher=func.coalesce(master.publisher, c.publisher),
                tags=func.coalesce(master_tags, c.tags),
                sync_status="synced",
                master_catalog_synced_at=synced_at,
                updated_at=synced_at,
            )
        )

    def sweep_stale_tiles(self, conn: Connection, cutoff: str, now: str) -> int:
        """Pull in-store tiles not seen by the master catalog since ``cutoff``.

        Returns the number of tiles marked unavailable.
        """
        result = conn.execute(
            _tiles.update()
            .where(_tiles.c.is_available_in_store.is_(True))
            .where(_tiles.c.master_catalog_synced_at < cutoff)
            .where(_tiles.c.sync_status != "unavailable")
            .values(is_available_in_store=False, sync_status="unavailable", updated_at=now)
        )
        return result.rowcount

    def publish_active_tiles(self, conn: Connection) -> int:
        """Make every active tile available in the store. Returns rows changed."""
        result = conn.execute(
            _tiles.update()
            .where(_tiles.c.status == "active")
            .where(_tiles.c.is_available_in_store.is_(False))
            .values(is_available_in_store=True, updated_at=_now_iso())
        )
        return result.rowcount

    def tile_counts(self) -> dict[str, int]:
        """Return {catalog_apps, store_apps, unsynced} over active tiles."""
        active = _tiles.c.status == "active"
        in_store = _tiles.c.is_available_in_store.is_(True)
        with self.engine.connect() as conn:
            catalog = conn.execute(select(func.count()).select_from(_tiles).where(active)).scalar() or 0
            store = conn.execute(select(func.count()).select_from(_tiles).where(active & in_store)).scalar() or 0
        return {"catalog_apps": catalog, "store_apps": store, "unsynced": catalog - store}

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def insert_assignment(
        self,
        conn: Connection,
        assignment: UserAppAssignment,
        ignore_conflict: bool = False,
    ) -> bool:
        """Insert an assignment. Returns True if a row was written.

        With ignore_conflict=True an existing (user_id, app_tile_id) pair is
        left untouched and False is returned. Without it the unique
        constraint raises sqlalchemy.exc.IntegrityError.
        """
        values = dict(
            id=assignment.id or _new_id(),
            user_id=assignment.user_id,
            app_tile_id=assignment.app_tile_id,
            app_username=assignment.app_username,
            pin_hash=assignment.pin_hash,
            requires_pin=assignment.requires_pin,
            encrypted_credentials=assignment.encrypted_credentials,
            assigned_by=assignment.assigned_by,
            assigned_at=_now_iso(),
        )
        if ignore_conflict:
            stmt = self._insert(_assignments).values(**values).on_conflict_do_nothing(
                index_elements=["user_id", "app_tile_id"]
            )
        else:
            stmt = _assignments.insert().values(**values)
        return conn.execute(stmt).rowcount > 0

    def get_assignment(
        self,
        user_id: int,
        tile_id: str,
        conn: Optional[Connection] = None,
    ) -> Optional[UserAppAssignment]:
        with self._use(conn) as c:
            row = c.execute(
                _assignments.select()
                .where(_assignments.c.user_id == user_id)
                .where(_assignments.c.app_tile_id == tile_id)
            ).fetchone()
        return _row_to_assignment(row) if row is not None else None

    def list_assignments(self, user_id: int) -> list[tuple[UserAppAssignment, ApplicationTile]]:
        """Return (assignment, tile) pairs for a user, ordered by tile name."""
        stmt = (
            select(_assignments, _tiles)
            .join(_tiles, _tiles.c.id == _assignments.c.app_tile_id)
            .where(_assignments.c.user_id == user_id)
            .order_by(_tiles.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [(_row_to_assignment(r), _row_to_tile(r, offset=len(_assignments.c))) for r in rows]

    def assigned_tile_ids(self, user_id: int) -> set[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_assignments.c.app_tile_id).where(_assignments.c.user_id == user_id)
            ).fetchall()
        return {r[0] for r in rows}

    def open_request_app_ids(self, user_id: int) -> set[str]:
        """app_ids the user has an open request for."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_requests.c.app_id)
                .where(_requests.c.user_id == user_id)
                .where(_requests.c.app_id.is_not(None))
                .where(_requests.c.status.in_(_stored_values([RequestStatus.submitted, RequestStatus.in_review])))
            ).fetchall()
        return {r[0] for r in rows}

    def count_assignments(self, user_id: int, tile_id: str) -> int:
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count())
                    .select_from(_assignments)
                    .where(_assignments.c.user_id == user_id)
                    .where(_assignments.c.app_tile_id == tile_id)
                ).scalar()
                or 0
            )

    def delete_assignment(self, conn: Connection, user_id: int, tile_id: str) -> bool:
        result = conn.execute(
            _assignments.delete()
            .where(_assignments.c.user_id == user_id)
            .where(_assignments.c.app_tile_id == tile_id)
        )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Catalog sync logs
    # ------------------------------------------------------------------

    def insert_sync_log(self, log: CatalogSyncLog, conn: Optional[Connection] = None) -> None:
        with self._use(conn) as c:
            c.execute(
                _sync_logs.insert().values(
                    sync_id=log.sync_id,
                    start_time=log.start_time,
                    status=log.status,
                    triggered_by=log.triggered_by,
                    sync_mode=log.sync_mode,
                    errors=json.dumps(log.errors),
                )
            )

    def get_sync_log(self, sync_id: str) -> Optional[CatalogSyncLog]:
        with self.engine.connect() as conn:
            row = conn.execute(_sync_logs.select().where(_sync_logs.c.sync_id == sync_id)).fetchone()
        return _row_to_sync_log(row) if row is not None else None

    def list_sync_logs(self, limit: int = 20, offset: int = 0) -> list[CatalogSyncLog]:
        """Return sync runs, most recent first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sync_logs.select()
                .order_by(_sync_logs.c.start_time.desc(), _sync_logs.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return [_row_to_sync_log(r) for r in rows]

    def count_running_syncs(self) -> int:
        with self.engine.connect() as conn:
            return (
                conn.execute(
                    select(func.count()).select_from(_sync_logs).where(_sync_logs.c.status == "running")
                ).scalar()
                or 0
            )

    def close_sync_log(
        self,
        sync_id: str,
        status: str,
        errors: list[dict],
        apps_added: int = 0,
        apps_updated: int = 0,
        apps_marked_unavailable: int = 0,
        conn: Optional[Connection] = None,
    ) -> None:
        """Write the single terminal update of a sync run.

        Only a row still marked 'running' is updated, so a run can never be
        closed twice.
        """
        with self._use(conn) as c:
            c.execute(
                _sync_logs.update()
                .where(_sync_logs.c.sync_id == sync_id)
                .where(_sync_logs.c.status == "running")
                .values(
                    end_time=_now_iso(),
                    status=status,
                    apps_added=apps_added,
                    apps_updated=apps_updated,
                    apps_marked_unavailable=apps_marked_unavailable,
                    errors=json.dumps(errors),
                )
            )

    # ------------------------------------------------------------------
    # System settings (raw JSON text; typing lives in portal/settings.py)
    # ------------------------------------------------------------------

    def get_setting(self, key: str, conn: Optional[Connection] = None) -> Optional[str]:
        """Return the raw JSON text stored for ``key``, or None if absent."""
        with self._use(conn) as c:
            row = c.execute(select(_settings.c.value).where(_settings.c.key == key)).fetchone()
        return row[0] if row is not None else None

    def list_settings(self) -> dict[str, Optional[str]]:
        """Return every stored key with its raw JSON text, ordered by key."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(_settings.c.key, _settings.c.value).order_by(_settings.c.key)).fetchall()
        return {key: value for key, value in rows}

    def upsert_setting(
        self,
        conn: Connection,
        key: str,
        value_json: str,
        updated_by: Optional[int] = None,
        description: Optional[str] = None,
    ) -> None:
        now = _now_iso()
        stmt = self._insert(_settings).values(
            key=key, value=value_json, description=description, updated_by=updated_by, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": stmt.excluded.value, "updated_by": stmt.excluded.updated_by, "updated_at": now},
        )
        conn.execute(stmt)

    def seed_setting(self, conn: Connection, key: str, value_json: str, description: str) -> None:
        """Insert a setting only if the key does not exist yet."""
        stmt = self._insert(_settings).values(
            key=key, value=value_json, description=description, updated_at=_now_iso()
        )
        conn.execute(stmt.on_conflict_do_nothing(index_elements=["key"]))

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def write_audit(self, entry: AuditEntry, conn: Optional[Connection] = None) -> None:
        with self._use(conn) as c:
            c.execute(
                _audit.insert().values(
                    actor_id=entry.actor_id,
                    action=entry.action,
                    target_id=entry.target_id,
                    details=json.dumps(entry.details),
                    ip_address=entry.ip_address,
                    created_at=_now_iso(),
                )
            )

    def list_audit(
        self,
        action: Optional[str] = None,
        target_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[AuditEntry]:
        """Return audit entries, newest first."""
        stmt = _audit.select()
        if action is not None:
            stmt = stmt.where(_audit.c.action == action)
        if target_id is not None:
            stmt = stmt.where(_audit.c.target_id == target_id)
        stmt = stmt.order_by(_audit.c.created_at.desc(), _audit.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_audit(r) for r in rows]

    def count_audit(
        self,
        action: str,
        actor_id: Optional[int] = None,
        target_id: Optional[str] = None,
        since: Optional[str] = None,
    ) -> int:
        """Count audit entries for one action, optionally scoped by actor, target and age."""
        stmt = select(func.count()).select_from(_audit).where(_audit.c.action == action)
        if actor_id is not None:
            stmt = stmt.where(_audit.c.actor_id == actor_id)
        if target_id is not None:
            stmt = stmt.where(_audit.c.target_id == target_id)
        if since is not None:
            stmt = stmt.where(_audit.c.created_at > since)
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_request(row) -> AppRequest:
    return AppRequest(
        id=row.id,
        user_id=row.user_id,
        app_id=row.app_id,
        app_identifier_or_name=row.app_identifier_or_name,
        app_exists_in_store=bool(row.app_exists_in_store),
        reason=row.reason,
        status=_normalize_status(row.status),
        cost_center=row.cost_center,
        priority=row.priority,
        desired_by_date=row.desired_by_date,
        notes=row.notes,
        reviewed_by=row.reviewed_by,
        reviewed_at=row.reviewed_at,
        admin_note=row.admin_note,
        deny_reason=row.deny_reason,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_history(row) -> RequestHistoryEntry:
    return RequestHistoryEntry(
        id=row.id,
        request_id=row.request_id,
        status=_normalize_status(row.status),
        changed_by=row.changed_by,
        note=row.note,
        created_at=row.created_at,
    )


def _row_to_tile(row, offset: int = 0) -> ApplicationTile:
    # offset lets list_assignments() map the tile half of a joined row;
    # positional access avoids the id/status name clashes of the join.
    values = dict(zip(_tiles.c.keys(), tuple(row)[offset : offset + len(_tiles.c)]))
    return ApplicationTile(
        id=values["id"],
        name=values["name"],
        description=values["description"],
        short_description=values["short_description"],
        category=values["category"],
        logo_url=values["logo_url"],
        icon_url=values["icon_url"],
        launch_url=values["launch_url"],
        auth_type=values["auth_type"],
        tags=json.loads(values["tags"]) if values["tags"] else [],
        publisher=values["publisher"],
        version=values["version"],
        app_identifier=values["app_identifier"],
        is_available_in_store=bool(values["is_available_in_store"]),
        requires_approval=bool(values["requires_approval"]),
        status=values["status"],
        sync_status=values["sync_status"],
        master_catalog_synced_at=values["master_catalog_synced_at"],
        created_by=values["created_by"],
        created_at=values["created_at"],
        updated_at=values["updated_at"],
    )


def _row_to_assignment(row) -> UserAppAssignment:
    values = dict(zip(_assignments.c.keys(), tuple(row)[: len(_assignments.c)]))
    return UserAppAssignment(
        id=values["id"],
        user_id=values["user_id"],
        app_tile_id=values["app_tile_id"],
        app_username=values["app_username"],
        pin_hash=values["pin_hash"],
        requires_pin=bool(values["requires_pin"]),
        encrypted_credentials=values["encrypted_credentials"],
        assigned_by=values["assigned_by"],
        assigned_at=values["assigned_at"],
    )


def _row_to_sync_log(row) -> CatalogSyncLog:
    return CatalogSyncLog(
        id=row.id,
        sync_id=row.sync_id,
        start_time=row.start_time,
        end_time=row.end_time,
        status=row.status,
        apps_added=row.apps_added,
        apps_updated=row.apps_updated,
        apps_marked_unavailable=row.apps_marked_unavailable,
        errors=json.loads(row.errors) if row.errors else [],
        triggered_by=row.triggered_by,
        sync_mode=row.sync_mode,
    )


def _row_to_audit(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        actor_id=row.actor_id,
        action=row.action,
        target_id=row.target_id,
        details=json.loads(row.details) if row.details else {},
        ip_address=row.ip_address,
        created_at=row.created_at,
    )
