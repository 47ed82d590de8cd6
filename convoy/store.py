"""SQLite work-item store.

Each backing store is one SQLite database holding work items, typed
dependency edges and an append-only event log. The town-level ``hq`` store
holds convoys; per-target stores hold the work they track. The scheduler only
needs CRUD, dependency listing and ``events_since``; anything richer belongs
to the host tool.
"""

import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from .config import (
    DEP_PARENT_CHILD,
    HQ_STORE,
    STATUS_CLOSED,
    get_convoy_dir,
    get_scheduler_settings,
    load_config,
)
from .exceptions import StoreError, StoreUnavailableError
from .models import (
    EVENT_CLOSED,
    EVENT_CREATED,
    EVENT_DEPENDENCY_ADDED,
    EVENT_DEPENDENCY_REMOVED,
    EVENT_STATUS_CHANGED,
    EVENT_UPDATED,
    Dependency,
    Event,
    WorkItem,
)
from .routing import extract_item_id, store_for_item

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

_UPDATABLE_FIELDS = {"title", "type", "status", "assignee", "description"}


class Store:
    """A single SQLite-backed work-item store.

    Args:
        path: SQLite database file
        name: Store name ("hq" or a target name), used in log messages
        timeout: Seconds to wait on a locked database before failing
    """

    def __init__(self, path: Path | str, name: str = HQ_STORE, timeout: float = 30.0):
        self.path = Path(path)
        self.name = name
        self.timeout = timeout
        self._closed = False

    def __repr__(self) -> str:
        return f"Store(name={self.name!r}, path={str(self.path)!r})"

    @contextmanager
    def _connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with proper settings.

        Configures:
        - WAL mode for concurrent readers while a writer is active
        - Row factory for dict-like access

        Yields:
            SQLite connection with transaction management

        Raises:
            StoreUnavailableError: If the store was closed or cannot be opened
        """
        if self._closed:
            raise StoreUnavailableError(f"store {self.name} is closed")
        try:
            conn = sqlite3.connect(self.path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"store {self.name}: cannot open {self.path}: {e}") from e
        conn.row_factory = sqlite3.Row

        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise StoreUnavailableError(f"store {self.name}: {e}") from e
        except sqlite3.Error as e:
            conn.rollback()
            raise StoreError(f"store {self.name}: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        """Create all tables if they don't exist. Safe to call multiple times."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS items (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    type TEXT NOT NULL DEFAULT 'task',
                    status TEXT NOT NULL DEFAULT 'open',
                    assignee TEXT NOT NULL DEFAULT '',
                    description TEXT NOT NULL DEFAULT '',
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_items_type_status ON items(type, status)
            """)

            # Typed edges: item_id depends on depends_on_id
            conn.execute("""
                CREATE TABLE IF NOT EXISTS dependencies (
                    item_id TEXT NOT NULL,
                    depends_on_id TEXT NOT NULL,
                    type TEXT NOT NULL,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (item_id, depends_on_id, type)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_deps_target ON dependencies(depends_on_id, type)
            """)

            # Append-only event log; ordinal is the high-water mark key
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    ordinal INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    old_value TEXT,
                    new_value TEXT,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS schema_info (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            """)
            conn.execute(
                "INSERT OR REPLACE INTO schema_info (key, value) VALUES ('version', ?)",
                (str(SCHEMA_VERSION),),
            )

    def close(self) -> None:
        """Mark the store closed; later calls raise StoreUnavailableError."""
        self._closed = True

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    @staticmethod
    def _record_event(
        conn: sqlite3.Connection,
        event_type: str,
        item_id: str,
        old_value: str | None = None,
        new_value: str | None = None,
    ) -> None:
        conn.execute(
            "INSERT INTO events (event_type, item_id, old_value, new_value) VALUES (?, ?, ?, ?)",
            (event_type, item_id, old_value, new_value),
        )

    def create_item(
        self,
        item_id: str,
        title: str = "",
        type: str = "task",
        status: str = "open",
        assignee: str = "",
        description: str = "",
    ) -> WorkItem:
        """Create a work item and log a ``created`` event.

        Raises:
            StoreError: If the id already exists
        """
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO items (id, title, type, status, assignee, description)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (item_id, title, type, status, assignee, description),
            )
            self._record_event(conn, EVENT_CREATED, item_id, None, status)

        return self.get_item(item_id)

    def get_item(self, item_id: str) -> WorkItem | None:
        """Get a work item by id, or None if it does not exist."""
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            return None
        return WorkItem.from_dict(dict(row))

    def update_item(self, item_id: str, **fields: Any) -> WorkItem | None:
        """Update fields on a work item.

        A status change logs a ``status_changed`` event carrying the new value;
        other field changes log ``updated``.

        Returns:
            Updated item, or None if the item does not exist
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise StoreError(f"cannot update unknown field(s): {', '.join(sorted(unknown))}")
        if not fields:
            return self.get_item(item_id)

        with self._connection() as conn:
            row = conn.execute("SELECT status FROM items WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                return None
            old_status = row["status"]

            assignments = ", ".join(f"{name} = ?" for name in fields)
            conn.execute(
                f"UPDATE items SET {assignments}, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (*fields.values(), item_id),
            )

            new_status = fields.get("status")
            if new_status is not None and new_status != old_status:
                self._record_event(conn, EVENT_STATUS_CHANGED, item_id, old_status, new_status)
            other = set(fields) - {"status"}
            if other:
                self._record_event(conn, EVENT_UPDATED, item_id, None, ",".join(sorted(other)))

        return self.get_item(item_id)

    def close_item(self, item_id: str, reason: str = "") -> WorkItem | None:
        """Close an item and log an explicit ``closed`` event."""
        with self._connection() as conn:
            row = conn.execute("SELECT status FROM items WHERE id = ?", (item_id,)).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE items SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (STATUS_CLOSED, item_id),
            )
            self._record_event(conn, EVENT_CLOSED, item_id, row["status"], reason or None)
        return self.get_item(item_id)

    def list_items(
        self,
        type: str | None = None,
        statuses: list[str] | None = None,
    ) -> list[WorkItem]:
        """List items, optionally filtered by type and status."""
        query = "SELECT * FROM items WHERE 1=1"
        params: list[Any] = []
        if type is not None:
            query += " AND type = ?"
            params.append(type)
        if statuses:
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        query += " ORDER BY id"

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [WorkItem.from_dict(dict(row)) for row in rows]

    def list_children(self, parent_id: str) -> list[WorkItem]:
        """List items linked to parent_id by a parent-child edge."""
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT items.* FROM items
                JOIN dependencies ON dependencies.item_id = items.id
                WHERE dependencies.depends_on_id = ? AND dependencies.type = ?
                ORDER BY items.id
                """,
                (parent_id, DEP_PARENT_CHILD),
            ).fetchall()
        return [WorkItem.from_dict(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Dependencies
    # ------------------------------------------------------------------

    def add_dependency(self, item_id: str, depends_on_id: str, dep_type: str) -> bool:
        """Add a typed edge. Adding an existing edge is a no-op.

        Returns:
            True if a new edge was written
        """
        with self._connection() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO dependencies (item_id, depends_on_id, type) VALUES (?, ?, ?)",
                (item_id, depends_on_id, dep_type),
            )
            added = cursor.rowcount > 0
            if added:
                self._record_event(conn, EVENT_DEPENDENCY_ADDED, item_id, None, f"{dep_type}:{depends_on_id}")
        return added

    def remove_dependency(self, item_id: str, depends_on_id: str, dep_type: str) -> bool:
        """Remove a typed edge. Returns True if an edge was deleted."""
        with self._connection() as conn:
            cursor = conn.execute(
                "DELETE FROM dependencies WHERE item_id = ? AND depends_on_id = ? AND type = ?",
                (item_id, depends_on_id, dep_type),
            )
            removed = cursor.rowcount > 0
            if removed:
                self._record_event(conn, EVENT_DEPENDENCY_REMOVED, item_id, f"{dep_type}:{depends_on_id}", None)
        return removed

    def list_dependencies(
        self,
        item_id: str,
        direction: str = "down",
        dep_type: str | None = None,
    ) -> list[Dependency]:
        """List edges touching an item.

        Args:
            item_id: Item to query
            direction: "down" for edges the item depends on, "up" for edges
                pointing at the item from dependents
            dep_type: Optional edge type filter
        """
        column = "item_id" if direction == "down" else "depends_on_id"
        query = f"SELECT item_id, depends_on_id, type FROM dependencies WHERE {column} = ?"
        params: list[Any] = [item_id]
        if dep_type is not None:
            query += " AND type = ?"
            params.append(dep_type)
        query += " ORDER BY item_id, depends_on_id, type"

        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            Dependency(
                item_id=extract_item_id(row["item_id"]),
                depends_on_id=extract_item_id(row["depends_on_id"]),
                type=row["type"],
            )
            for row in rows
        ]

    def dependencies_with_status(self, item_id: str) -> list[tuple[Dependency, str | None]]:
        """List the item's outgoing edges with the current status of each target.

        The status is None when the target item is not in this store.
        """
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT d.item_id, d.depends_on_id, d.type, items.status AS target_status
                FROM dependencies d
                LEFT JOIN items ON items.id = d.depends_on_id
                WHERE d.item_id = ?
                ORDER BY d.depends_on_id
                """,
                (item_id,),
            ).fetchall()
        return [
            (
                Dependency(row["item_id"], extract_item_id(row["depends_on_id"]), row["type"]),
                row["target_status"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def events_since(self, ordinal: int) -> list[Event]:
        """Return all events with an ordinal greater than ``ordinal``, oldest first."""
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT ordinal, event_type, item_id, old_value, new_value FROM events "
                "WHERE ordinal > ? ORDER BY ordinal",
                (ordinal,),
            ).fetchall()
        return [Event.from_dict(dict(row)) for row in rows]


# ---------------------------------------------------------------------------
# Store map construction
# ---------------------------------------------------------------------------


def open_store(name: str, spec: dict[str, Any], timeout: float = 30.0) -> Any:
    """Open one backing store from its config entry.

    ``{path: ...}`` opens a SQLite store (relative paths are under .convoy/);
    ``{url: ...}`` opens an HTTP store client.
    """
    if spec.get("url"):
        from .sdk import StoreClient
        return StoreClient(
            server_url=spec["url"],
            name=name,
            api_key=spec.get("api_key"),
            timeout=timeout,
        )

    path = Path(spec.get("path") or f"{name}.db")
    if not path.is_absolute():
        path = get_convoy_dir() / path
    store = Store(path, name=name, timeout=timeout)
    store.init_schema()
    return store


def open_stores(config: dict[str, Any] | None = None) -> dict[str, Any]:
    """Open every store named in config.yaml.

    Stores that fail to open are logged and left out, so a caller can retry
    later (the manager retries on every tick until at least one opens).
    """
    config = config or load_config()
    timeout = get_scheduler_settings(config).get("store_timeout", 30.0)
    stores: dict[str, Any] = {}
    for name, spec in (config.get("stores") or {}).items():
        try:
            stores[name] = open_store(name, spec or {}, timeout=timeout)
        except StoreError as e:
            logger.warning("Convoy: cannot open store %s: %s", name, e)
    return stores


def store_for(stores: dict[str, Any], item_id: str, config: dict[str, Any] | None = None) -> Any:
    """Pick the store that owns an item, falling back to the hq store."""
    name = store_for_item(item_id, config)
    return stores.get(name) or stores.get(HQ_STORE)


def find_item(stores: dict[str, Any], item_id: str, config: dict[str, Any] | None = None) -> WorkItem | None:
    """Look an item up in its owning store, then in every other store."""
    owner = store_for(stores, item_id, config)
    if owner is not None:
        item = owner.get_item(item_id)
        if item is not None:
            return item
    for store in stores.values():
        if store is owner:
            continue
        item = store.get_item(item_id)
        if item is not None:
            return item
    return None
