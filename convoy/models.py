"""Data types shared by the staging pipeline and the runtime feeders."""

from dataclasses import dataclass, field
from typing import Any

from .config import DISPATCHABLE_TYPES, STAGED_STATUSES, STATUS_CLOSED

EVENT_CREATED = "created"
EVENT_STATUS_CHANGED = "status_changed"
EVENT_CLOSED = "closed"
EVENT_UPDATED = "updated"
EVENT_DEPENDENCY_ADDED = "dependency_added"
EVENT_DEPENDENCY_REMOVED = "dependency_removed"


@dataclass
class WorkItem:
    """A single work item as stored in a backing store."""
    id: str
    title: str = ""
    type: str = "task"
    status: str = "open"
    assignee: str = ""
    description: str = ""

    @property
    def is_closed(self) -> bool:
        return self.status == STATUS_CLOSED

    @property
    def is_staged(self) -> bool:
        return self.status in STAGED_STATUSES

    @property
    def is_dispatchable_type(self) -> bool:
        return (self.type or "") in DISPATCHABLE_TYPES

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        return cls(
            id=data["id"],
            title=data.get("title") or "",
            type=data.get("type", data.get("issue_type")) or "",
            status=data.get("status") or "open",
            assignee=data.get("assignee") or "",
            description=data.get("description") or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "status": self.status,
            "assignee": self.assignee,
            "description": self.description,
        }


@dataclass(frozen=True)
class Dependency:
    """A typed edge: ``item_id`` depends on ``depends_on_id``.

    For ``blocks`` edges the item is blocked by depends_on_id; for ``tracks``
    edges item_id is the convoy and depends_on_id the tracked item; for
    ``parent-child`` edges item_id is the child.
    """
    item_id: str
    depends_on_id: str
    type: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Dependency":
        return cls(
            item_id=data["item_id"],
            depends_on_id=data["depends_on_id"],
            type=data.get("type") or data.get("dependency_type") or "",
        )

    def to_dict(self) -> dict[str, str]:
        return {"item_id": self.item_id, "depends_on_id": self.depends_on_id, "type": self.type}


@dataclass
class Event:
    """One record of a store's append-only event log."""
    ordinal: int
    event_type: str
    item_id: str
    old_value: str | None = None
    new_value: str | None = None

    @property
    def is_close(self) -> bool:
        """True for an explicit close or a status change to closed."""
        if self.event_type == EVENT_CLOSED:
            return True
        return self.event_type == EVENT_STATUS_CHANGED and self.new_value == STATUS_CLOSED

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        return cls(
            ordinal=int(data["ordinal"]),
            event_type=data.get("event_type") or "",
            item_id=data.get("item_id") or "",
            old_value=data.get("old_value"),
            new_value=data.get("new_value"),
        )


@dataclass
class StrandedConvoy:
    """An open convoy with ready work and nothing in flight."""
    id: str
    title: str = ""
    ready_count: int = 0
    ready_items: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StrandedConvoy":
        """Build from stranded-discovery JSON.

        Accepts both ``convoy_id``/``ready_item_ids`` and the older
        ``id``/``ready_issues`` keys.

        Raises:
            KeyError: If no convoy id is present
            TypeError/ValueError: If fields have the wrong shape
        """
        convoy_id = data.get("id") or data.get("convoy_id")
        if not convoy_id:
            raise KeyError("id")
        ready = data.get("ready_issues")
        if ready is None:
            ready = data.get("ready_item_ids") or []
        if not isinstance(ready, list):
            raise TypeError(f"ready items must be a list, got {type(ready).__name__}")
        return cls(
            id=str(convoy_id),
            title=str(data.get("title") or ""),
            ready_count=int(data.get("ready_count", len(ready))),
            ready_items=[str(i) for i in ready],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "convoy_id": self.id,
            "title": self.title,
            "ready_count": self.ready_count,
            "ready_item_ids": list(self.ready_items),
        }


@dataclass
class DispatchResult:
    """Outcome of dispatching one item during launch."""
    item_id: str
    target: str
    success: bool
    error: str | None = None
