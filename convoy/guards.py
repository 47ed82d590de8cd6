"""Safety guards shared by the event feeder and the stranded scanner.

Both runtime feeders must agree on what may be dispatched, so the checks live
here and nowhere else:

- ``is_dispatchable_type``: only leaf work types are ever dispatched.
- ``is_item_blocked``: an item with an open execution-relevant predecessor
  is held back. Parent-child edges never block. Store failures fail open.
- ``is_ready_item``: the combination used to pick the next item to feed.
"""

import logging
import threading
import time
from typing import Any, Callable

from .config import DISPATCHABLE_TYPES, EXECUTION_DEP_TYPES, STATUS_CLOSED
from .exceptions import StoreError
from .models import WorkItem

logger = logging.getLogger(__name__)


def is_dispatchable_type(item_type: str | None) -> bool:
    """Return True for leaf work types (task, bug, feature, chore).

    An empty or missing type is a legacy item and defaults to task.
    """
    return (item_type or "") in DISPATCHABLE_TYPES


class FailOpenTracker:
    """Bounds how long the blocking check may keep failing open.

    While the store keeps failing, ``should_fail_open`` stays True until the
    first failure is older than ``ceiling`` seconds; after that the check
    fails closed until a query succeeds again. A ceiling of 0 disables the
    bound (always fail open).
    """

    def __init__(self, ceiling: float = 600.0, clock: Callable[[], float] = time.monotonic):
        self.ceiling = ceiling
        self._clock = clock
        self._lock = threading.Lock()
        self._failing_since: float | None = None

    def record_success(self) -> None:
        with self._lock:
            if self._failing_since is not None:
                logger.info("Convoy: store queries recovered, blocking check back to normal")
            self._failing_since = None

    def record_failure(self) -> None:
        with self._lock:
            if self._failing_since is None:
                self._failing_since = self._clock()

    def should_fail_open(self) -> bool:
        with self._lock:
            if self.ceiling <= 0 or self._failing_since is None:
                return True
            return (self._clock() - self._failing_since) < self.ceiling


def is_item_blocked(
    store: Any,
    item_id: str,
    lookup_status: Callable[[str], str | None] | None = None,
    tracker: FailOpenTracker | None = None,
) -> bool:
    """Check whether an item has an open execution-relevant predecessor.

    Args:
        store: Store owning the item (must provide ``dependencies_with_status``)
        item_id: Item to check
        lookup_status: Optional resolver for predecessors that live in another
            store (the owning store reports their status as None)
        tracker: Optional fail-open ceiling

    Returns:
        True if blocked. Returns False when the store cannot be queried
        (fail-open), unless the tracker's ceiling has been exceeded.
    """
    if store is None:
        return False

    try:
        deps = store.dependencies_with_status(item_id)
    except (StoreError, OSError) as e:
        if tracker is None:
            logger.debug("Convoy: blocking check for %s failed, treating as not blocked: %s", item_id, e)
            return False
        tracker.record_failure()
        if tracker.should_fail_open():
            logger.debug("Convoy: blocking check for %s failed, treating as not blocked: %s", item_id, e)
            return False
        logger.error(
            "Convoy: store has been failing longer than %ss; treating %s as blocked",
            tracker.ceiling, item_id,
        )
        return True

    if tracker is not None:
        tracker.record_success()

    for dep, status in deps:
        if dep.type not in EXECUTION_DEP_TYPES:
            continue
        if status is None and lookup_status is not None:
            try:
                status = lookup_status(dep.depends_on_id)
            except (StoreError, OSError) as e:
                logger.debug("Convoy: cannot resolve status of %s, ignoring: %s", dep.depends_on_id, e)
                status = None
        if status is None:
            # Predecessor unknown to every store
            continue
        if status != STATUS_CLOSED:
            return True
    return False


def is_in_flight(item: WorkItem) -> bool:
    """An item an agent is already working: assigned and not closed."""
    return bool(item.assignee) and item.status != STATUS_CLOSED


def is_ready_item(item: WorkItem, blocked: bool) -> bool:
    """Return True if the item may be dispatched now.

    Ready means: a dispatchable type, not closed, not assigned, not blocked.
    An unassigned item left in progress (e.g. its agent died) counts as ready
    so the batch can recover.
    """
    if not is_dispatchable_type(item.type):
        return False
    if item.status == STATUS_CLOSED:
        return False
    if item.assignee:
        return False
    return not blocked
