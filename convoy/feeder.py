"""Event-driven feeder.

Polls every backing store's event log, reacts to item closes, and feeds the
next ready item of each open convoy tracking the closed item.

State (owned by one EventFeeder instance, never module-level):
- per-store high-water marks, advanced on every fetch
- a cross-cycle set of item ids whose close has already been handled
- a warm-up flag: the first cycle only advances marks
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from .config import HQ_STORE, STATUS_OPEN, is_target_paused, load_config
from .convoys import check_convoy, get_tracked_items, get_tracking_convoys, status_lookup
from .dispatch import Dispatcher
from .exceptions import DispatchError, StoreError
from .guards import FailOpenTracker, is_item_blocked, is_ready_item
from .routing import target_for_item
from .store import store_for

logger = logging.getLogger(__name__)


def feed_next_ready(
    stores: dict[str, Any],
    convoy_id: str,
    dispatcher: Dispatcher,
    config: dict[str, Any] | None = None,
    tracker: FailOpenTracker | None = None,
) -> str | None:
    """Dispatch the first ready tracked item of a convoy.

    Candidates are tried in id order; items without a target, on a paused
    target, or whose dispatch fails are skipped in favour of the next one.

    Returns:
        The dispatched item id, or None if nothing could be dispatched
    """
    config = config or load_config()
    lookup = status_lookup(stores, config)

    for item in get_tracked_items(stores, convoy_id, config):
        blocked = is_item_blocked(store_for(stores, item.id, config), item.id, lookup, tracker)
        if not is_ready_item(item, blocked):
            continue

        target = target_for_item(item.id, config)
        if not target:
            logger.info("Convoy %s: no target for %s, skipping", convoy_id, item.id)
            continue
        if is_target_paused(target, config):
            logger.info("Convoy %s: target %s is paused, skipping %s", convoy_id, target, item.id)
            continue

        logger.info("Convoy %s: feeding %s to %s", convoy_id, item.id, target)
        try:
            dispatcher.dispatch(item.id, target)
        except DispatchError as e:
            logger.warning("Convoy %s: dispatch %s failed: %s", convoy_id, item.id, e)
            continue
        return item.id

    return None


@dataclass
class PollCycle:
    """What one poll cycle saw and did."""
    events: int = 0
    closes: list[str] = field(default_factory=list)
    dispatched: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    warm_up: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors


class EventFeeder:
    """Reacts to close events by feeding the next item of each open convoy.

    Args:
        dispatcher: Dispatch collaborator
        config: Loaded configuration
        tracker: Optional fail-open ceiling shared with the scanner
        stop_event: When set, the current cycle stops between convoys
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        config: dict[str, Any] | None = None,
        tracker: FailOpenTracker | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.dispatcher = dispatcher
        self.config = config or load_config()
        self.tracker = tracker
        self.stop_event = stop_event or threading.Event()
        self._lock = threading.Lock()
        self._high_water: dict[str, int] = {}
        self._processed: set[str] = set()
        self._seeded = False

    def high_water(self, store_name: str) -> int | None:
        with self._lock:
            return self._high_water.get(store_name)

    def already_processed(self, item_id: str) -> bool:
        with self._lock:
            return item_id in self._processed

    def _mark_processed(self, item_id: str) -> bool:
        """Record a handled close. Returns False if it was already recorded."""
        with self._lock:
            if item_id in self._processed:
                return False
            self._processed.add(item_id)
            return True

    def poll(self, stores: dict[str, Any]) -> PollCycle:
        """Run one poll cycle over a point-in-time snapshot of the stores.

        Marks advance for every store that answered, even on the warm-up
        cycle. A store seen for the first time is warmed individually so a
        late-opening store never replays its history.
        """
        cycle = PollCycle(warm_up=not self._seeded)
        closes: list[str] = []
        seen: set[str] = set()

        for name in sorted(stores):
            if name != HQ_STORE and is_target_paused(name, self.config):
                logger.debug("Convoy: store %s is paused, not polling", name)
                continue

            store = stores[name]
            with self._lock:
                mark = self._high_water.get(name)
            first_seen = mark is None

            try:
                events = store.events_since(mark or 0)
            except StoreError as e:
                logger.warning("Convoy: event poll error (%s): %s", name, e)
                cycle.errors[name] = str(e)
                continue

            new_mark = max([mark or 0] + [e.ordinal for e in events])
            with self._lock:
                self._high_water[name] = new_mark
            cycle.events += len(events)

            if cycle.warm_up or first_seen:
                continue

            for event in events:
                if not event.is_close or not event.item_id:
                    continue
                if event.item_id in seen:
                    continue
                seen.add(event.item_id)
                if not self._mark_processed(event.item_id):
                    continue
                logger.info("Convoy: close detected: %s (from %s)", event.item_id, name)
                closes.append(event.item_id)

        self._seeded = True
        cycle.closes = closes
        if closes:
            self._handle_closes(stores, closes, cycle)
        return cycle

    def _handle_closes(self, stores: dict[str, Any], closes: list[str], cycle: PollCycle) -> None:
        hq = stores.get(HQ_STORE)
        if hq is None:
            logger.warning("Convoy: hq store unavailable, skipping convoy lookups for %d close(s)", len(closes))
            return

        for item_id in closes:
            if self.stop_event.is_set():
                return
            try:
                convoys = get_tracking_convoys(hq, item_id)
            except StoreError as e:
                logger.warning("Convoy: cannot look up convoys tracking %s: %s", item_id, e)
                cycle.errors[HQ_STORE] = str(e)
                continue

            for convoy in convoys:
                if convoy.status != STATUS_OPEN:
                    # Staged convoys are inert; closed ones are done
                    continue
                try:
                    if check_convoy(stores, convoy.id, self.config):
                        continue
                    dispatched = feed_next_ready(stores, convoy.id, self.dispatcher, self.config, self.tracker)
                except StoreError as e:
                    logger.warning("Convoy %s: feed failed: %s", convoy.id, e)
                    cycle.errors[HQ_STORE] = str(e)
                    continue
                if dispatched:
                    cycle.dispatched.append(dispatched)
                else:
                    logger.info("Convoy %s: nothing ready to feed after %s closed", convoy.id, item_id)
