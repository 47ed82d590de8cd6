"""Stranded scanner: periodic reconciliation independent of events.

Each scan asks the dispatcher for stranded convoys (open, ready work,
nothing in flight) and either feeds the first dispatchable ready item or,
when nothing is left, requests an auto-close check. Scans are serialized:
the periodic loop, the startup sweep and any external trigger share one
lock so two scans never feed the same convoy twice.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from .config import is_target_paused, load_config
from .dispatch import Dispatcher, first_line
from .exceptions import ConvoyError, DispatchError
from .models import StrandedConvoy
from .routing import extract_prefix, target_for_item

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Outcome of one scan."""
    ok: bool
    stranded: int = 0
    fed: dict[str, str] = field(default_factory=dict)  # convoy id -> item id
    checked: list[str] = field(default_factory=list)
    error: str = ""


class StrandedScanner:
    """Feeds or closes stranded convoys.

    Args:
        dispatcher: Dispatch collaborator (also answers query_stranded)
        config: Loaded configuration
        stop_event: When set, a running scan stops between convoys
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        config: dict[str, Any] | None = None,
        stop_event: threading.Event | None = None,
    ):
        self.dispatcher = dispatcher
        self.config = config or load_config()
        self.stop_event = stop_event or threading.Event()
        self._scan_lock = threading.Lock()

    def scan(self) -> ScanResult:
        """Run one scan cycle. Never raises for collaborator failures."""
        with self._scan_lock:
            try:
                stranded = self.dispatcher.query_stranded()
            except ConvoyError as e:
                message = first_line(str(e))
                logger.warning("Convoy: stranded scan failed: %s", message)
                return ScanResult(ok=False, error=message)

            result = ScanResult(ok=True, stranded=len(stranded))
            for convoy in stranded:
                if self.stop_event.is_set():
                    break
                if convoy.ready_count > 0:
                    item_id = self.feed_first_ready(convoy)
                    if item_id:
                        result.fed[convoy.id] = item_id
                else:
                    self.close_empty(convoy.id)
                    result.checked.append(convoy.id)
            return result

    def feed_first_ready(self, convoy: StrandedConvoy) -> str | None:
        """Dispatch the first ready item that resolves to an available target.

        Returns:
            The dispatched item id, or None when every item was skipped
        """
        for item_id in convoy.ready_items:
            if not extract_prefix(item_id):
                logger.info("Convoy %s: no prefix for %s, skipping", convoy.id, item_id)
                continue

            target = target_for_item(item_id, self.config)
            if not target:
                logger.info("Convoy %s: no target for %s, skipping", convoy.id, item_id)
                continue

            if is_target_paused(target, self.config):
                logger.info("Convoy %s: target %s is paused, skipping %s", convoy.id, target, item_id)
                continue

            logger.info("Convoy %s: feeding %s to %s", convoy.id, item_id, target)
            try:
                self.dispatcher.dispatch(item_id, target)
            except DispatchError as e:
                logger.warning("Convoy %s: dispatch %s failed: %s", convoy.id, item_id, first_line(str(e)))
                continue
            return item_id

        logger.info("Convoy %s: no dispatchable items (all %d skipped)", convoy.id, len(convoy.ready_items))
        return None

    def close_empty(self, convoy_id: str) -> None:
        logger.info("Convoy %s: auto-closing (nothing ready)", convoy_id)
        try:
            self.dispatcher.check_convoy(convoy_id)
        except ConvoyError as e:
            logger.warning("Convoy %s: check failed: %s", convoy_id, first_line(str(e)))
