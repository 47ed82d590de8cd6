"""Convoy manager: lifecycle of the event feeder and the stranded scanner.

Runs three threads sharing one stop event:
- event poll loop (every ``event_poll_interval`` seconds)
- stranded scan loop (immediately, then every ``scan_interval`` seconds,
  or ``recovery_scan_interval`` while in recovery mode)
- a one-shot startup sweep after ``startup_sweep_delay`` seconds

Store handles are opened lazily: if none are available yet the opener is
retried on every event tick. Each tick snapshots the store map under the lock
and releases it before any store call.
"""

import logging
import threading
from functools import partial
from typing import Any, Callable

from .config import get_scheduler_settings, load_config
from .dispatch import CommandDispatcher, Dispatcher
from .exceptions import ConvoyError
from .feeder import EventFeeder, PollCycle
from .guards import FailOpenTracker
from .scanner import ScanResult, StrandedScanner
from .store import open_stores

logger = logging.getLogger(__name__)

MODE_NORMAL = "normal"
MODE_RECOVERY = "recovery"


class ConvoyManager:
    """Owns the runtime feeders and every piece of state they share.

    Args:
        config: Loaded configuration
        dispatcher: Dispatch collaborator (a CommandDispatcher bound to the
            manager's stop event by default)
        stores: Already-open store map, if any
        opener: Callable returning a fresh store map; used when ``stores`` is
            empty. Defaults to opening every store named in ``config``. Pass
            ``opener=None`` together with no stores to disable event polling.
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        dispatcher: Dispatcher | None = None,
        stores: dict[str, Any] | None = None,
        opener: Callable[[], dict[str, Any]] | None = open_stores,
    ):
        self.config = config or load_config()
        self.settings = get_scheduler_settings(self.config)
        self.stop_event = threading.Event()
        self.dispatcher = dispatcher or CommandDispatcher(self.config, stop_event=self.stop_event)
        self.tracker = FailOpenTracker(self.settings.get("fail_open_ceiling", 600.0))

        self._stores_lock = threading.Lock()
        self._stores: dict[str, Any] = dict(stores or {})
        if opener is open_stores:
            opener = partial(open_stores, self.config)
        self._opener = opener

        self._start_lock = threading.Lock()
        self._started = False
        self._threads: list[threading.Thread] = []

        self._mode_lock = threading.Lock()
        self._mode = MODE_NORMAL

        self.feeder = EventFeeder(self.dispatcher, self.config, self.tracker, self.stop_event)
        self.scanner = StrandedScanner(self.dispatcher, self.config, self.stop_event)

    # ------------------------------------------------------------------
    # Recovery mode
    # ------------------------------------------------------------------

    @property
    def mode(self) -> str:
        with self._mode_lock:
            return self._mode

    @property
    def in_recovery(self) -> bool:
        return self.mode == MODE_RECOVERY

    def enter_recovery(self) -> None:
        with self._mode_lock:
            if self._mode != MODE_RECOVERY:
                logger.warning("Convoy: entering recovery mode, scanning every %ss",
                               self.settings.get("recovery_scan_interval", 5.0))
            self._mode = MODE_RECOVERY

    def clear_recovery(self) -> None:
        with self._mode_lock:
            if self._mode == MODE_RECOVERY:
                logger.info("Convoy: scan succeeded, leaving recovery mode")
            self._mode = MODE_NORMAL

    def next_scan_interval(self) -> float:
        if self.in_recovery:
            return self.settings.get("recovery_scan_interval", 5.0)
        return self.settings.get("scan_interval", 30.0)

    # ------------------------------------------------------------------
    # Stores
    # ------------------------------------------------------------------

    def stores_snapshot(self) -> dict[str, Any]:
        """Return a point-in-time copy of the store map, opening lazily.

        Only the copy is taken under the lock; callers make store calls on
        the copy.
        """
        with self._stores_lock:
            if not self._stores and self._opener is not None:
                try:
                    self._stores = dict(self._opener() or {})
                except ConvoyError as e:
                    logger.warning("Convoy: cannot open stores yet: %s", e)
                if self._stores:
                    logger.info("Convoy: opened store(s): %s", ", ".join(sorted(self._stores)))
            return dict(self._stores)

    def _close_stores(self) -> None:
        with self._stores_lock:
            stores = self._stores
            self._stores = {}
        for name, store in sorted(stores.items()):
            try:
                store.close()
            except (ConvoyError, OSError) as e:
                logger.warning("Convoy: error closing store (%s): %s", name, e)
            else:
                logger.info("Convoy: closed store (%s)", name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        with self._start_lock:
            return self._started

    def start(self) -> bool:
        """Start both loops and the startup sweep.

        Returns:
            False if the manager was already started (the call is a no-op)
        """
        with self._start_lock:
            if self._started:
                logger.info("Convoy: start() already called, ignoring duplicate")
                return False
            self._started = True

        self._threads = [
            threading.Thread(target=self._run_event_poll, name="convoy-event-poll", daemon=True),
            threading.Thread(target=self._run_stranded_scan, name="convoy-stranded-scan", daemon=True),
            threading.Thread(target=self._run_startup_sweep, name="convoy-startup-sweep", daemon=True),
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Convoy: manager started")
        return True

    def stop(self, timeout: float | None = None) -> None:
        """Signal both loops, wait for them, then close the stores."""
        self.stop_event.set()
        for thread in self._threads:
            thread.join(timeout)
        self._close_stores()
        logger.info("Convoy: manager stopped")

    def wait(self) -> None:
        """Block until stop() is called from another thread or a signal."""
        while not self.stop_event.wait(1.0):
            pass

    # ------------------------------------------------------------------
    # Loop bodies
    # ------------------------------------------------------------------

    def poll_once(self) -> PollCycle | None:
        """One event-poll tick. Returns None when no store is available."""
        stores = self.stores_snapshot()
        if not stores:
            logger.debug("Convoy: no stores available yet, will retry")
            return None
        cycle = self.feeder.poll(stores)
        if not cycle.ok:
            self.enter_recovery()
        return cycle

    def scan_once(self) -> ScanResult:
        """One scan. A successful scan clears recovery mode."""
        result = self.scanner.scan()
        if result.ok:
            self.clear_recovery()
        return result

    def _run_event_poll(self) -> None:
        with self._stores_lock:
            disabled = not self._stores and self._opener is None
        if disabled:
            logger.info("Convoy: no stores and no opener, event polling disabled")
            return

        interval = self.settings.get("event_poll_interval", 5.0)
        while not self.stop_event.wait(interval):
            try:
                self.poll_once()
            except Exception:
                logger.exception("Convoy: event poll tick failed")
                self.enter_recovery()

    def _run_stranded_scan(self) -> None:
        self._safe_scan()
        while not self.stop_event.wait(self.next_scan_interval()):
            self._safe_scan()

    def _run_startup_sweep(self) -> None:
        if self.stop_event.wait(self.settings.get("startup_sweep_delay", 10.0)):
            return
        logger.info("Convoy: running startup sweep for stranded convoys")
        self._safe_scan()

    def _safe_scan(self) -> None:
        try:
            self.scan_once()
        except Exception:
            logger.exception("Convoy: stranded scan tick failed")
