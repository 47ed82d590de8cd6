"""Dispatch collaborators.

The runtime feeders and the launch controller only talk to a ``Dispatcher``:

    dispatch(item_id, target)   start work on an item (raises DispatchError)
    query_stranded()            open convoys with ready, undispatched work
    check_convoy(convoy_id)     ask for an auto-close check

``CommandDispatcher`` implements it with external commands whose argv
templates come from config.yaml. Every call has its own timeout and is
killed promptly when the shared stop event is set.
"""

import json
import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Any

from .config import get_command, get_scheduler_settings, load_config
from .exceptions import ConfigError, DispatchError, StrandedParseError
from .models import StrandedConvoy

logger = logging.getLogger(__name__)

# How often a running command checks the stop event
_POLL_SECONDS = 0.5


class Dispatcher(ABC):
    """Narrow interface to whatever actually starts work."""

    @abstractmethod
    def dispatch(self, item_id: str, target: str) -> None:
        """Dispatch one item to a target. Raises DispatchError on failure."""

    @abstractmethod
    def query_stranded(self) -> list[StrandedConvoy]:
        """Return open convoys with ready work and nothing in flight."""

    @abstractmethod
    def check_convoy(self, convoy_id: str) -> None:
        """Run an auto-close check for a convoy."""


def first_line(text: str) -> str:
    """First non-empty line of text, stripped."""
    for line in (text or "").splitlines():
        if line.strip():
            return line.strip()
    return ""


def parse_stranded(output: str) -> list[StrandedConvoy]:
    """Parse stranded-discovery JSON.

    Expects a list of ``{convoy_id, title, ready_count, ready_item_ids}`` objects
    (``id``/``ready_issues`` are accepted too). Empty output means
    nothing is stranded.

    Raises:
        StrandedParseError: On anything else, carrying the first raw line
    """
    if not output or not output.strip():
        return []
    raw = first_line(output)

    try:
        data = json.loads(output)
    except ValueError as e:
        raise StrandedParseError(f"stranded output is not valid JSON: {e}", raw) from e

    if data is None:
        return []
    if not isinstance(data, list):
        raise StrandedParseError(f"stranded output must be a list, got {type(data).__name__}", raw)

    convoys = []
    for index, entry in enumerate(data):
        if not isinstance(entry, dict):
            raise StrandedParseError(f"stranded entry {index} is not an object", raw)
        try:
            convoys.append(StrandedConvoy.from_dict(entry))
        except (KeyError, TypeError, ValueError) as e:
            raise StrandedParseError(f"stranded entry {index} is malformed: {e}", raw) from e
    return convoys


def terminate_process(proc: subprocess.Popen, timeout_seconds: float = 5.0) -> None:
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout_seconds)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait(timeout=timeout_seconds)


class CommandDispatcher(Dispatcher):
    """Dispatcher backed by external commands.

    Args:
        config: Loaded configuration (``commands`` and ``scheduler`` sections)
        stop_event: Shared cancellation signal; running commands are
            terminated when it is set
        cwd: Working directory for the commands
    """

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        stop_event: threading.Event | None = None,
        cwd: str | None = None,
    ):
        self.config = config or load_config()
        self.stop_event = stop_event or threading.Event()
        self.cwd = cwd
        self.timeout = get_scheduler_settings(self.config).get("dispatch_timeout", 120.0)

    def _argv(self, name: str, **values: str) -> list[str]:
        template = get_command(name, self.config)
        try:
            return [part.format(**values) for part in template]
        except (KeyError, IndexError) as e:
            raise ConfigError(f"bad placeholder in '{name}' command {template}: {e}") from e

    def _run(self, argv: list[str]) -> tuple[int, str, str]:
        """Run a command, honouring the per-call timeout and the stop event.

        Returns:
            Tuple of (exit_code, stdout, stderr)

        Raises:
            DispatchError: If the command cannot be started, times out, or
                is cancelled
        """
        if self.stop_event.is_set():
            raise DispatchError(f"{argv[0]}: cancelled before start")

        try:
            proc = subprocess.Popen(
                argv,
                cwd=self.cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise DispatchError(f"{argv[0]}: cannot start: {e}") from e

        waited = 0.0
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_SECONDS)
                return proc.returncode, stdout or "", stderr or ""
            except subprocess.TimeoutExpired:
                waited += _POLL_SECONDS
            if self.stop_event.is_set():
                terminate_process(proc)
                proc.communicate()
                raise DispatchError(f"{argv[0]}: cancelled (shutting down)")
            if waited >= self.timeout:
                terminate_process(proc)
                proc.communicate()
                raise DispatchError(f"{argv[0]}: timed out after {self.timeout:.0f}s")

    def dispatch(self, item_id: str, target: str) -> None:
        argv = self._argv("dispatch", item_id=item_id, target=target)
        logger.debug("Convoy: dispatching %s to %s: %s", item_id, target, argv)
        try:
            code, _, stderr = self._run(argv)
        except DispatchError as e:
            raise DispatchError(str(e), item_id=item_id, target=target) from e
        if code != 0:
            raise DispatchError(
                f"dispatch {item_id} -> {target} exited {code}: {first_line(stderr)}",
                item_id=item_id,
                target=target,
            )

    def query_stranded(self) -> list[StrandedConvoy]:
        code, stdout, stderr = self._run(self._argv("stranded"))
        if code != 0:
            raise DispatchError(f"stranded query exited {code}: {first_line(stderr)}")
        return parse_stranded(stdout)

    def check_convoy(self, convoy_id: str) -> None:
        code, _, stderr = self._run(self._argv("check", convoy_id=convoy_id))
        if code != 0:
            raise DispatchError(f"convoy check {convoy_id} exited {code}: {first_line(stderr)}")
