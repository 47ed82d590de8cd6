"""
Convoy scheduler exceptions
"""


class ConvoyError(Exception):
    """Base exception for all convoy scheduler errors"""

    pass


class ConfigError(ConvoyError):
    """Raised when .convoy/config.yaml cannot be used"""

    pass


class InputError(ConvoyError):
    """Raised when stage/launch arguments are invalid"""

    pass


class StagingError(ConvoyError):
    """Raised when staging finds fatal errors; no convoy is created"""

    def __init__(self, message: str, findings: list | None = None):
        super().__init__(message)
        self.findings = findings or []


class ConvoyNotFoundError(ConvoyError):
    """Raised when a convoy id does not resolve"""

    pass


class InvalidTransitionError(ConvoyError):
    """Raised when a convoy status change is not allowed"""

    def __init__(self, convoy_id: str, current: str, requested: str, message: str | None = None):
        super().__init__(
            message or f"convoy {convoy_id}: cannot transition {current} -> {requested}"
        )
        self.convoy_id = convoy_id
        self.current = current
        self.requested = requested


class MembershipConflictError(ConvoyError):
    """Raised when an item is already tracked by another active convoy"""

    pass


class StoreError(ConvoyError):
    """Raised when a work-item store operation fails"""

    pass


class StoreUnavailableError(StoreError):
    """Raised when the backing store cannot be reached at all"""

    pass


class DispatchError(ConvoyError):
    """Raised when the dispatch command fails for an item"""

    def __init__(self, message: str, item_id: str = "", target: str = ""):
        super().__init__(message)
        self.item_id = item_id
        self.target = target


class StrandedParseError(ConvoyError):
    """Raised when stranded-discovery output does not match the expected schema"""

    def __init__(self, message: str, raw_first_line: str = ""):
        super().__init__(f"{message} (raw: {raw_first_line!r})")
        self.raw_first_line = raw_first_line
