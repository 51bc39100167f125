"""
Round engine exceptions.

The HTTP layer maps each class to a status code (see main.py); the engine
itself never retries and never swallows them.
"""


class RoundEngineError(Exception):
    """Base class for every engine error."""


class InvalidInput(RoundEngineError):
    """Rejected before any state was touched: bad argument or caller is not part of the match."""


class NotFound(RoundEngineError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class InvalidStateTransition(RoundEngineError):
    """The requested action is not allowed from the current status."""

    def __init__(self, current: str, action: str, message: str | None = None):
        self.current = current
        self.action = action
        super().__init__(message or f"Cannot {action} from status '{current}'")


class StoreUnavailable(RoundEngineError):
    """Transient registration store failure; nothing was committed and the caller may retry."""
