"""Errors raised by registry adapters."""


class RegistryError(Exception):
    """Base exception for registry adapter failures."""


class RegistryUnavailableError(RegistryError):
    """The shared store could not be reached or rejected the request.

    Raised for transport failures, timeouts and unexpected HTTP statuses.
    Callers outside the slot-assignment retry loop surface it immediately.
    """

    def __init__(self, operation: str, path: str, reason: str = "") -> None:
        self.operation = operation
        self.path = path
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(f"registry {operation} failed for '{path}'{detail}")
