class MuleBridgeError(Exception):
    pass


class ProtocolError(MuleBridgeError):
    """A call against the download-client session failed."""

    def __init__(self, message, operation=None):
        super().__init__(message)
        self.operation = operation


class ConnectionLostError(ProtocolError):
    pass


class DispatcherClosedError(ProtocolError):
    pass


class PersistenceError(MuleBridgeError):
    """A history store read or write failed."""


class MigrationError(PersistenceError):
    def __init__(self, version: int, message: str):
        super().__init__(f"migration to v{version} failed: {message}")
        self.version = version


class ParseError(MuleBridgeError, ValueError):
    pass
