"""Connector-specific exceptions for error handling."""


class ConnectorError(Exception):
    """Base exception for all connector operations."""
    pass


class ConnectorAPIError(ConnectorError):
    """HTTP error from a remote identity store.

    Attributes:
        status_code: HTTP status code
        message: Error message from response
        endpoint: API endpoint that failed
    """

    def __init__(self, status_code: int, message: str, endpoint: str):
        self.status_code = status_code
        self.message = message
        self.endpoint = endpoint
        super().__init__(f"[{status_code}] {endpoint}: {message}")


class ConnectorInstantiationError(ConnectorError):
    """Connector could not be built from its configuration."""
    pass


class ConnectionFailedError(ConnectorError):
    """Remote system is unreachable."""
    pass


class UnknownUidError(ConnectorError):
    """Object with the given Uid does not exist on the remote system."""
    pass


class AlreadyExistsError(ConnectorError):
    """Object creation failed - an object with the same identifier exists."""
    pass
