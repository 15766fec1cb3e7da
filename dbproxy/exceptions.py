"""Common exceptions for the proxy layer."""


class ProxyError(RuntimeError):
    """Base error for pool, cache and provider failures."""


class PoolClosed(ProxyError):
    """Error raised when a connection is requested after shutdown."""

    pass


class AcquireTimeout(ProxyError):
    """Error raised when no connection became available before the deadline."""

    def __init__(self, message: str, *, timeout: float | None = None):
        super().__init__(message)
        self.timeout = timeout


class InvalidState(ProxyError):
    """Error raised on caller protocol violations such as a double release."""

    pass


class ProviderFailure(ProxyError):
    """Error raised when the underlying connection could not be created."""

    pass
