class DHTError(Exception):
    """Base class for every error raised by dhtstore."""


class ValueNotFoundError(DHTError):
    """No queried peer holds the requested mutable value. Retry later."""

    def __init__(self, message="value not found"):
        super().__init__(message)


class NetworkError(DHTError):
    """A lookup or transport operation failed.

    ``phase`` names what was being attempted, e.g. "finding peers for get".
    The underlying exception is chained as ``__cause__``.
    """

    def __init__(self, phase, cause=None):
        self.phase = phase
        message = f"{phase} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class BootstrapError(DHTError):
    """The overlay could not be joined."""


class BootstrapDivergenceError(BootstrapError):
    """The overlay kept recommending a new public IP after an identity refresh."""


class SigningError(DHTError):
    """Key material is malformed or signing failed."""


class ValueTooBigError(DHTError):
    pass


class SaltTooBigError(DHTError):
    pass


class QueryTimeoutError(DHTError):
    pass


class KRPCErrorResponse(DHTError):
    """A remote node answered with a KRPC error message."""

    def __init__(self, code, message=b""):
        self.code = code
        if isinstance(message, bytes):
            message = message.decode("utf-8", "replace")
        self.message = message
        super().__init__(f"{code} {message}")
