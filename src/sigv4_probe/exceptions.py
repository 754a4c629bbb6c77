class Sigv4ProbeError(Exception):
    """Base class for every error raised by sigv4_probe."""


class MalformedInputError(Sigv4ProbeError, ValueError):
    """Bad method, URI, header or timestamp. Caller error, not retryable."""


class InvalidCredentialsError(Sigv4ProbeError, ValueError):
    """Empty or malformed access key or secret key."""


class TransportError(Sigv4ProbeError):
    """Connection refused, DNS failure, disconnect or timeout."""


class ProtocolError(Sigv4ProbeError):
    """The peer answered with something that is not a valid HTTP response."""
