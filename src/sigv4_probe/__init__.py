from .client import ExchangeState, SingleShotExchanger, exchange, exchange_sync
from .exceptions import (
    InvalidCredentialsError,
    MalformedInputError,
    ProtocolError,
    Sigv4ProbeError,
    TransportError,
)
from .models import (
    CanonicalRequest,
    Credentials,
    ExchangeOutcome,
    SignatureResult,
    SignedRequest,
    SigningScope,
)
from .signer import SigningKeyCache, sign_request

__version__ = "0.1.0"
__all__ = [
    "CanonicalRequest",
    "Credentials",
    "ExchangeOutcome",
    "ExchangeState",
    "InvalidCredentialsError",
    "MalformedInputError",
    "ProtocolError",
    "SignatureResult",
    "SignedRequest",
    "SigningKeyCache",
    "SigningScope",
    "Sigv4ProbeError",
    "SingleShotExchanger",
    "TransportError",
    "exchange",
    "exchange_sync",
    "sign_request",
]
