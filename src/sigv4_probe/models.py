import hashlib
from typing import Optional, Tuple

import msgspec
from yarl import URL

from .exceptions import InvalidCredentialsError, MalformedInputError

ALGORITHM: str = "AWS4-HMAC-SHA256"
TERMINATOR: str = "aws4_request"
UNSIGNED_PAYLOAD: str = "UNSIGNED-PAYLOAD"
EMPTY_SHA256_HASH: str = (
    "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
)

Header = Tuple[str, str]


class Credentials(msgspec.Struct, frozen=True):
    access_key: str
    secret_key: str
    session_token: Optional[str] = None

    def __repr__(self) -> str:
        # The secret must never reach logs or tracebacks.
        return (
            f"Credentials(access_key={self.access_key!r}, secret_key='****', "
            f"session_token={'****' if self.session_token else None})"
        )

    def validate(self) -> None:
        if not self.access_key or any(c.isspace() or c == "/" for c in self.access_key):
            raise InvalidCredentialsError("Access key is empty or malformed")
        if not self.secret_key:
            raise InvalidCredentialsError("Secret key is empty")


class SigningScope(msgspec.Struct, frozen=True):
    date: str
    region: str
    service: str

    def __post_init__(self) -> None:
        if len(self.date) != 8 or not self.date.isdigit():
            raise MalformedInputError(f"Scope date must be YYYYMMDD, got {self.date!r}")
        for name, value in (("region", self.region), ("service", self.service)):
            if not value or "/" in value or any(c.isspace() for c in value):
                raise MalformedInputError(f"Invalid scope {name}: {value!r}")

    @classmethod
    def from_provider(cls, provider: str, date: str) -> "SigningScope":
        """
        Build a scope from a provider string such as ``aws:amz:us-east-1:s3``.

        Only the ``aws:amz`` provider pair is supported.

        :param provider: ``<provider1>:<provider2>:<region>:<service>``.
        :type provider: str
        :param date: Scope date in ``YYYYMMDD`` form.
        :type date: str
        :raises MalformedInputError: If the string is not a supported provider.
        """
        parts = provider.split(":")
        if len(parts) != 4:
            raise MalformedInputError(
                f"Provider must look like aws:amz:<region>:<service>, got {provider!r}"
            )
        provider1, provider2, region, service = parts
        if (provider1.lower(), provider2.lower()) != ("aws", "amz"):
            raise MalformedInputError(f"Unsupported provider {provider1}:{provider2}")
        return cls(date=date, region=region, service=service)

    def to_string(self) -> str:
        return f"{self.date}/{self.region}/{self.service}/{TERMINATOR}"


class CanonicalRequest(msgspec.Struct, frozen=True):
    method: str
    canonical_uri: str
    canonical_query: str
    canonical_headers: Tuple[Header, ...]
    signed_headers: Tuple[str, ...]
    payload_hash: str

    @property
    def signed_headers_string(self) -> str:
        return ";".join(self.signed_headers)

    def to_string(self) -> str:
        headers = "".join(f"{name}:{value}\n" for name, value in self.canonical_headers)
        return "\n".join(
            [
                self.method,
                self.canonical_uri,
                self.canonical_query,
                headers,
                self.signed_headers_string,
                self.payload_hash,
            ]
        )

    def hexdigest(self) -> str:
        return hashlib.sha256(self.to_string().encode("utf-8")).hexdigest()


class SignatureResult(msgspec.Struct, frozen=True):
    signature: str
    authorization: str
    signed_headers: Tuple[str, ...]


class SignedRequest(msgspec.Struct, frozen=True):
    method: str
    url: URL
    headers: Tuple[Header, ...]
    body: bytes
    result: SignatureResult

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key.lower() == name:
                return value
        return None


class ExchangeOutcome(msgspec.Struct, frozen=True):
    status: int
    reason: str
    headers: Tuple[Header, ...]
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status < 400

    @property
    def is_error(self) -> bool:
        return self.status >= 400

    @property
    def location(self) -> Optional[str]:
        for key, value in self.headers:
            if key.lower() == "location":
                return value
        return None

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")
