import datetime
import hashlib
import hmac
import logging
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlsplit

from yarl import URL

from .canonical import Pairs, build_canonical_request, hash_payload, iter_pairs
from .exceptions import InvalidCredentialsError, MalformedInputError
from .models import (
    ALGORITHM,
    TERMINATOR,
    UNSIGNED_PAYLOAD,
    CanonicalRequest,
    Credentials,
    SignatureResult,
    SignedRequest,
    SigningScope,
)

logger = logging.getLogger("sigv4_probe")
logger.addHandler(logging.NullHandler())

TIMESTAMP_FORMAT: str = "%Y%m%dT%H%M%SZ"
DATE_FORMAT: str = "%Y%m%d"
DEFAULT_PORTS: Dict[str, int] = {"http": 80, "https": 443}

Clock = Callable[[], datetime.datetime]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def sign(key: bytes, msg: str) -> bytes:
    return hmac.new(key, msg.encode("utf-8"), hashlib.sha256).digest()


def derive_signing_key(secret_key: str, scope: SigningScope) -> bytes:
    if not secret_key:
        raise InvalidCredentialsError("Secret key is empty")

    k_date = sign(f"AWS4{secret_key}".encode(), scope.date)
    k_region = sign(k_date, scope.region)
    k_service = sign(k_region, scope.service)
    k_signing = sign(k_service, TERMINATOR)
    return k_signing


class SigningKeyCache:
    """
    Derived signing keys for the current UTC day.

    Entries are keyed by a fingerprint of the secret plus region and service.
    Readers look at an immutable snapshot; a miss or a date rollover builds a
    new snapshot under the lock and swaps it in.

    :param clock: Returns the current UTC time. Scopes dated any other day are
        derived on every call and never stored.
    :type clock: Callable[[], datetime.datetime]
    """

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock
        self._lock = threading.Lock()
        self._snapshot: Tuple[str, Dict[Tuple[str, str, str], bytes]] = ("", {})

    @staticmethod
    def fingerprint(secret_key: str) -> str:
        return hashlib.sha256(secret_key.encode("utf-8")).hexdigest()

    def __len__(self) -> int:
        return len(self._snapshot[1])

    def get(self, secret_key: str, scope: SigningScope) -> bytes:
        today = self.clock().strftime(DATE_FORMAT)
        if scope.date != today:
            return derive_signing_key(secret_key, scope)

        entry = (self.fingerprint(secret_key), scope.region, scope.service)
        date, keys = self._snapshot
        if date == today and entry in keys:
            return keys[entry]

        key = derive_signing_key(secret_key, scope)
        with self._lock:
            date, keys = self._snapshot
            if date != today:
                logger.debug(f"Signing key cache rolled over to {today}")
                keys = {}
            self._snapshot = (today, {**keys, entry: key})
        return key

    def clear(self) -> None:
        with self._lock:
            self._snapshot = ("", {})


def build_string_to_sign(timestamp: str, scope: SigningScope, canonical_hash: str) -> str:
    try:
        datetime.datetime.strptime(timestamp, TIMESTAMP_FORMAT)
    except ValueError:
        raise MalformedInputError(
            f"Timestamp must be ISO 8601 basic format YYYYMMDDTHHMMSSZ, got {timestamp!r}"
        ) from None
    if len(timestamp) != 16:
        # strptime accepts single-digit fields.
        raise MalformedInputError(f"Timestamp is not zero-padded: {timestamp!r}")

    return "\n".join([ALGORITHM, timestamp, scope.to_string(), canonical_hash])


def compute_signature(signing_key: bytes, string_to_sign: str) -> str:
    return hmac.new(
        signing_key,
        string_to_sign.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def build_authorization(
    access_key: str,
    scope: SigningScope,
    signed_headers: Iterable[str],
    signature: str,
) -> str:
    return (
        f"{ALGORITHM} Credential={access_key}/{scope.to_string()}, "
        f"SignedHeaders={';'.join(signed_headers)}, Signature={signature}"
    )


def sign_canonical_request(
    canonical_request: CanonicalRequest,
    credentials: Credentials,
    scope: SigningScope,
    timestamp: str,
    key_cache: Optional[SigningKeyCache] = None,
) -> SignatureResult:
    """
    Sign an already canonicalized request.

    Pure in its inputs: the same request, credentials, scope and timestamp
    always give the same signature.
    """
    credentials.validate()

    string_to_sign = build_string_to_sign(timestamp, scope, canonical_request.hexdigest())
    logger.debug(f"Canonical request:\n{canonical_request.to_string()}")
    logger.debug(f"String to sign:\n{string_to_sign}")

    if key_cache is not None:
        signing_key = key_cache.get(credentials.secret_key, scope)
    else:
        signing_key = derive_signing_key(credentials.secret_key, scope)

    signature = compute_signature(signing_key, string_to_sign)
    return SignatureResult(
        signature=signature,
        authorization=build_authorization(
            credentials.access_key,
            scope,
            canonical_request.signed_headers,
            signature,
        ),
        signed_headers=canonical_request.signed_headers,
    )


def host_header(url: str) -> str:
    parts = urlsplit(url)
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    try:
        port = parts.port
    except ValueError:
        raise MalformedInputError(f"Invalid port in URL: {url!r}") from None
    if port is not None and DEFAULT_PORTS.get(parts.scheme) != port:
        host = f"{host}:{port}"
    return host


def sign_request(
    method: str,
    url: str,
    credentials: Credentials,
    region: str,
    service: str,
    headers: Optional[Pairs] = None,
    body: Optional[Union[bytes, str]] = None,
    params: Optional[Pairs] = None,
    signed_headers: Iterable[str] = (),
    unsigned_payload: bool = False,
    content_sha256: Optional[bool] = None,
    now: Optional[datetime.datetime] = None,
    key_cache: Optional[SigningKeyCache] = None,
) -> SignedRequest:
    """
    Sign a single request and return it ready to send.

    :param method: HTTP method (e.g., "GET").
    :type method: str
    :param url: Absolute ``http`` or ``https`` URL. Its query string is merged
        with ``params``.
    :type url: str
    :param credentials: Access key, secret key and optional session token.
    :type credentials: Credentials
    :param region: Signing region (e.g., "us-east-1").
    :type region: str
    :param service: Signing service name (e.g., "s3").
    :type service: str
    :param headers: Extra request headers.
    :type headers: Optional[Pairs]
    :param body: Request body. Strings are UTF-8 encoded.
    :type body: Optional[Union[bytes, str]]
    :param params: Extra query parameters.
    :type params: Optional[Pairs]
    :param signed_headers: Header names to sign besides the default set.
    :type signed_headers: Iterable[str]
    :param unsigned_payload: Sign ``UNSIGNED-PAYLOAD`` instead of the body hash.
    :type unsigned_payload: bool
    :param content_sha256: Send ``x-amz-content-sha256``. Defaults to on for s3.
    :type content_sha256: Optional[bool]
    :param now: Signing time. Defaults to the current UTC time.
    :type now: Optional[datetime.datetime]
    :param key_cache: Optional cache for derived signing keys.
    :type key_cache: Optional[SigningKeyCache]
    :return: The signed request.
    :rtype: SignedRequest
    :raises MalformedInputError: On a bad URL, method, header or scope.
    :raises InvalidCredentialsError: On empty or malformed credentials.
    """
    # https://docs.aws.amazon.com/IAM/latest/UserGuide/reference_sigv-create-signed-request.html
    parts = urlsplit(url)
    if parts.scheme not in DEFAULT_PORTS or not parts.hostname:
        raise MalformedInputError(f"URL must be absolute http(s), got {url!r}")

    dt_now = now or utcnow()
    if dt_now.tzinfo is not None:
        dt_now = dt_now.astimezone(datetime.timezone.utc)
    amz_date = dt_now.strftime(TIMESTAMP_FORMAT)
    scope = SigningScope(date=dt_now.strftime(DATE_FORMAT), region=region, service=service)

    if isinstance(body, str):
        body = body.encode("utf-8")
    payload = body or b""

    request_headers: List[Tuple[str, str]] = [
        (name, value)
        for name, value in iter_pairs(headers)
        if name.lower() not in ("host", "x-amz-date", "authorization")
    ]
    host = host_header(url)
    request_headers.insert(0, ("host", host))
    request_headers.append(("x-amz-date", amz_date))

    if content_sha256 is None:
        content_sha256 = service == "s3"
    if content_sha256:
        request_headers = [
            (k, v) for k, v in request_headers if k.lower() != "x-amz-content-sha256"
        ]
        request_headers.append(
            (
                "x-amz-content-sha256",
                UNSIGNED_PAYLOAD if unsigned_payload else hash_payload(payload),
            )
        )
    if credentials.session_token:
        request_headers.append(("x-amz-security-token", credentials.session_token))

    query = parse_qsl(parts.query, keep_blank_values=True) + iter_pairs(params)

    canonical_request = build_canonical_request(
        method,
        parts.path or "/",
        query=query,
        headers=request_headers,
        payload=payload,
        signed_headers=signed_headers,
        unsigned_payload=unsigned_payload,
    )

    result = sign_canonical_request(
        canonical_request, credentials, scope, amz_date, key_cache=key_cache
    )
    request_headers.append(("Authorization", result.authorization))

    target = f"{parts.scheme}://{host}{canonical_request.canonical_uri}"
    if canonical_request.canonical_query:
        target = f"{target}?{canonical_request.canonical_query}"

    return SignedRequest(
        method=canonical_request.method,
        url=URL(target, encoded=True),
        headers=tuple(request_headers),
        body=payload,
        result=result,
    )
