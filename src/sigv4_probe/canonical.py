import hashlib
import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import quote, unquote_to_bytes

from .exceptions import MalformedInputError
from .models import EMPTY_SHA256_HASH, UNSIGNED_PAYLOAD, CanonicalRequest

Value = Union[str, Sequence[str]]
Pairs = Union[Mapping[str, Value], Iterable[Tuple[str, str]]]

# RFC 7230 token characters.
_TOKEN = re.compile(r"[!#$%&'*+\-.^_`|~0-9A-Za-z]+")
# Control characters other than horizontal tab.
_CONTROL = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")

ALWAYS_SIGNED: Tuple[str, ...] = ("host", "content-type", "content-md5")


def iter_pairs(items: Optional[Pairs]) -> List[Tuple[str, str]]:
    if not items:
        return []
    if isinstance(items, Mapping):
        pairs: List[Tuple[str, str]] = []
        for key, value in items.items():
            if isinstance(value, str):
                pairs.append((key, value))
            else:
                pairs.extend((key, v) for v in value)
        return pairs
    return [(key, value) for key, value in items]


def hash_payload(payload: Optional[bytes]) -> str:
    if not payload:
        return EMPTY_SHA256_HASH
    return hashlib.sha256(payload).hexdigest()


def canonical_uri(path: str) -> str:
    """
    Percent-encode every path segment, leaving unreserved characters alone.

    Existing escapes are decoded first, so an already-canonical path comes out
    unchanged. Dot segments are passed through as they are.
    """
    if not path.startswith("/"):
        raise MalformedInputError(f"Path must be in absolute-path form, got {path!r}")
    return "/".join(quote(unquote_to_bytes(segment), safe="") for segment in path.split("/"))


def canonical_query(query: Optional[Pairs]) -> str:
    encoded = sorted(
        (quote(key, safe=""), quote(value, safe="")) for key, value in iter_pairs(query)
    )
    return "&".join(f"{key}={value}" for key, value in encoded)


def _validate_header_name(name: str) -> None:
    if not _TOKEN.fullmatch(name):
        raise MalformedInputError(f"Invalid header name: {name!r}")


def fold_headers(headers: Optional[Pairs]) -> List[Tuple[str, str]]:
    """Lower-case names, merge repeated names and normalize whitespace."""
    folded: Dict[str, List[str]] = {}
    for name, value in iter_pairs(headers):
        _validate_header_name(name)
        if _CONTROL.search(str(value)):
            raise MalformedInputError(f"Control character in value of header {name!r}")
        folded.setdefault(name.lower(), []).append(" ".join(str(value).split()))
    return sorted((name, ",".join(values)) for name, values in folded.items())


def _is_signed(name: str, marked: Iterable[str]) -> bool:
    return name in ALWAYS_SIGNED or name.startswith("x-amz-") or name in marked


def build_canonical_request(
    method: str,
    path: str,
    query: Optional[Pairs] = None,
    headers: Optional[Pairs] = None,
    payload: Optional[bytes] = b"",
    signed_headers: Iterable[str] = (),
    unsigned_payload: bool = False,
) -> CanonicalRequest:
    """
    Normalize a request into the canonical form SigV4 signs.

    :param method: HTTP method, upper-cased on output.
    :type method: str
    :param path: Absolute path, raw or percent-encoded.
    :type path: str
    :param query: Query parameters as a mapping or a sequence of pairs.
        Repeated keys are kept.
    :type query: Optional[Pairs]
    :param headers: Request headers as a mapping or a sequence of pairs.
        Repeated names are folded into one comma-separated value.
    :type headers: Optional[Pairs]
    :param payload: Exact body bytes that will be sent.
    :type payload: Optional[bytes]
    :param signed_headers: Extra header names that must be signed on top of
        ``host``, ``content-type``, ``content-md5`` and ``x-amz-*``.
    :type signed_headers: Iterable[str]
    :param unsigned_payload: Use the ``UNSIGNED-PAYLOAD`` placeholder instead of
        hashing the body.
    :type unsigned_payload: bool
    :return: The canonical request.
    :rtype: CanonicalRequest
    :raises MalformedInputError: On an empty method, a relative path, an
        invalid header name or value, or a missing mandatory header.
    """
    if not method or not _TOKEN.fullmatch(method):
        raise MalformedInputError(f"Invalid HTTP method: {method!r}")

    marked = set()
    for name in signed_headers:
        _validate_header_name(name)
        marked.add(name.lower())

    folded = fold_headers(headers)
    present = {name for name, _ in folded}
    missing = ({"host"} | marked) - present
    if missing:
        raise MalformedInputError(
            f"Headers marked for signing are missing: {', '.join(sorted(missing))}"
        )

    included = tuple((name, value) for name, value in folded if _is_signed(name, marked))

    return CanonicalRequest(
        method=method.upper(),
        canonical_uri=canonical_uri(path),
        canonical_query=canonical_query(query),
        canonical_headers=included,
        signed_headers=tuple(name for name, _ in included),
        payload_hash=UNSIGNED_PAYLOAD if unsigned_payload else hash_payload(payload),
    )
