import logging
import sys
from os import environ
from typing import Dict, List, Optional, Tuple, Type

import click
import msgspec

from .client import DEFAULT_TIMEOUT, exchange_sync
from .exceptions import (
    InvalidCredentialsError,
    MalformedInputError,
    ProtocolError,
    Sigv4ProbeError,
    TransportError,
)
from .models import Credentials, ExchangeOutcome, SigningScope
from .signer import DATE_FORMAT, sign_request, utcnow

logger = logging.getLogger("sigv4_probe")

DEFAULT_URL = "http://127.0.0.1:9000/cern-test-bucket/"
DEFAULT_PROVIDER = "aws:amz:us-east-1:s3"

EXIT_CODES: Dict[Type[Sigv4ProbeError], int] = {
    MalformedInputError: 3,
    InvalidCredentialsError: 4,
    TransportError: 5,
    ProtocolError: 6,
}

json_encoder = msgspec.json.Encoder()


def parse_header(raw: str) -> Tuple[str, str]:
    name, sep, value = raw.partition(":")
    if not sep:
        raise click.BadParameter(f"expected 'Name: value', got {raw!r}", param_hint="-H")
    return name.strip(), value.strip()


def resolve_credentials(user: Optional[str]) -> Credentials:
    """
    Credentials from ``--user ACCESS:SECRET`` or the usual AWS variables.

    :raises InvalidCredentialsError: If neither source provides a key pair.
    """
    if user:
        access_key, _, secret_key = user.partition(":")
        return Credentials(
            access_key=access_key,
            secret_key=secret_key,
            session_token=environ.get("AWS_SESSION_TOKEN"),
        )

    if environ.get("AWS_ACCESS_KEY_ID") and environ.get("AWS_SECRET_ACCESS_KEY"):
        logger.debug("Using env AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY")
        return Credentials(
            access_key=environ["AWS_ACCESS_KEY_ID"],
            secret_key=environ["AWS_SECRET_ACCESS_KEY"],
            session_token=environ.get("AWS_SESSION_TOKEN"),
        )

    raise InvalidCredentialsError(
        "No credentials: pass --user or set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY"
    )


def read_body(data: Optional[str]) -> bytes:
    if data is None:
        return b""
    if data.startswith("@"):
        with open(data[1:], "rb") as fh:
            return fh.read()
    return data.encode("utf-8")


def render(outcome: ExchangeOutcome, as_json: bool) -> None:
    if as_json:
        document = {
            "status": outcome.status,
            "reason": outcome.reason,
            "headers": [list(header) for header in outcome.headers],
            "body": outcome.text(),
        }
        click.echo(json_encoder.encode(document).decode())
        return

    click.echo(f"HTTP Response Code: {outcome.status}")
    if outcome.is_redirect and outcome.location:
        click.echo(f"Redirect (not followed): {outcome.location}")
    if outcome.status == 200:
        click.echo("Integration test passed! The server accepted the signature.")
    elif outcome.body:
        click.echo(f"Server Response: {outcome.text()}")


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("url", default=DEFAULT_URL)
@click.option("-X", "--request", "method", default="GET", show_default=True,
              help="HTTP method")
@click.option("-H", "--header", "headers", multiple=True,
              help="Extra header, 'Name: value'. Repeatable.")
@click.option("-d", "--data", help="Request body, or @file to read it from a file")
@click.option("-u", "--user", help="ACCESS_KEY:SECRET_KEY")
@click.option("--sigv4", "provider", default=DEFAULT_PROVIDER, show_default=True,
              help="Signing provider as aws:amz:<region>:<service>")
@click.option("--sign-header", "sign_headers", multiple=True,
              help="Additional header name to include in the signature. Repeatable.")
@click.option("--unsigned-payload", is_flag=True, help="Sign UNSIGNED-PAYLOAD")
@click.option("--timeout", type=float, default=DEFAULT_TIMEOUT, show_default=True,
              help="Timeout in seconds for the whole exchange")
@click.option("--json", "as_json", is_flag=True, help="Print the outcome as JSON")
@click.option("-v", "--verbose", is_flag=True, help="Log signing and transport details")
def cli(
    url: str,
    method: str,
    headers: Tuple[str, ...],
    data: Optional[str],
    user: Optional[str],
    provider: str,
    sign_headers: Tuple[str, ...],
    unsigned_payload: bool,
    timeout: float,
    as_json: bool,
    verbose: bool,
) -> None:
    """Send one SigV4-signed request to URL and report the response."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    header_pairs: List[Tuple[str, str]] = [parse_header(h) for h in headers]

    try:
        now = utcnow()
        scope = SigningScope.from_provider(provider, now.strftime(DATE_FORMAT))
        credentials = resolve_credentials(user)
        signed = sign_request(
            method,
            url,
            credentials,
            region=scope.region,
            service=scope.service,
            headers=header_pairs,
            body=read_body(data),
            signed_headers=sign_headers,
            unsigned_payload=unsigned_payload,
            now=now,
        )
        if not as_json:
            click.echo(f"Sending {signed.method} {signed.url} using AWS SigV4...", err=True)
        outcome = exchange_sync(signed, timeout=timeout)
    except Sigv4ProbeError as e:
        click.echo(f"{type(e).__name__}: {e}", err=True)
        sys.exit(EXIT_CODES.get(type(e), 1))
    except OSError as e:
        click.echo(f"Error reading body: {e}", err=True)
        sys.exit(1)

    render(outcome, as_json)


def main() -> None:
    cli(prog_name="sigv4-probe")
