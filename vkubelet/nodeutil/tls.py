"""TLS server contexts with the accepted cipher suites and client certificate options."""

from __future__ import annotations

import ssl
from collections.abc import Callable

TLSOption = Callable[[ssl.SSLContext], None]


def default_server_ciphers() -> list[str]:
    """Accepted TLS 1.2 cipher suites, with known weak ones left out."""
    return [
        "ECDHE-ECDSA-AES256-SHA",
        "ECDHE-ECDSA-AES128-SHA",
        "ECDHE-RSA-AES256-SHA",
        "ECDHE-RSA-AES128-SHA",
        "ECDHE-ECDSA-AES256-GCM-SHA384",
        "ECDHE-RSA-AES256-GCM-SHA384",
        "ECDHE-ECDSA-AES128-GCM-SHA256",
        "ECDHE-RSA-AES128-GCM-SHA256",
    ]


def with_ca_cert(pem: bytes | str) -> TLSOption:
    """Option that trusts the CA certificates in the PEM text for client authentication."""

    def apply(ctx: ssl.SSLContext) -> None:
        try:
            text = pem.decode("ascii") if isinstance(pem, bytes) else pem
            ctx.load_verify_locations(cadata=text)
        except (ssl.SSLError, ValueError) as err:
            raise ValueError("could not parse ca cert pem") from err

    return apply


def with_ca_from_path(path: str) -> TLSOption:
    """Option that requires client certificates signed by the CA in the PEM file at path."""

    def apply(ctx: ssl.SSLContext) -> None:
        try:
            with open(path, "rb") as handle:
                pem = handle.read()
        except OSError as err:
            raise OSError(f"error reading ca cert pem: {err}") from err
        ctx.verify_mode = ssl.CERT_REQUIRED
        with_ca_cert(pem)(ctx)

    return apply


def with_key_pair_from_path(cert: str, key: str) -> TLSOption:
    """Option that loads the server certificate and key from disk."""

    def apply(ctx: ssl.SSLContext) -> None:
        ctx.load_cert_chain(cert, key)

    return apply


def tls_context(*args: TLSOption) -> ssl.SSLContext:
    """Build a server context (TLS 1.2 or newer, default ciphers) and apply the options in order."""
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.minimum_version = ssl.TLSVersion.TLSv1_2
    ctx.options |= ssl.OP_CIPHER_SERVER_PREFERENCE
    ctx.set_ciphers(":".join(default_server_ciphers()))
    ctx.verify_mode = ssl.CERT_OPTIONAL
    for option in args:
        option(ctx)
    return ctx