"""Self-signed TLS certificates for serving a relay over `wss://`.

Warning:
    The certificates are only suitable for local tests.
"""
from __future__ import annotations

import datetime
import pathlib
from typing import NamedTuple

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


class TLSFiles(NamedTuple):
    """Paths of a PEM certificate and its private key."""

    certfile: str
    keyfile: str


def write_self_signed_cert(
    directory: pathlib.Path,
    hostname: str = 'localhost',
    days: int = 1,
) -> TLSFiles:
    """Write a self-signed certificate for `hostname` to `directory`."""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=1))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    certfile = directory / 'cert.pem'
    keyfile = directory / 'key.pem'
    certfile.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    keyfile.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ),
    )
    return TLSFiles(str(certfile), str(keyfile))


@pytest.fixture(scope='session')
def tls_files(tmp_path_factory: pytest.TempPathFactory) -> TLSFiles:
    """Self-signed certificate for `localhost` shared by the session."""
    return write_self_signed_cert(tmp_path_factory.mktemp('tls'))
