"""Reading the new certificate.

The certificate is produced by the ACME client as ``<state_dir>/<host>.crt``
(PEM).  It is parsed only to report on it; validating it is not our job.

Copyright (c) 2024 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from cryptography import x509
from cryptography.x509.oid import NameOID

from modnss.errors import CertificateError

NOT_AFTER_FORMAT = "%a %b %d %H:%M:%S %Y UTC"


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class CertificateInfo:
    """A parsed PEM certificate and the bytes it came from."""
    pem: bytes
    certificate: x509.Certificate
    source: str = ""

    @property
    def common_name(self) -> Optional[str]:
        attrs = self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not attrs:
            return None
        value = attrs[0].value
        return value.decode("utf-8") if isinstance(value, bytes) else value

    @property
    def not_before(self) -> datetime:
        cert = self.certificate
        if hasattr(cert, "not_valid_before_utc"):
            return cert.not_valid_before_utc
        return _utc(cert.not_valid_before)

    @property
    def not_after(self) -> datetime:
        cert = self.certificate
        if hasattr(cert, "not_valid_after_utc"):
            return cert.not_valid_after_utc
        return _utc(cert.not_valid_after)

    def format_not_after(self) -> str:
        return self.not_after.strftime(NOT_AFTER_FORMAT)


def parse_certificate(pem: bytes, source: str = "") -> CertificateInfo:
    """Parse a PEM certificate (the first one, if the blob holds a chain)."""
    try:
        cert = x509.load_pem_x509_certificate(pem)
    except ValueError as e:
        raise CertificateError("Failed to parse certificate", source, e) from e
    return CertificateInfo(pem=pem, certificate=cert, source=source)


def certificate_path(state_dir: str, hostname: str) -> str:
    if not hostname or "/" in hostname or hostname in (".", ".."):
        raise CertificateError(f"Invalid hostname: {hostname!r}")
    return os.path.join(state_dir, f"{hostname}.crt")


def load_certificate(path: str) -> CertificateInfo:
    """Read and parse a PEM certificate file."""
    try:
        with open(path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            if size <= 0:
                raise CertificateError("File size invalid", path)
            pem = f.read(size)
    except OSError as e:
        raise CertificateError("Failed to read file", path, e) from e

    if len(pem) != size:
        raise CertificateError("Failed to read complete file", path)
    return parse_certificate(pem, source=path)
