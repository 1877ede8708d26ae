# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Trusted signing certificates.

The :class:`TrustStore` is filled once at process start and then sealed.
After :meth:`TrustStore.seal` it is a read-only snapshot shared by every
request handler, so no locking is required.  Configured certificates are
trusted directly; there is no CA chain walk.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from asn1crypto import pem
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from app.idv.exceptions import MalformedCertificateError, TrustStoreError

logger = logging.getLogger("idv.trust")

__all__ = [
    "AWS_PUBLIC_CLOUD_CERTIFICATE",
    "TrustStore",
    "TrustedCertificate",
    "load_trust_store",
]

# Public certificate used by Amazon to sign EC2 instance identity documents
# in the standard AWS partition.
AWS_PUBLIC_CLOUD_CERTIFICATE = b"""-----BEGIN CERTIFICATE-----
MIIC7TCCAq0CCQCWukjZ5V4aZzAJBgcqhkjOOAQDMFwxCzAJBgNVBAYTAlVTMRkw
FwYDVQQIExBXYXNoaW5ndG9uIFN0YXRlMRAwDgYDVQQHEwdTZWF0dGxlMSAwHgYD
VQQKExdBbWF6b24gV2ViIFNlcnZpY2VzIExMQzAeFw0xMjAxMDUxMjU2MTJaFw0z
ODAxMDUxMjU2MTJaMFwxCzAJBgNVBAYTAlVTMRkwFwYDVQQIExBXYXNoaW5ndG9u
IFN0YXRlMRAwDgYDVQQHEwdTZWF0dGxlMSAwHgYDVQQKExdBbWF6b24gV2ViIFNl
cnZpY2VzIExMQzCCAbcwggEsBgcqhkjOOAQBMIIBHwKBgQCjkvcS2bb1VQ4yt/5e
ih5OO6kK/n1Lzllr7D8ZwtQP8fOEpp5E2ng+D6Ud1Z1gYipr58Kj3nssSNpI6bX3
VyIQzK7wLclnd/YozqNNmgIyZecN7EglK9ITHJLP+x8FtUpt3QbyYXJdmVMegN6P
hviYt5JH/nYl4hh3Pa1HJdskgQIVALVJ3ER11+Ko4tP6nwvHwh6+ERYRAoGBAI1j
k+tkqMVHuAFcvAGKocTgsjJem6/5qomzJuKDmbJNu9Qxw3rAotXau8Qe+MBcJl/U
hhy1KHVpCGl9fueQ2s6IL0CaO/buycU1CiYQk40KNHCcHfNiZbdlx1E9rpUp7bnF
lRa2v1ntMX3caRVDdbtPEWmdxSCYsYFDk4mZrOLBA4GEAAKBgEbmeve5f8LIE/Gf
MNmP9CM5eovQOGx5ho8WqD+aTebs+k2tn92BBPqeZqpWRa5P/+jrdKml1qx4llHW
MXrs3IgIb6+hUIB+S8dz8/mmO0bpr76RoZVCXYab2CZedFut7qc3WUH9+EUAH5mw
vSeDCOUMYQR7R9LINYwouHIziqQYMAkGByqGSM44BAMDLwAwLAIUWXBlk40xTwSw
7HX32MxXYruse9ACFBNGmdX2ZBrVNGrN9N2f6ROk0k9K
-----END CERTIFICATE-----
"""


def _name_values(name: x509.Name, oid: x509.ObjectIdentifier) -> List[str]:
    return [str(attr.value) for attr in name.get_attributes_for_oid(oid)]


@dataclass(frozen=True)
class TrustedCertificate:
    """A trusted signing certificate and the keys used to match signers.

    The matching keys are taken from the certificate's original DER so
    they compare byte for byte with the identifiers found in envelopes.

    Attributes:
        certificate:      The decoded certificate (identity, key, validity).
        issuer:           DER of the issuer name.
        serial_number:    Certificate serial number.
        key_identifier:   Subject key identifier extension value, if any.
        public_key_info:  DER of the SubjectPublicKeyInfo.
        fingerprint:      Hex SHA-256 of the certificate DER.
    """

    certificate: x509.Certificate = field(compare=False)
    issuer: bytes
    serial_number: int
    key_identifier: Optional[bytes]
    public_key_info: bytes
    fingerprint: str

    @classmethod
    def from_certificate(cls, certificate: x509.Certificate) -> "TrustedCertificate":
        der = certificate.public_bytes(Encoding.DER)
        parsed = asn1_x509.Certificate.load(der)
        return cls(
            certificate=certificate,
            issuer=parsed["tbs_certificate"]["issuer"].dump(),
            serial_number=parsed.serial_number,
            key_identifier=parsed.key_identifier,
            public_key_info=parsed.public_key.dump(),
            fingerprint=hashlib.sha256(der).hexdigest(),
        )

    def describe(self) -> str:
        """Organization, province and country of the subject, for logs."""
        subject = self.certificate.subject
        return "%s, %s, %s" % (
            _name_values(subject, NameOID.ORGANIZATION_NAME),
            _name_values(subject, NameOID.STATE_OR_PROVINCE_NAME),
            _name_values(subject, NameOID.COUNTRY_NAME),
        )


class TrustStore:
    """Ordered, append-only set of trusted signing certificates."""

    def __init__(self) -> None:
        self._certificates: List[TrustedCertificate] = []
        self._sealed = False

    def __len__(self) -> int:
        return len(self._certificates)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def add_certificate(self, certificate: x509.Certificate) -> TrustedCertificate:
        """Add a decoded certificate to the signing candidates.

        The certificate's own chain of trust is not validated.  A
        certificate already present (same fingerprint) is not added twice.

        Raises
        ------
        TrustStoreError
            If the store has been sealed.
        """
        if self._sealed:
            raise TrustStoreError.sealed()

        trusted = TrustedCertificate.from_certificate(certificate)
        for existing in self._certificates:
            if existing.fingerprint == trusted.fingerprint:
                logger.info("Certificate %s already trusted, skipping", trusted.fingerprint)
                return existing

        now = datetime.now(tz=timezone.utc)
        if not certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc:
            logger.warning(
                "Certificate %s is outside its validity period (%s to %s)",
                trusted.fingerprint,
                certificate.not_valid_before_utc.isoformat(),
                certificate.not_valid_after_utc.isoformat(),
            )

        logger.info("Adding certificate %s to signing candidates", trusted.describe())
        self._certificates.append(trusted)
        return trusted

    def add_pem_certificate(self, data: bytes) -> TrustedCertificate:
        """Decode one PEM-encoded certificate and add it.

        Raises
        ------
        MalformedCertificateError
            If *data* has no PEM certificate block or the block is not a
            valid X.509 certificate.
        """
        if not pem.detect(data):
            raise MalformedCertificateError.no_pem_block()
        try:
            certificate = x509.load_pem_x509_certificate(data)
        except ValueError as exc:
            raise MalformedCertificateError.invalid(str(exc)) from exc
        return self.add_certificate(certificate)

    def read_pem_certificates(self, path: str | Path) -> List[TrustedCertificate]:
        """Read a PEM file and add every certificate it contains.

        Raises
        ------
        TrustStoreError
            If the file cannot be read.
        MalformedCertificateError
            If the file holds no valid certificate.
        """
        logger.info("Loading certificates from %s", path)
        try:
            data = Path(path).read_bytes()
        except OSError as exc:
            raise TrustStoreError.unreadable(str(path)) from exc

        if not pem.detect(data):
            raise MalformedCertificateError.no_pem_block()
        try:
            certificates = x509.load_pem_x509_certificates(data)
        except ValueError as exc:
            raise MalformedCertificateError.invalid(str(exc)) from exc
        return [self.add_certificate(cert) for cert in certificates]

    def seal(self) -> "TrustStore":
        """Freeze the store; no certificate can be added afterwards.

        Raises
        ------
        TrustStoreError
            If the store is empty.
        """
        if not self._certificates:
            raise TrustStoreError.empty()
        self._sealed = True
        logger.info("Trust store sealed with %d certificate(s)", len(self._certificates))
        return self

    def candidates(self) -> Tuple[TrustedCertificate, ...]:
        """The current signing candidates, in the order they were added."""
        return tuple(self._certificates)


def load_trust_store(
    paths: Iterable[str | Path],
    include_aws_public_cloud: bool = True,
) -> TrustStore:
    """Build and seal the process trust store.

    Any failure propagates: a process must not serve requests with a
    partially loaded trust store.
    """
    store = TrustStore()
    if include_aws_public_cloud:
        store.add_pem_certificate(AWS_PUBLIC_CLOUD_CERTIFICATE)
    for path in paths:
        store.read_pem_certificates(path)
    return store.seal()
