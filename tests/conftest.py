# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Shared test fixtures for the IDV verifier test suite.

Provides self-signed RSA, EC, DSA and Ed25519 signing certificates, a
factory for PEM-armored PKCS7 envelopes built with ``cryptography``'s
``PKCS7SignatureBuilder``, a field-by-field SignedData assembler for the
signers and encodings that builder cannot produce, and a sealed trust
store holding only the primary signer (C1).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest
from asn1crypto import algos, cms, pem
from asn1crypto import x509 as asn1_x509
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed25519, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from app.idv.service import VerificationService
from app.idv.trust import TrustStore
from app.main import create_app


# =========================================================================
# Signing certificates
# =========================================================================

@dataclass(frozen=True)
class Signer:
    certificate: x509.Certificate
    key: object

    @property
    def pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)


def make_signer(
    common_name: str,
    organization: str = "Example Identity Services",
    key=None,
    serial_number: Optional[int] = None,
    not_after: Optional[datetime] = None,
) -> Signer:
    """Create a self-signed signing certificate."""
    if key is None:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, "US"),
        x509.NameAttribute(NameOID.STATE_OR_PROVINCE_NAME, "Washington State"),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    # Ed25519 certificates are signed without a separate digest.
    algorithm = None if isinstance(key, ed25519.Ed25519PrivateKey) else hashes.SHA256()
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(serial_number or x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .sign(key, algorithm)
    )
    return Signer(certificate=certificate, key=key)


@pytest.fixture(scope="session")
def signer_c1() -> Signer:
    """The trusted signer."""
    return make_signer("Identity Signer C1")


@pytest.fixture(scope="session")
def signer_c2() -> Signer:
    """An unrelated signer that is never trusted."""
    return make_signer("Unrelated Signer C2", organization="Unrelated Org")


@pytest.fixture(scope="session")
def ec_signer() -> Signer:
    return make_signer("EC Signer", key=ec.generate_private_key(ec.SECP256R1()))


@pytest.fixture(scope="session")
def dsa_signer() -> Signer:
    return make_signer("DSA Signer", key=dsa.generate_private_key(key_size=2048))


@pytest.fixture(scope="session")
def ed25519_signer() -> Signer:
    return make_signer("Ed25519 Signer", key=ed25519.Ed25519PrivateKey.generate())


# =========================================================================
# Envelopes
# =========================================================================

def build_envelope(
    payload: bytes,
    signer: Signer,
    extra_signers: Sequence[Signer] = (),
    options: Sequence[pkcs7.PKCS7Options] = (),
    digest: hashes.HashAlgorithm = None,
    encoding: serialization.Encoding = serialization.Encoding.PEM,
    binary: bool = True,
) -> bytes:
    """Sign *payload* into a PKCS7 SignedData envelope.

    With ``binary=False`` the builder canonicalizes line endings to CRLF
    before signing, as S/MIME text mode does.
    """
    digest = digest or hashes.SHA256()
    builder = pkcs7.PKCS7SignatureBuilder().set_data(payload)
    for s in (signer, *extra_signers):
        builder = builder.add_signer(s.certificate, s.key, digest)
    if binary:
        options = [pkcs7.PKCS7Options.Binary, *options]
    return builder.sign(encoding, list(options))


@pytest.fixture
def make_envelope() -> Callable[..., bytes]:
    """Factory fixture: ``make_envelope(payload, signer, **kwargs)``."""
    return build_envelope


def _indefinite(tag: int, *parts: bytes) -> bytes:
    """BER constructed encoding with indefinite length."""
    return bytes([tag, 0x80]) + b"".join(parts) + b"\x00\x00"


def _sign_attributes(signer: Signer, data: bytes, digest: hashes.HashAlgorithm, pss: bool):
    key = signer.key
    if isinstance(key, rsa.RSAPrivateKey) and pss:
        params = algos.RSASSAPSSParams({
            "hash_algorithm": {"algorithm": digest.name},
            "mask_gen_algorithm": {"algorithm": "mgf1", "parameters": {"algorithm": digest.name}},
            "salt_length": digest.digest_size,
        })
        pad = padding.PSS(mgf=padding.MGF1(digest), salt_length=digest.digest_size)
        algorithm = {"algorithm": "rsassa_pss", "parameters": params}
        return algorithm, key.sign(data, pad, digest)
    if isinstance(key, rsa.RSAPrivateKey):
        return {"algorithm": f"{digest.name}_rsa"}, key.sign(data, padding.PKCS1v15(), digest)
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return {"algorithm": f"{digest.name}_ecdsa"}, key.sign(data, ec.ECDSA(digest))
    if isinstance(key, dsa.DSAPrivateKey):
        return {"algorithm": f"{digest.name}_dsa"}, key.sign(data, digest)
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return {"algorithm": "ed25519"}, key.sign(data)
    raise TypeError(f"unsupported key type {type(key).__name__}")


def build_signed_data(
    payload: bytes,
    signer: Signer,
    digest: hashes.HashAlgorithm = None,
    pss: bool = False,
    indefinite: bool = False,
) -> bytes:
    """Assemble a PEM-armored SignedData envelope field by field.

    Covers signers that ``PKCS7SignatureBuilder`` cannot produce (DSA,
    Ed25519, RSA-PSS).  With ``indefinite=True`` the outer structures and
    the content use BER indefinite lengths and a chunked constructed
    OCTET STRING, the layout streaming signers emit.
    """
    if digest is None:
        digest = hashes.SHA512() if isinstance(signer.key, ed25519.Ed25519PrivateKey) else hashes.SHA256()

    h = hashes.Hash(digest)
    h.update(payload)
    attrs_der = cms.CMSAttributes([
        cms.CMSAttribute({"type": "content_type", "values": ["data"]}),
        cms.CMSAttribute({"type": "message_digest", "values": [h.finalize()]}),
    ]).dump(force=True)
    signature_algorithm, signature = _sign_attributes(signer, attrs_der, digest, pss)

    certificate = asn1_x509.Certificate.load(signer.certificate.public_bytes(serialization.Encoding.DER))
    digest_algorithm = algos.DigestAlgorithm({"algorithm": digest.name})
    signer_info = cms.SignerInfo({
        "version": "v1",
        "sid": cms.SignerIdentifier({
            "issuer_and_serial_number": cms.IssuerAndSerialNumber({
                "issuer": certificate.issuer,
                "serial_number": certificate.serial_number,
            }),
        }),
        "digest_algorithm": digest_algorithm,
        # Reloaded so the embedded attribute bytes are exactly the signed ones.
        "signed_attrs": cms.CMSAttributes.load(attrs_der),
        "signature_algorithm": signature_algorithm,
        "signature": signature,
    })
    signed_data = cms.SignedData({
        "version": "v1",
        "digest_algorithms": [digest_algorithm],
        "encap_content_info": {"content_type": "data", "content": payload},
        "certificates": [certificate],
        "signer_infos": [signer_info],
    })

    if not indefinite:
        der = cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()
        return armor(der)

    chunks = [payload[i:i + 16] for i in range(0, len(payload), 16)]
    content = _indefinite(0x24, *(bytes([0x04, len(c)]) + c for c in chunks))
    encap = _indefinite(0x30, cms.ContentType("data").dump(), _indefinite(0xA0, content))
    body = _indefinite(
        0x30,
        signed_data["version"].dump(),
        signed_data["digest_algorithms"].dump(),
        encap,
        signed_data["certificates"].dump(),
        signed_data["signer_infos"].dump(),
    )
    ber = _indefinite(0x30, cms.ContentType("signed_data").dump(), _indefinite(0xA0, body))
    return armor(ber)


@pytest.fixture
def make_signed_data() -> Callable[..., bytes]:
    """Factory fixture: ``make_signed_data(payload, signer, **kwargs)``."""
    return build_signed_data


def envelope_der(armored: bytes) -> bytes:
    _, _, der = pem.unarmor(armored)
    return der


def armor(der: bytes) -> bytes:
    return pem.armor("PKCS7", der)


def flip_signature_bit(armored: bytes) -> bytes:
    """Flip the lowest bit of the last signature byte, keeping the structure."""
    der = envelope_der(armored)
    signature = cms.ContentInfo.load(der)["content"]["signer_infos"][0]["signature"].native
    pos = der.rindex(signature) + len(signature) - 1
    return armor(der[:pos] + bytes([der[pos] ^ 0x01]) + der[pos + 1:])


@pytest.fixture
def flip_signature() -> Callable[[bytes], bytes]:
    return flip_signature_bit


@pytest.fixture
def der_of() -> Callable[[bytes], bytes]:
    return envelope_der


@pytest.fixture
def rearmor() -> Callable[[bytes], bytes]:
    return armor


# =========================================================================
# Trust store, service and HTTP client
# =========================================================================

@pytest.fixture
def trust_store(signer_c1: Signer) -> TrustStore:
    """Sealed trust store holding C1 only."""
    store = TrustStore()
    store.add_certificate(signer_c1.certificate)
    return store.seal()


@pytest.fixture
def service(trust_store: TrustStore) -> VerificationService:
    return VerificationService(trust_store)


@pytest.fixture
def client(trust_store: TrustStore) -> TestClient:
    return TestClient(create_app(trust_store))


@pytest.fixture
def write_pem(tmp_path: Path) -> Callable[[str, bytes], Path]:
    """Write PEM bytes to a file under ``tmp_path`` and return its path."""

    def _write(name: str, data: bytes) -> Path:
        path = tmp_path / name
        path.write_bytes(data)
        return path

    return _write


@pytest.fixture(scope="session")
def signer_factory() -> Callable[..., Signer]:
    """Factory fixture: ``signer_factory(common_name, **kwargs)``."""
    return make_signer
