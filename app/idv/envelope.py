# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""PKCS7 / CMS SignedData envelope decoding.

Turns the PEM-armored body of a verification request into a
:class:`SignedEnvelope`: a frozen value object that holds only bytes,
integers and strings copied out of the ASN.1 tree.  ``asn1crypto``
parses lazily, so every field the verifier needs is read here, while
the caller's fault boundary is still active; nothing downstream touches
the attacker-controlled ASN.1 structure again.

Decoding two identical inputs yields equal envelopes.

References
----------
- RFC 5652 §5: Signed-data content type
- RFC 7468: Textual encodings of PKIX structures (PEM)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from asn1crypto import cms, core, pem

from app.idv.exceptions import MalformedEnvelopeError

logger = logging.getLogger("idv.envelope")

__all__ = [
    "EmbeddedCertificate",
    "SignedEnvelope",
    "SignerInfo",
    "parse_signed_data",
    "unarmor",
]

# DER tag for a universal constructed SET.  Signed attributes are stored
# with an implicit [0] tag but are signed as a SET OF.
_SET_TAG = b"\x31"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SignerInfo:
    """One signer-info entry of a SignedData envelope.

    Attributes:
        issuer:             DER of the signer certificate's issuer name
                            (``issuer_and_serial_number`` identifiers only).
        serial_number:      Signer certificate serial number.
        key_identifier:     Subject key identifier (``subject_key_identifier``
                            identifiers only).
        digest_algorithm:   asn1crypto name of the digest (e.g. ``"sha256"``).
        signature_algorithm: asn1crypto name of the signature algorithm.
        signature:          Raw signature bytes.
        signed_attrs:       Signed attributes re-tagged as a DER ``SET OF``,
                            exactly as they were signed; ``None`` if absent.
        message_digest:     Value of the ``message-digest`` signed attribute.
    """

    issuer: Optional[bytes]
    serial_number: Optional[int]
    key_identifier: Optional[bytes]
    digest_algorithm: str
    signature_algorithm: str
    signature: Optional[bytes]
    signed_attrs: Optional[bytes] = None
    message_digest: Optional[bytes] = None


@dataclass(frozen=True)
class EmbeddedCertificate:
    """Identity and key of a certificate carried inside the envelope."""

    issuer: bytes
    serial_number: int
    key_identifier: Optional[bytes]
    public_key_info: bytes


@dataclass(frozen=True)
class SignedEnvelope:
    """Decoded PKCS7 SignedData.

    Attributes:
        content_type:  Encapsulated content type (normally ``"data"``).
        content:       The signed content, or ``None`` for a detached
                       signature.
        signer_infos:  Signer-info entries in envelope order.
        certificates:  X.509 certificates embedded in the envelope.
    """

    content_type: str
    content: Optional[bytes]
    signer_infos: Tuple[SignerInfo, ...]
    certificates: Tuple[EmbeddedCertificate, ...] = ()


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _present(value: core.Asn1Value) -> bool:
    """``False`` for an absent OPTIONAL field."""
    return not isinstance(value, core.Void)


def _signed_attrs_der(signed_attrs: cms.CMSAttributes) -> bytes:
    """Re-tag the original signed attribute bytes from ``[0]`` to SET.

    The stored encoding is reused byte for byte; re-encoding could change
    the attribute order and invalidate the signature.
    """
    der = signed_attrs.dump()
    return _SET_TAG + der[1:]


def _message_digest(signed_attrs: cms.CMSAttributes) -> Optional[bytes]:
    for attr in signed_attrs:
        if attr["type"].native != "message_digest":
            continue
        values = attr["values"]
        if len(values) != 1:
            return None
        return values[0].native
    return None


def _signer_info(info: cms.SignerInfo) -> SignerInfo:
    issuer: Optional[bytes] = None
    serial_number: Optional[int] = None
    key_identifier: Optional[bytes] = None

    sid = info["sid"]
    if sid.name == "issuer_and_serial_number":
        issuer = sid.chosen["issuer"].dump()
        serial_number = sid.chosen["serial_number"].native
    else:
        key_identifier = sid.chosen.native

    signed_attrs: Optional[bytes] = None
    message_digest: Optional[bytes] = None
    attrs = info["signed_attrs"]
    if _present(attrs):
        signed_attrs = _signed_attrs_der(attrs)
        message_digest = _message_digest(attrs)

    signature = info["signature"].native
    return SignerInfo(
        issuer=issuer,
        serial_number=serial_number,
        key_identifier=key_identifier,
        digest_algorithm=info["digest_algorithm"]["algorithm"].native,
        signature_algorithm=info["signature_algorithm"]["algorithm"].native,
        signature=signature or None,
        signed_attrs=signed_attrs,
        message_digest=message_digest,
    )


def _embedded_certificates(signed: cms.SignedData) -> Tuple[EmbeddedCertificate, ...]:
    certificates = signed["certificates"]
    if not _present(certificates):
        return ()

    embedded = []
    for choice in certificates:
        # Attribute and other certificate formats never identify a signer.
        if choice.name != "certificate":
            continue
        cert = choice.chosen
        embedded.append(EmbeddedCertificate(
            issuer=cert["tbs_certificate"]["issuer"].dump(),
            serial_number=cert.serial_number,
            key_identifier=cert.key_identifier,
            public_key_info=cert.public_key.dump(),
        ))
    return tuple(embedded)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def unarmor(data: bytes) -> bytes:
    """Extract the DER bytes of the first PEM block in *data*.

    Any text before the ``BEGIN`` line is ignored; the block label is not
    checked, so ``PKCS7``, ``CMS`` and ``SIGNED DATA`` armor are all
    accepted.

    Raises
    ------
    MalformedEnvelopeError
        If *data* has no complete BEGIN/END block or the base64 body is
        invalid.
    """
    if not data or not pem.detect(data):
        raise MalformedEnvelopeError.no_pem_block()
    try:
        _, _, der = pem.unarmor(data)
    except ValueError as exc:
        logger.debug("PEM unarmor failed: %s", exc)
        raise MalformedEnvelopeError.no_pem_block() from exc
    return der


def parse_signed_data(der: bytes) -> SignedEnvelope:
    """Decode a DER/BER ``ContentInfo`` wrapping ``SignedData``.

    Only explicit structural checks raise :class:`MalformedEnvelopeError`
    here.  Decoder faults on malformed input propagate as whatever
    ``asn1crypto`` raises; callers handling untrusted input must wrap this
    call in a fault boundary.
    """
    info = cms.ContentInfo.load(der, strict=True)

    content_type = info["content_type"].native
    if content_type != "signed_data":
        raise MalformedEnvelopeError.not_signed_data(str(content_type))

    signed = info["content"]
    encap = signed["encap_content_info"]
    # bytes() merges BER constructed chunks and never applies a content parser.
    content = bytes(encap["content"]) if _present(encap["content"]) else None

    return SignedEnvelope(
        content_type=str(encap["content_type"].native),
        content=content,
        signer_infos=tuple(_signer_info(si) for si in signed["signer_infos"]),
        certificates=_embedded_certificates(signed),
    )
