# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Per-request verification lifecycle.

A :class:`VerificationRequest` carries one inbound body through an
explicit state machine::

    EMPTY -> BODY_LOADED -> ENVELOPE_PARSED -> VERIFIED

Every operation checks the current state first; calling one out of order
raises :class:`RequestStateError`, which callers treat as an internal
fault.  A failed transition moves the request to ``FAILED``, from which
no operation is allowed.

The body is attacker-controlled.  :meth:`VerificationRequest.decode` is
a fault boundary: anything the PEM or ASN.1 decoder raises is logged
with its traceback and replaced by a generic
:class:`MalformedEnvelopeError`, so decoder internals never reach the
caller.
"""

from __future__ import annotations

import hmac
import logging
from enum import Enum
from typing import AsyncIterator, BinaryIO, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed25519, padding, rsa

from app.idv.envelope import SignedEnvelope, SignerInfo, parse_signed_data, unarmor
from app.idv.exceptions import (
    MalformedEnvelopeError,
    RequestReadError,
    RequestStateError,
    SignatureInvalidError,
    UntrustedSignerError,
)
from app.idv.trust import TrustedCertificate

logger = logging.getLogger("idv.request")

__all__ = ["RequestState", "VerificationRequest"]

_DIGESTS = {
    "md5": hashes.MD5,
    "sha1": hashes.SHA1,
    "sha224": hashes.SHA224,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


class RequestState(str, Enum):
    EMPTY = "EMPTY"
    BODY_LOADED = "BODY_LOADED"
    ENVELOPE_PARSED = "ENVELOPE_PARSED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


# ---------------------------------------------------------------------------
# Signer resolution and signature checks
# ---------------------------------------------------------------------------

def _identifies(signer: SignerInfo, issuer: bytes, serial_number: int,
                key_identifier: Optional[bytes]) -> bool:
    if signer.key_identifier is not None:
        return key_identifier is not None and hmac.compare_digest(signer.key_identifier, key_identifier)
    return signer.serial_number == serial_number and signer.issuer == issuer


def _resolve_signer(
    envelope: SignedEnvelope,
    signer: SignerInfo,
    candidates: Sequence[TrustedCertificate],
) -> TrustedCertificate:
    """Find the single trusted certificate that produced *signer*.

    Matching is by signer identifier.  When the envelope also embeds the
    signer's certificate, its public key must equal the candidate's, so a
    certificate that merely reuses a trusted issuer name and serial is
    rejected.
    """
    matches = [
        c for c in candidates
        if _identifies(signer, c.issuer, c.serial_number, c.key_identifier)
    ]

    embedded = [
        e for e in envelope.certificates
        if _identifies(signer, e.issuer, e.serial_number, e.key_identifier)
    ]
    if embedded:
        keys = {e.public_key_info for e in embedded}
        matches = [c for c in matches if c.public_key_info in keys]

    if len(matches) != 1:
        logger.info("Signer matched %d trusted certificate(s)", len(matches))
        raise UntrustedSignerError.no_certificate()
    return matches[0]


def _check_signature(public_key, signer: SignerInfo, data: bytes, digest: hashes.HashAlgorithm) -> None:
    if isinstance(public_key, rsa.RSAPublicKey):
        if signer.signature_algorithm == "rsassa_pss":
            pad = padding.PSS(mgf=padding.MGF1(digest), salt_length=padding.PSS.AUTO)
        else:
            pad = padding.PKCS1v15()
        public_key.verify(signer.signature, data, pad, digest)
    elif isinstance(public_key, ec.EllipticCurvePublicKey):
        public_key.verify(signer.signature, data, ec.ECDSA(digest))
    elif isinstance(public_key, dsa.DSAPublicKey):
        public_key.verify(signer.signature, data, digest)
    elif isinstance(public_key, ed25519.Ed25519PublicKey):
        public_key.verify(signer.signature, data)
    else:
        raise SignatureInvalidError.unsupported_algorithm(type(public_key).__name__)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------

class VerificationRequest:
    """One signed envelope on its way from raw bytes to verified content."""

    def __init__(self) -> None:
        self._state = RequestState.EMPTY
        self._body: Optional[bytes] = None
        self._envelope: Optional[SignedEnvelope] = None
        self._candidates: Tuple[TrustedCertificate, ...] = ()
        self._signer: Optional[TrustedCertificate] = None

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def body(self) -> Optional[bytes]:
        return self._body

    @property
    def envelope(self) -> Optional[SignedEnvelope]:
        return self._envelope

    @property
    def candidates(self) -> Tuple[TrustedCertificate, ...]:
        return self._candidates

    @property
    def signer(self) -> Optional[TrustedCertificate]:
        """The trusted certificate that signed the envelope, once verified."""
        return self._signer

    def _require(self, operation: str, state: RequestState) -> None:
        if self._state != state:
            raise RequestStateError(operation, self._state.value)

    def _fail(self) -> None:
        self._state = RequestState.FAILED

    # -- loading -----------------------------------------------------------

    def load(self, source: Union[bytes, bytearray, memoryview, BinaryIO]) -> None:
        """Store the raw envelope bytes.

        *source* is either the body itself or a binary stream that is read
        to the end.

        Raises
        ------
        RequestReadError
            If reading the stream fails.
        """
        self._require("load", RequestState.EMPTY)

        if isinstance(source, (bytes, bytearray, memoryview)):
            body = bytes(source)
        else:
            try:
                body = source.read()
            except OSError as exc:
                logger.warning("Error reading request body: %s", exc)
                self._fail()
                raise RequestReadError.read_failed() from exc

        self._body = body
        self._state = RequestState.BODY_LOADED

    async def read(self, stream: AsyncIterator[bytes]) -> None:
        """Collect the body from an async chunk iterator.

        A transport failure, including the client disconnecting, leaves
        no partial body behind.

        Raises
        ------
        RequestReadError
            If the stream raises before it is exhausted.
        """
        self._require("read", RequestState.EMPTY)

        chunks = []
        try:
            async for chunk in stream:
                chunks.append(chunk)
        except Exception as exc:
            logger.warning("Error reading request body: %r", exc)
            self._fail()
            raise RequestReadError.read_failed() from exc

        self._body = b"".join(chunks)
        self._state = RequestState.BODY_LOADED

    # -- decoding ----------------------------------------------------------

    def decode(self, candidates: Sequence[TrustedCertificate]) -> SignedEnvelope:
        """Decode the PEM-armored PKCS7 body and attach trust candidates.

        Raises
        ------
        MalformedEnvelopeError
            If there is no PEM block, the ASN.1 structure is not a PKCS7
            SignedData, or the decoder fails in any other way.
        """
        self._require("decode", RequestState.BODY_LOADED)

        try:
            der = unarmor(self._body)
            envelope = parse_signed_data(der)
        except MalformedEnvelopeError:
            self._fail()
            raise
        except Exception:
            logger.exception("Fault parsing PKCS7 PEM block in request")
            self._fail()
            raise MalformedEnvelopeError.parse_failed() from None

        self._envelope = envelope
        self._candidates = tuple(candidates)
        self._state = RequestState.ENVELOPE_PARSED
        return envelope

    # -- verification ------------------------------------------------------

    def verify(self) -> TrustedCertificate:
        """Verify the envelope signature against the attached candidates.

        Only the single declared signer is verified; envelopes with more
        than one signer-info are rejected as ambiguous.

        Returns
        -------
        TrustedCertificate
            The candidate that signed the envelope.

        Raises
        ------
        MalformedEnvelopeError
            If content, signer-info or signature is missing.
        UntrustedSignerError
            If the signer is not exactly one trusted certificate.
        SignatureInvalidError
            If the digest or signature does not verify.
        """
        self._require("verify", RequestState.ENVELOPE_PARSED)
        try:
            signer = self._verify_envelope(self._envelope)
        except Exception:
            self._fail()
            raise

        self._signer = signer
        self._state = RequestState.VERIFIED
        return signer

    def _verify_envelope(self, envelope: SignedEnvelope) -> TrustedCertificate:
        if not envelope.signer_infos:
            raise MalformedEnvelopeError.missing_field("signer information")
        if len(envelope.signer_infos) > 1:
            raise UntrustedSignerError.ambiguous(len(envelope.signer_infos))
        if envelope.content is None:
            raise MalformedEnvelopeError.missing_field("signed content")

        signer_info = envelope.signer_infos[0]
        if signer_info.signature is None:
            raise MalformedEnvelopeError.missing_field("signature")

        trusted = _resolve_signer(envelope, signer_info, self._candidates)

        digest_cls = _DIGESTS.get(signer_info.digest_algorithm)
        if digest_cls is None:
            raise SignatureInvalidError.unsupported_algorithm(signer_info.digest_algorithm)
        digest = digest_cls()

        signed_bytes = envelope.content
        if signer_info.signed_attrs is not None:
            if signer_info.message_digest is None:
                raise MalformedEnvelopeError.missing_field("message digest attribute")
            h = hashes.Hash(digest_cls())
            h.update(envelope.content)
            if not hmac.compare_digest(h.finalize(), signer_info.message_digest):
                raise SignatureInvalidError.digest_mismatch()
            signed_bytes = signer_info.signed_attrs

        try:
            _check_signature(trusted.certificate.public_key(), signer_info, signed_bytes, digest)
        except (InvalidSignature, UnsupportedAlgorithm, ValueError, TypeError) as exc:
            logger.info("Signature check failed for %s: %r", trusted.fingerprint, exc)
            raise SignatureInvalidError.verification_failed() from exc

        logger.debug("PKCS7 signature verified by %s", trusted.fingerprint)
        return trusted

    # -- result ------------------------------------------------------------

    def content(self) -> bytes:
        """The verified signed content."""
        self._require("content", RequestState.VERIFIED)
        return self._envelope.content
