# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""IDV Verifier exceptions mapped to error codes.

Messages carried by these exceptions are returned to the caller, so they
are fixed strings.  Diagnostic detail belongs in the server log.
"""


class IdvError(Exception):
    """Base exception for identity document verification errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class RequestReadError(IdvError):
    """The request body could not be read from the transport."""

    @classmethod
    def read_failed(cls) -> "RequestReadError":
        return cls(code="BODY_READ_FAILED", message="Error reading request body")


class MalformedEnvelopeError(IdvError):
    """PEM armor or PKCS7 structure could not be decoded, or is incomplete."""

    @classmethod
    def no_pem_block(cls) -> "MalformedEnvelopeError":
        return cls(code="ENVELOPE_MALFORMED", message="Request body does not contain a PEM block")

    @classmethod
    def parse_failed(cls) -> "MalformedEnvelopeError":
        return cls(code="ENVELOPE_MALFORMED", message="Error parsing PKCS7 PEM block")

    @classmethod
    def not_signed_data(cls, content_type: str) -> "MalformedEnvelopeError":
        return cls(
            code="ENVELOPE_MALFORMED",
            message=f"PKCS7 content type {content_type!r} is not signed data",
        )

    @classmethod
    def missing_field(cls, field: str) -> "MalformedEnvelopeError":
        return cls(code="ENVELOPE_MALFORMED", message=f"PKCS7 envelope is missing {field}")


class MalformedCertificateError(IdvError):
    """A trusted certificate could not be decoded."""

    @classmethod
    def no_pem_block(cls) -> "MalformedCertificateError":
        return cls(code="CERTIFICATE_MALFORMED", message="No PEM certificate block found")

    @classmethod
    def invalid(cls, reason: str) -> "MalformedCertificateError":
        return cls(code="CERTIFICATE_MALFORMED", message=f"Invalid certificate: {reason}")


class SignatureInvalidError(IdvError):
    """The envelope signature or content digest does not verify."""

    @classmethod
    def digest_mismatch(cls) -> "SignatureInvalidError":
        return cls(code="SIGNATURE_INVALID", message="PKCS7 content digest does not match signed attributes")

    @classmethod
    def verification_failed(cls) -> "SignatureInvalidError":
        return cls(code="SIGNATURE_INVALID", message="PKCS7 signature verification failed")

    @classmethod
    def unsupported_algorithm(cls, algorithm: str) -> "SignatureInvalidError":
        return cls(code="SIGNATURE_INVALID", message=f"PKCS7 uses unsupported algorithm: {algorithm}")


class UntrustedSignerError(IdvError):
    """The envelope signer is not one of the trusted certificates."""

    @classmethod
    def no_certificate(cls) -> "UntrustedSignerError":
        return cls(code="SIGNER_UNTRUSTED", message="No trusted certificate for signer")

    @classmethod
    def ambiguous(cls, count: int) -> "UntrustedSignerError":
        return cls(
            code="SIGNER_UNTRUSTED",
            message=f"PKCS7 envelope declares {count} signers; exactly one is accepted",
        )


class DocumentEncodingError(IdvError):
    """The verified content cannot be carried in the response body."""

    @classmethod
    def not_utf8(cls) -> "DocumentEncodingError":
        return cls(code="DOCUMENT_UNREPRESENTABLE", message="Signed document is not valid UTF-8 text")


class TrustStoreError(IdvError):
    """The trust store could not be built or was used incorrectly."""

    @classmethod
    def unreadable(cls, path: str) -> "TrustStoreError":
        return cls(code="TRUST_STORE_INVALID", message=f"Cannot read certificate file {path}")

    @classmethod
    def empty(cls) -> "TrustStoreError":
        return cls(code="TRUST_STORE_INVALID", message="Trust store has no signing certificates")

    @classmethod
    def sealed(cls) -> "TrustStoreError":
        return cls(code="TRUST_STORE_INVALID", message="Trust store is sealed; certificates cannot be added")


class RequestStateError(RuntimeError):
    """A VerificationRequest operation was called out of order."""

    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(f"{operation}() is not allowed in state {state}")
