# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""IDV Verifier API models and error code table."""

from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, model_validator


# =============================================================================
# Error Codes
# =============================================================================

class ErrorCode(str, Enum):
    BODY_READ_FAILED = "BODY_READ_FAILED"
    ENVELOPE_MALFORMED = "ENVELOPE_MALFORMED"
    CERTIFICATE_MALFORMED = "CERTIFICATE_MALFORMED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    SIGNER_UNTRUSTED = "SIGNER_UNTRUSTED"
    DOCUMENT_UNREPRESENTABLE = "DOCUMENT_UNREPRESENTABLE"
    TRUST_STORE_INVALID = "TRUST_STORE_INVALID"
    INTERNAL_ERROR = "INTERNAL_ERROR"


ERROR_STATUS: Dict[str, int] = {
    ErrorCode.BODY_READ_FAILED: 400,
    ErrorCode.ENVELOPE_MALFORMED: 400,
    ErrorCode.CERTIFICATE_MALFORMED: 400,
    ErrorCode.DOCUMENT_UNREPRESENTABLE: 400,
    ErrorCode.SIGNATURE_INVALID: 403,
    ErrorCode.SIGNER_UNTRUSTED: 403,
}


def status_for(code: str) -> int:
    """HTTP status for an error code; unknown codes are internal faults."""
    return ERROR_STATUS.get(code, 500)


# =============================================================================
# Response
# =============================================================================

class VerifyResponse(BaseModel):
    success: bool
    errors: Optional[List[str]] = None
    document: Optional[str] = None

    @model_validator(mode="after")
    def _check_outcome(self) -> "VerifyResponse":
        if self.success:
            if self.document is None:
                raise ValueError("successful response requires a document")
            if self.errors:
                raise ValueError("successful response cannot carry errors")
        else:
            if self.document is not None:
                raise ValueError("failed response cannot carry a document")
            if not self.errors:
                raise ValueError("failed response requires at least one error")
        return self

    def to_content(self) -> dict:
        """JSON body with absent fields omitted."""
        return self.model_dump(exclude_none=True)
