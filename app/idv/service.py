# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Verification pipeline orchestrator.

Each call runs one :class:`VerificationRequest` through four phases and
stops at the first failure:

1. **Load**: read the raw body.  Read failures answer 400.
2. **Decode**: unarmor and parse the PKCS7 envelope, attaching the
   trust store's candidates.  Malformed input answers 400.
3. **Verify**: resolve the signer and check the signature.  Signature
   and trust failures answer 403; missing envelope fields answer 400.
4. **Respond**: attach the verified content as UTF-8 text and answer
   200.  Content that cannot be represented answers 400 instead.

Every failure is converted into a :class:`VerificationResponse` here;
nothing raised while handling a request escapes to the transport.
Unexpected faults answer 500 with a generic message and are logged with
their traceback.  Verification is deterministic, so nothing is retried.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import AsyncIterator, BinaryIO, Union

from fastapi.concurrency import run_in_threadpool

from app.idv.exceptions import DocumentEncodingError, IdvError
from app.idv.models import ErrorCode, VerifyResponse, status_for
from app.idv.request import VerificationRequest
from app.idv.trust import TrustStore

logger = logging.getLogger("idv.service")

__all__ = ["VerificationResponse", "VerificationService"]

_INTERNAL_ERROR_MESSAGE = "Unexpected server error during verification"


@dataclass(frozen=True)
class VerificationResponse:
    """HTTP status code and body for one verification call."""

    status_code: int
    body: VerifyResponse

    @property
    def success(self) -> bool:
        return self.body.success

    @classmethod
    def ok(cls, document: str) -> "VerificationResponse":
        return cls(status_code=200, body=VerifyResponse(success=True, document=document))

    @classmethod
    def failure(cls, code: str, message: str) -> "VerificationResponse":
        return cls(
            status_code=status_for(code),
            body=VerifyResponse(success=False, errors=[message]),
        )


class VerificationService:
    """Verifies signed envelopes against a sealed :class:`TrustStore`."""

    def __init__(self, trust_store: TrustStore) -> None:
        self.trust_store = trust_store

    def handle(self, raw_body: Union[bytes, BinaryIO]) -> VerificationResponse:
        """Verify one request body and build its response."""
        request_id = str(uuid.uuid4())
        request = VerificationRequest()
        try:
            request.load(raw_body)
        except Exception as exc:
            return self._finish(request_id, self._fault_response(exc))
        return self._complete(request_id, request)

    async def handle_stream(self, stream: AsyncIterator[bytes]) -> VerificationResponse:
        """Like :meth:`handle`, reading the body from an async chunk stream.

        Decoding and verification are CPU bound and run in the threadpool
        so the event loop keeps serving other requests.
        """
        request_id = str(uuid.uuid4())
        request = VerificationRequest()
        try:
            await request.read(stream)
        except Exception as exc:
            return self._finish(request_id, self._fault_response(exc))
        return await run_in_threadpool(self._complete, request_id, request)

    # -- pipeline ----------------------------------------------------------

    def _complete(self, request_id: str, request: VerificationRequest) -> VerificationResponse:
        try:
            request.decode(self.trust_store.candidates())
            signer = request.verify()
            response = self._success_response(request.content())
        except Exception as exc:
            return self._finish(request_id, self._fault_response(exc))

        logger.info("Request %s signed by %s", request_id, signer.describe())
        return self._finish(request_id, response)

    @staticmethod
    def _success_response(content: bytes) -> VerificationResponse:
        try:
            document = content.decode("utf-8")
        except UnicodeDecodeError:
            error = DocumentEncodingError.not_utf8()
            return VerificationResponse.failure(error.code, error.message)
        return VerificationResponse.ok(document)

    @staticmethod
    def _fault_response(exc: Exception) -> VerificationResponse:
        if isinstance(exc, IdvError):
            return VerificationResponse.failure(exc.code, exc.message)
        logger.exception("Unhandled exception in verification pipeline")
        return VerificationResponse.failure(ErrorCode.INTERNAL_ERROR.value, _INTERNAL_ERROR_MESSAGE)

    @staticmethod
    def _finish(request_id: str, response: VerificationResponse) -> VerificationResponse:
        logger.info(
            "Verification complete: request_id=%s status=%d success=%s errors=%s",
            request_id,
            response.status_code,
            response.success,
            response.body.errors or [],
        )
        return response
