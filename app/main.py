# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""FastAPI application for the IDV Verifier.

This module defines the HTTP API and the process lifecycle.  The
application provides:

**HTTP Endpoints**

* ``POST /`` and ``POST /verify``: the whole request body is a
  PEM-armored PKCS7 signed envelope (for example an EC2 instance
  identity document signature).  The response is a JSON object with
  ``success``, and either ``document`` (the verified signed content) or
  ``errors``.  Status codes: 200 verified, 400 malformed input, 403
  signature invalid or signer untrusted.

* ``GET /healthz``: liveness/readiness probe reporting the number of
  trusted signing certificates.

**Startup**

The lifespan handler configures structured logging and builds the trust
store from ``IDV_CERTIFICATES`` (plus the embedded AWS public-cloud
certificate unless ``IDV_TRUST_AWS_PUBLIC_CLOUD=false``).  A certificate
that cannot be loaded aborts startup; the service never runs with a
partial trust store.

**Logging**

Structured JSON logging (or plain text with ``IDV_LOG_FORMAT=text``) is
configured at startup using the ``LOG_LEVEL`` setting.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import (
    HTTP_HOST,
    HTTP_PORT,
    LOG_FORMAT,
    LOG_LEVEL,
    TRUST_AWS_PUBLIC_CLOUD,
    TRUSTED_CERTIFICATE_PATHS,
)
from app.idv.service import VerificationService
from app.idv.trust import TrustStore, load_trust_store


# ======================================================================
# Structured JSON logging
# ======================================================================


class _JSONFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Produces one JSON object per log line with fields:

    * ``timestamp``: ISO 8601 UTC timestamp.
    * ``level``: Log level name (INFO, WARNING, ERROR, etc.).
    * ``logger``: Logger name.
    * ``message``: The formatted log message.
    * ``module``: Source module name.
    * ``funcName``: Source function name.

    If the log record carries an exception, it is serialized as an
    ``exception`` field containing the formatted traceback string.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def configure_logging(level: str = LOG_LEVEL, fmt: str = LOG_FORMAT) -> None:
    """Configure root logging for the application.

    Existing handlers are removed first to prevent duplicate output when
    running under uvicorn, which installs its own handlers.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    if fmt.lower() == "json":
        handler.setFormatter(_JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ======================================================================
# Application
# ======================================================================

logger = logging.getLogger("idv.main")


def _build_service() -> VerificationService:
    store = load_trust_store(TRUSTED_CERTIFICATE_PATHS, TRUST_AWS_PUBLIC_CLOUD)
    return VerificationService(store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and build the trust store before serving.

    An application created with an explicit trust store skips loading
    from configuration.  Any load failure propagates and stops startup.
    """
    configure_logging()
    if getattr(app.state, "service", None) is None:
        app.state.service = _build_service()

    logger.info(
        "IDV Verifier ready: HTTP=%s:%d, trusted_certificates=%d",
        HTTP_HOST, HTTP_PORT, len(app.state.service.trust_store),
    )
    yield
    logger.info("IDV Verifier shutdown complete")


def create_app(trust_store: Optional[TrustStore] = None) -> FastAPI:
    """Create the FastAPI application.

    Parameters
    ----------
    trust_store : TrustStore, optional
        A sealed trust store to verify against.  When omitted the store
        is loaded from configuration during startup.
    """
    app = FastAPI(
        title="IDV Verifier",
        description=(
            "Verifies PKCS7-signed identity documents against a fixed set "
            "of trusted signing certificates and returns the signed document."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    if trust_store is not None:
        app.state.service = VerificationService(trust_store)

    async def verify_endpoint(request: Request) -> JSONResponse:
        service: VerificationService = request.app.state.service
        response = await service.handle_stream(request.stream())
        return JSONResponse(content=response.body.to_content(), status_code=response.status_code)

    for path in ("/", "/verify"):
        app.add_api_route(
            path,
            verify_endpoint,
            methods=["POST"],
            summary="Verify a PKCS7-signed document",
            tags=["verification"],
        )

    @app.get("/healthz", summary="Health check", tags=["health"])
    async def healthz(request: Request) -> JSONResponse:
        service: Optional[VerificationService] = getattr(request.app.state, "service", None)
        count = len(service.trust_store) if service is not None else 0
        return JSONResponse(
            content={"status": "ok", "trusted_certificates": count},
            status_code=200,
        )

    return app


app = create_app()


# ======================================================================
# Application runner (for direct invocation)
# ======================================================================


def main() -> None:
    """Run the IDV Verifier using uvicorn.

    For production deployments, use uvicorn directly::

        uvicorn app.main:app --host 0.0.0.0 --port 8080
    """
    import uvicorn

    configure_logging()
    logger.info("Starting IDV Verifier: HTTP=%s:%d", HTTP_HOST, HTTP_PORT)

    uvicorn.run(
        "app.main:app",
        host=HTTP_HOST,
        port=HTTP_PORT,
        log_level=LOG_LEVEL.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
