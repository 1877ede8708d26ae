# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""IDV Verifier configuration.

All settings are read once at import time from environment variables.
The CLI may override the trust store inputs for a single invocation.
"""

import os

# =============================================================================
# TRUST STORE
# =============================================================================


def _parse_certificate_paths() -> list[str]:
    env = os.getenv("IDV_CERTIFICATES", "")
    return [p.strip() for p in env.split(",") if p.strip()]


TRUSTED_CERTIFICATE_PATHS: list[str] = _parse_certificate_paths()
TRUST_AWS_PUBLIC_CLOUD: bool = os.getenv("IDV_TRUST_AWS_PUBLIC_CLOUD", "true").lower() == "true"

# =============================================================================
# NETWORK
# =============================================================================

HTTP_HOST: str = os.getenv("IDV_HTTP_HOST", "0.0.0.0")
HTTP_PORT: int = int(os.getenv("IDV_HTTP_PORT", "8080"))

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("IDV_LOG_LEVEL", "INFO")
LOG_FORMAT: str = os.getenv("IDV_LOG_FORMAT", "json")
