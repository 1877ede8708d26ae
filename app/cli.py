# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""IDV CLI - serve the verifier or verify a signed document offline.

Commands:
    idv serve                     Run the HTTP service
    idv verify <source> -c CERT   Verify a PEM-armored PKCS7 envelope
"""

import json
import sys
from pathlib import Path
from typing import List, Optional

import typer

from app import config
from app.idv.exceptions import IdvError
from app.idv.service import VerificationService
from app.idv.trust import load_trust_store

# Exit codes
EXIT_SUCCESS = 0
EXIT_VERIFICATION_FAILURE = 1
EXIT_IO_ERROR = 2
EXIT_TRUST_STORE_ERROR = 3

app = typer.Typer(
    name="idv",
    help="IDV Verifier - PKCS7 signed identity document verification.",
    no_args_is_help=True,
)


def _read_source(source: str) -> bytes:
    """Read the envelope from a file path or '-' for stdin."""
    try:
        if source == "-":
            return sys.stdin.buffer.read()
        return Path(source).read_bytes()
    except OSError as e:
        typer.echo(f"Error reading input: {e}", err=True)
        raise typer.Exit(EXIT_IO_ERROR) from e


@app.command("verify")
def verify_cmd(
    source: str = typer.Argument(
        ...,
        help="File holding the PEM-armored PKCS7 envelope, or '-' for stdin",
    ),
    certificates: Optional[List[Path]] = typer.Option(
        None,
        "--certificate",
        "-c",
        help="PEM file of a trusted signing certificate (repeatable)",
    ),
    no_aws: bool = typer.Option(
        False,
        "--no-aws",
        help="Do not trust the embedded AWS public-cloud certificate",
    ),
    pretty: bool = typer.Option(
        False,
        "--pretty",
        help="Indent JSON output",
    ),
) -> None:
    """Verify a signed envelope and print the response as JSON.

    Examples:
        idv verify signature.pem
        idv verify - -c signer.pem --no-aws < signature.pem
    """
    try:
        store = load_trust_store(
            certificates or [],
            include_aws_public_cloud=config.TRUST_AWS_PUBLIC_CLOUD and not no_aws,
        )
    except IdvError as e:
        typer.echo(f"Error loading trust store: {e.message}", err=True)
        raise typer.Exit(EXIT_TRUST_STORE_ERROR) from e

    response = VerificationService(store).handle(_read_source(source))
    result = {"status": response.status_code, **response.body.to_content()}
    typer.echo(json.dumps(result, indent=2 if pretty else None))

    if not response.success:
        raise typer.Exit(EXIT_VERIFICATION_FAILURE)


@app.command("serve")
def serve_cmd(
    certificates: Optional[List[Path]] = typer.Option(
        None,
        "--certificate",
        "-c",
        help="PEM file of a trusted signing certificate (repeatable); "
             "defaults to IDV_CERTIFICATES",
    ),
    host: str = typer.Option(config.HTTP_HOST, "--host", help="Bind address"),
    port: int = typer.Option(config.HTTP_PORT, "--port", "-p", help="Bind port"),
    no_aws: bool = typer.Option(
        False,
        "--no-aws",
        help="Do not trust the embedded AWS public-cloud certificate",
    ),
) -> None:
    """Run the verification service with uvicorn."""
    import uvicorn

    from app.main import configure_logging, create_app

    configure_logging()
    paths = certificates if certificates else config.TRUSTED_CERTIFICATE_PATHS
    try:
        store = load_trust_store(paths, include_aws_public_cloud=config.TRUST_AWS_PUBLIC_CLOUD and not no_aws)
    except IdvError as e:
        typer.echo(f"Error loading trust store: {e.message}", err=True)
        raise typer.Exit(EXIT_TRUST_STORE_ERROR) from e

    uvicorn.run(
        create_app(store),
        host=host,
        port=port,
        log_level=config.LOG_LEVEL.lower(),
    )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
