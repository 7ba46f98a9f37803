"""Signing key commands.

Example:
    $ keel keys generate --output-dir ./keys
    $ keel verify sha256:3b4f... --public-key keys/keel.pub
"""

from __future__ import annotations

import os
from pathlib import Path

import click
from pydantic import ValidationError

from keel_core.cli import _factory
from keel_core.cli.runs import pipeline_config
from keel_core.cli.utils import ExitCode, error_exit, info, keel_error_exit, success
from keel_core.errors import KeelError
from keel_core.schemas.artifacts import DIGEST_PATTERN, Signature
from keel_core.signing import KeyPairSigner, public_key_id

PRIVATE_KEY_FILE = "keel.key"
PUBLIC_KEY_FILE = "keel.pub"


@click.group(name="keys", help="Signing key management.")
def keys() -> None:
    pass


@keys.command(name="generate", help="Generate an ECDSA P-256 signing key pair.")
@click.option(
    "--output-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
)
@click.option(
    "--password",
    envvar="KEEL_KEY_PASSWORD",
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    default="",
    show_default=False,
    help="Password encrypting the private key (empty for none).",
)
@click.option("--force", is_flag=True, help="Overwrite existing key files.")
def generate_command(output_dir: Path, password: str, force: bool) -> None:
    private_path = output_dir / PRIVATE_KEY_FILE
    public_path = output_dir / PUBLIC_KEY_FILE
    for path in (private_path, public_path):
        if path.exists() and not force:
            error_exit(
                "Key file already exists (use --force to overwrite)",
                exit_code=ExitCode.CONFIGURATION_ERROR,
                path=str(path),
            )

    pair = KeyPairSigner.generate_key_pair(password.encode("utf-8") if password else None)
    output_dir.mkdir(parents=True, exist_ok=True)

    fd = os.open(private_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(pair.private_pem)
    public_path.write_bytes(pair.public_pem)

    success(f"Key id: {public_key_id(pair.public_pem)}")
    info(f"Private key: {private_path}")
    info(f"Public key:  {public_path}")
    info(
        "Store the private key as secret KEEL_SECRET_SIGNING_PRIVATE_KEY "
        "(and its password as KEEL_SECRET_SIGNING_KEY_PASSWORD); "
        f"keep {PUBLIC_KEY_FILE} for verification."
    )


@click.command(name="verify", help="Verify the signature of an image digest.")
@click.argument("digest")
@click.option(
    "--public-key",
    "public_key_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="PEM public key (default: signing.public_key_path or the public key secret).",
)
@click.option(
    "--signature-file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Signature JSON (default: the signature recorded for the digest).",
)
@click.pass_context
def verify_command(
    ctx: click.Context,
    digest: str,
    public_key_path: Path | None,
    signature_file: Path | None,
) -> None:
    if not DIGEST_PATTERN.match(digest):
        error_exit("Invalid digest (expected sha256:<64 hex>)", exit_code=ExitCode.CONFIGURATION_ERROR)
    config = pipeline_config(ctx)

    try:
        if signature_file is not None:
            try:
                signature: Signature | None = Signature.model_validate_json(
                    signature_file.read_bytes()
                )
            except ValidationError:
                error_exit(
                    "Signature file is not a valid signature record",
                    exit_code=ExitCode.CONFIGURATION_ERROR,
                    path=str(signature_file),
                )
        else:
            signature = _factory.provenance_store(config).load_signature(digest)
        if signature is None:
            error_exit("No signature recorded for digest", exit_code=ExitCode.SIGNATURE_ERROR, digest=digest)

        service = _factory.build_pipeline(config).signing
        public_key = public_key_path.read_bytes() if public_key_path is not None else None
        valid = service.verify(digest, signature, public_key)
    except KeelError as e:
        keel_error_exit(e)

    if not valid:
        error_exit(
            "Signature does not verify",
            exit_code=ExitCode.SIGNATURE_ERROR,
            digest=digest,
            key_id=signature.signer_key_id,
        )
    success(f"Verified {digest} (key id {signature.signer_key_id})")


__all__ = ["generate_command", "keys", "verify_command"]
