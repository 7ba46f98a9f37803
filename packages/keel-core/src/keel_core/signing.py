"""Image signing and signature verification.

Signatures cover a canonical cosign-style "simple signing" payload naming
the image manifest digest, so a signature produced for digest ``d`` never
verifies for any other digest. Keys are asymmetric ECDSA P-256 (the cosign
key type) and verification needs only the public key.

Key Components:
    signature_payload: Canonical payload bytes for a digest
    Signer: Capability interface (sign / verify)
    KeyPairSigner: In-process ECDSA P-256 signing via ``cryptography``
    CosignSigner: cosign CLI ``sign-blob`` / ``verify-blob``
    SigningService: Preconditions, key scoping, signing lock, verify cache

Example:
    >>> pair = KeyPairSigner.generate_key_pair(b"secret")
    >>> signer = KeyPairSigner()
    >>> sig = signer.sign(digest, pair.private_pem, b"secret")
    >>> signer.verify(digest, sig, pair.public_pem)
    True
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import subprocess
import tempfile
import threading
from contextlib import ExitStack
from pathlib import Path
from typing import NamedTuple, Protocol, runtime_checkable

import structlog
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from keel_core.errors import KeyLoadError, SecretNotFoundError, SignatureError
from keel_core.locks import resource_lock
from keel_core.registry import Registry
from keel_core.schemas.artifacts import Image, Signature
from keel_core.schemas.config import SigningConfig
from keel_core.secrets import SecretStore, scoped_secret
from keel_core.telemetry.tracing import create_span

logger = structlog.get_logger(__name__)

ALGORITHM = "ecdsa-p256-sha256"

_SIGNATURE_TYPE = "cosign container image signature"


def signature_payload(digest: str) -> bytes:
    """Canonical payload signed for ``digest``.

    Examples:
        >>> signature_payload("sha256:" + "0" * 64)[:12]
        b'{"critical":'
    """
    document = {
        "critical": {
            "identity": {},
            "image": {"docker-manifest-digest": digest},
            "type": _SIGNATURE_TYPE,
        },
        "optional": None,
    }
    return json.dumps(document, sort_keys=True, separators=(",", ":")).encode("utf-8")


def public_key_id(public_pem: bytes) -> str:
    """Fingerprint of a PEM public key: first 16 hex chars of sha256(DER).

    Raises:
        KeyLoadError: If ``public_pem`` is not a PEM public key.
    """
    public_key = _load_public_key(public_pem)
    der = public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()[:16]


def _load_public_key(public_pem: bytes) -> ec.EllipticCurvePublicKey:
    try:
        key = serialization.load_pem_public_key(bytes(public_pem))
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise KeyLoadError("public key is not a valid PEM key") from e
    if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(key.curve, ec.SECP256R1):
        raise KeyLoadError("public key is not an ECDSA P-256 key")
    return key


class KeyPair(NamedTuple):
    """PEM-encoded key pair."""

    private_pem: bytes
    public_pem: bytes


@runtime_checkable
class Signer(Protocol):
    """Capability interface for signing image digests."""

    def sign(self, digest: str, private_key: bytes, password: bytes | None = None) -> Signature:
        """Sign ``digest``.

        Raises:
            KeyLoadError: If the private key cannot be loaded.
            SignatureError: If signing fails.
        """
        ...

    def verify(self, digest: str, signature: Signature, public_key: bytes) -> bool:
        """Whether ``signature`` is valid for ``digest`` under ``public_key``."""
        ...


class KeyPairSigner:
    """ECDSA P-256 / SHA-256 signing in process."""

    algorithm = ALGORITHM

    @staticmethod
    def generate_key_pair(password: bytes | None = None) -> KeyPair:
        """Generate a new P-256 key pair, encrypting the private key if ``password`` is set."""
        private_key = ec.generate_private_key(ec.SECP256R1())
        encryption: serialization.KeySerializationEncryption = (
            serialization.BestAvailableEncryption(password)
            if password
            else serialization.NoEncryption()
        )
        private_pem = private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            encryption,
        )
        public_pem = private_key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return KeyPair(private_pem=private_pem, public_pem=public_pem)

    def sign(self, digest: str, private_key: bytes, password: bytes | None = None) -> Signature:
        try:
            key = serialization.load_pem_private_key(bytes(private_key), password=password or None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyLoadError("private key could not be loaded (wrong password or format)") from e
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(key.curve, ec.SECP256R1):
            raise KeyLoadError("private key is not an ECDSA P-256 key")

        signature_bytes = key.sign(signature_payload(digest), ec.ECDSA(hashes.SHA256()))
        public_pem = key.public_key().public_bytes(
            serialization.Encoding.PEM,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return Signature(
            image_digest=digest,
            signer_key_id=public_key_id(public_pem),
            signature_bytes=signature_bytes,
            algorithm=self.algorithm,
        )

    def verify(self, digest: str, signature: Signature, public_key: bytes) -> bool:
        if signature.image_digest != digest:
            return False
        key = _load_public_key(public_key)
        try:
            key.verify(signature.signature_bytes, signature_payload(digest), ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return False
        return True


class CosignSigner:
    """Signing through the cosign CLI (``sign-blob`` / ``verify-blob``).

    Key material is written to a private temporary directory for the
    duration of one call and removed afterwards. cosign signs the sha256 of
    the payload with ECDSA P-256, so its signatures also verify with
    ``KeyPairSigner``.
    """

    algorithm = ALGORITHM

    def __init__(self, cosign: str = "cosign", timeout_seconds: float = 60.0) -> None:
        self.cosign = cosign
        self.timeout_seconds = timeout_seconds

    def sign(self, digest: str, private_key: bytes, password: bytes | None = None) -> Signature:
        env = {**os.environ, "COSIGN_PASSWORD": (password or b"").decode("utf-8")}
        with tempfile.TemporaryDirectory(prefix="keel-cosign-") as tmpdir:
            tmp = Path(tmpdir)
            key_file = tmp / "cosign.key"
            payload_file = tmp / "payload.json"
            signature_file = tmp / "payload.sig"

            fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(bytes(private_key))
            payload_file.write_bytes(signature_payload(digest))

            self._run(
                [
                    self.cosign,
                    "sign-blob",
                    "--yes",
                    "--key",
                    str(key_file),
                    "--output-signature",
                    str(signature_file),
                    "--tlog-upload=false",
                    str(payload_file),
                ],
                digest,
                env,
            )
            if not signature_file.exists():
                raise SignatureError(digest, "cosign did not produce signature output")
            signature_bytes = base64.b64decode(signature_file.read_text().strip())

            public = self._run(
                [self.cosign, "public-key", "--key", str(key_file)],
                digest,
                env,
            )
            key_id = public_key_id(public.stdout.encode("utf-8"))

        return Signature(
            image_digest=digest,
            signer_key_id=key_id,
            signature_bytes=signature_bytes,
            algorithm=self.algorithm,
        )

    def verify(self, digest: str, signature: Signature, public_key: bytes) -> bool:
        if signature.image_digest != digest:
            return False
        with tempfile.TemporaryDirectory(prefix="keel-cosign-") as tmpdir:
            tmp = Path(tmpdir)
            key_file = tmp / "cosign.pub"
            payload_file = tmp / "payload.json"
            signature_file = tmp / "payload.sig"
            key_file.write_bytes(bytes(public_key))
            payload_file.write_bytes(signature_payload(digest))
            signature_file.write_text(base64.b64encode(signature.signature_bytes).decode("ascii"))

            try:
                result = subprocess.run(
                    [
                        self.cosign,
                        "verify-blob",
                        "--key",
                        str(key_file),
                        "--signature",
                        str(signature_file),
                        "--insecure-ignore-tlog=true",
                        str(payload_file),
                    ],
                    capture_output=True,
                    text=True,
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except FileNotFoundError as e:
                raise SignatureError(digest, f"{self.cosign} not found in PATH") from e
            except subprocess.TimeoutExpired as e:
                raise SignatureError(digest, "cosign verify-blob timed out") from e
        return result.returncode == 0

    def _run(
        self,
        cmd: list[str],
        digest: str,
        env: dict[str, str],
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                cmd,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as e:
            raise SignatureError(digest, f"{self.cosign} not found in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise SignatureError(digest, f"cosign {cmd[1]} timed out") from e
        if result.returncode != 0:
            stderr = result.stderr.strip()
            if "decrypt" in stderr.lower() or "password" in stderr.lower():
                raise KeyLoadError("cosign could not decrypt the private key")
            raise SignatureError(digest, f"cosign {cmd[1]} failed: {stderr[:500]}")
        return result


class SigningService:
    """Signs pushed images and verifies their signatures.

    Private key material is fetched from the secret store for each signing
    call and zeroed afterwards. Signing is serialized per key across runs.
    Verification is deterministic and never retried; positive results are
    cached per ``(digest, signature, key)``.
    """

    def __init__(
        self,
        signer: Signer,
        secrets: SecretStore,
        config: SigningConfig,
        registry: Registry,
        lock_dir: Path | None = None,
    ) -> None:
        self.signer = signer
        self.secrets = secrets
        self.config = config
        self.registry = registry
        self.lock_dir = lock_dir
        self._verified: set[tuple[str, str, str]] = set()
        self._cache_lock = threading.Lock()

    def sign(self, image: Image) -> Signature:
        """Sign the manifest digest of a pushed image.

        Raises:
            SignatureError: If the image has no digest or is not in the registry.
            KeyLoadError: If key material cannot be loaded.
            SecretNotFoundError: If the private key secret is missing.
            ConcurrentLockError: If the signing lock is not acquired in time.
        """
        if image.digest is None:
            raise SignatureError(image.reference, "image not pushed (no digest)")
        if not self.registry.exists(image):
            raise SignatureError(image.pinned_reference, "image not pushed to the registry")

        digest = image.digest
        with create_span(
            "keel.signing.sign",
            attributes={"keel.image.reference": image.reference, "keel.image.digest": digest},
        ) as span:
            with (
                resource_lock(
                    "signing-key",
                    self.config.private_key_secret,
                    timeout_seconds=self.config.lock_timeout_seconds,
                    lock_dir=self.lock_dir,
                ),
                ExitStack() as stack,
            ):
                private_key = stack.enter_context(
                    scoped_secret(self.secrets, self.config.private_key_secret)
                )
                password = self._optional_secret(stack, self.config.password_secret)
                signature = self.signer.sign(
                    digest,
                    bytes(private_key),
                    bytes(password) if password is not None else None,
                )
            span.set_attribute("keel.signing.key_id", signature.signer_key_id)

        logger.info(
            "image_signed",
            image=image.reference,
            digest=digest,
            key_id=signature.signer_key_id,
        )
        return signature

    def public_key(self) -> bytes:
        """Verification key from ``public_key_path`` or the secret store.

        Raises:
            KeyLoadError: If no public key is configured or found.
        """
        path = self.config.public_key_path
        if path is not None:
            try:
                return Path(path).read_bytes()
            except OSError as e:
                raise KeyLoadError(f"cannot read {path}", key_ref=str(path)) from e
        name = self.config.public_key_secret
        if name:
            try:
                return self.secrets.get(name)
            except SecretNotFoundError as e:
                raise KeyLoadError("public key secret not found", key_ref=name) from e
        raise KeyLoadError("no public key configured")

    def verify(self, digest: str, signature: Signature, public_key: bytes | None = None) -> bool:
        """Whether ``signature`` is valid for ``digest``."""
        key = public_key if public_key is not None else self.public_key()
        cache_key = (digest, hashlib.sha256(signature.signature_bytes).hexdigest(), public_key_id(key))
        with self._cache_lock:
            if cache_key in self._verified:
                return True

        valid = self.signer.verify(digest, signature, key)
        if valid:
            with self._cache_lock:
                self._verified.add(cache_key)
        logger.debug("signature_verified", digest=digest, valid=valid, key_id=signature.signer_key_id)
        return valid

    def verify_or_raise(self, image: Image, signature: Signature | None) -> None:
        """Re-verify the signature of ``image`` before deployment.

        Raises:
            SignatureError: If there is no signature or it does not verify.
        """
        if image.digest is None:
            raise SignatureError(image.reference, "image has no digest")
        if signature is None:
            raise SignatureError(image.pinned_reference, "no signature recorded for image")
        with create_span("keel.signing.verify", attributes={"keel.image.digest": image.digest}):
            if not self.verify(image.digest, signature):
                raise SignatureError(
                    image.pinned_reference,
                    "signature does not match the image digest or the public key",
                )

    def _optional_secret(self, stack: ExitStack, name: str | None) -> bytearray | None:
        if not name:
            return None
        try:
            return stack.enter_context(scoped_secret(self.secrets, name))
        except SecretNotFoundError:
            logger.debug("signing_password_absent", secret=name)
            return None


__all__ = [
    "ALGORITHM",
    "CosignSigner",
    "KeyPair",
    "KeyPairSigner",
    "Signer",
    "SigningService",
    "public_key_id",
    "signature_payload",
]
