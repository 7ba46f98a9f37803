"""Unit tests for image signing and verification."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from keel_core.errors import KeyLoadError, SignatureError
from keel_core.registry import InMemoryRegistry
from keel_core.schemas.artifacts import Image, Signature
from keel_core.schemas.config import SigningConfig
from keel_core.secrets import MappingSecretStore
from keel_core.signing import (
    ALGORITHM,
    KeyPair,
    KeyPairSigner,
    Signer,
    SigningService,
    public_key_id,
    signature_payload,
)
from testing.fakes import KEY_PASSWORD, REPOSITORY, digest_of

DIGEST = digest_of("manifest")
OTHER_DIGEST = digest_of("other manifest")


class CountingSigner(KeyPairSigner):
    """Key pair signer counting verification calls."""

    def __init__(self) -> None:
        self.verify_calls = 0

    def verify(self, digest: str, signature: Signature, public_key: bytes) -> bool:
        self.verify_calls += 1
        return super().verify(digest, signature, public_key)


class TestSignaturePayload:
    def test_payload_is_deterministic(self) -> None:
        assert signature_payload(DIGEST) == signature_payload(DIGEST)

    def test_payload_names_the_digest(self) -> None:
        document = json.loads(signature_payload(DIGEST))

        assert document["critical"]["image"]["docker-manifest-digest"] == DIGEST
        assert document["critical"]["type"] == "cosign container image signature"

    def test_payloads_differ_per_digest(self) -> None:
        assert signature_payload(DIGEST) != signature_payload(OTHER_DIGEST)


class TestPublicKeyId:
    def test_id_is_stable(self, key_pair: KeyPair) -> None:
        key_id = public_key_id(key_pair.public_pem)

        assert key_id == public_key_id(key_pair.public_pem)
        assert len(key_id) == 16

    def test_rejects_non_pem(self) -> None:
        with pytest.raises(KeyLoadError):
            public_key_id(b"not a key")


class TestKeyPairSigner:
    def test_satisfies_the_protocol(self) -> None:
        assert isinstance(KeyPairSigner(), Signer)

    def test_sign_and_verify(self, key_pair: KeyPair) -> None:
        signer = KeyPairSigner()

        signature = signer.sign(DIGEST, key_pair.private_pem, KEY_PASSWORD)

        assert signature.image_digest == DIGEST
        assert signature.algorithm == ALGORITHM
        assert signature.signer_key_id == public_key_id(key_pair.public_pem)
        assert signer.verify(DIGEST, signature, key_pair.public_pem)

    def test_signature_does_not_verify_for_another_digest(self, key_pair: KeyPair) -> None:
        signer = KeyPairSigner()
        signature = signer.sign(DIGEST, key_pair.private_pem, KEY_PASSWORD)

        assert not signer.verify(OTHER_DIGEST, signature, key_pair.public_pem)
        moved = signature.model_copy(update={"image_digest": OTHER_DIGEST})
        assert not signer.verify(OTHER_DIGEST, moved, key_pair.public_pem)

    def test_signature_does_not_verify_under_another_key(self, key_pair: KeyPair) -> None:
        signer = KeyPairSigner()
        signature = signer.sign(DIGEST, key_pair.private_pem, KEY_PASSWORD)
        other = KeyPairSigner.generate_key_pair()

        assert not signer.verify(DIGEST, signature, other.public_pem)

    def test_wrong_password(self, key_pair: KeyPair) -> None:
        with pytest.raises(KeyLoadError):
            KeyPairSigner().sign(DIGEST, key_pair.private_pem, b"wrong")

    def test_unencrypted_key(self) -> None:
        pair = KeyPairSigner.generate_key_pair()
        signer = KeyPairSigner()

        signature = signer.sign(DIGEST, pair.private_pem)

        assert signer.verify(DIGEST, signature, pair.public_pem)

    def test_signature_survives_json_round_trip(self, key_pair: KeyPair) -> None:
        signer = KeyPairSigner()
        signature = signer.sign(DIGEST, key_pair.private_pem, KEY_PASSWORD)

        restored = Signature.model_validate_json(signature.model_dump_json())

        assert signer.verify(DIGEST, restored, key_pair.public_pem)


@pytest.fixture
def registry() -> InMemoryRegistry:
    return InMemoryRegistry()


@pytest.fixture
def pushed(registry: InMemoryRegistry) -> Image:
    return registry.push(Image(repository=REPOSITORY, tag="42", local_id=digest_of("local")))


def service(
    secrets: MappingSecretStore,
    registry: InMemoryRegistry,
    lock_dir: Path,
    signer: KeyPairSigner | None = None,
    config: SigningConfig | None = None,
) -> SigningService:
    return SigningService(
        signer or KeyPairSigner(),
        secrets,
        config or SigningConfig(),
        registry,
        lock_dir=lock_dir,
    )


class TestSigningService:
    def test_sign_pushed_image(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        pushed: Image,
        lock_dir: Path,
    ) -> None:
        signing = service(secrets, registry, lock_dir)

        signature = signing.sign(pushed)

        assert signature.image_digest == pushed.digest
        assert signing.verify(pushed.digest or "", signature)

    def test_image_without_digest_is_rejected(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        lock_dir: Path,
    ) -> None:
        signing = service(secrets, registry, lock_dir)

        with pytest.raises(SignatureError, match="no digest"):
            signing.sign(Image(repository=REPOSITORY, tag="42"))

    def test_image_missing_from_registry_is_rejected(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        lock_dir: Path,
    ) -> None:
        signing = service(secrets, registry, lock_dir)

        with pytest.raises(SignatureError, match="not pushed"):
            signing.sign(Image(repository=REPOSITORY, tag="42", digest=DIGEST))

    def test_missing_password_secret_is_tolerated_for_plain_keys(
        self,
        registry: InMemoryRegistry,
        pushed: Image,
        lock_dir: Path,
    ) -> None:
        pair = KeyPairSigner.generate_key_pair()
        secrets = MappingSecretStore(
            {"signing-private-key": pair.private_pem, "signing-public-key": pair.public_pem}
        )

        signature = service(secrets, registry, lock_dir).sign(pushed)

        assert signature.signer_key_id == public_key_id(pair.public_pem)

    def test_positive_verification_is_cached(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        pushed: Image,
        lock_dir: Path,
    ) -> None:
        signer = CountingSigner()
        signing = service(secrets, registry, lock_dir, signer=signer)
        signature = signing.sign(pushed)

        assert signing.verify(pushed.digest or "", signature)
        assert signing.verify(pushed.digest or "", signature)
        assert signer.verify_calls == 1

    def test_negative_verification_is_not_cached(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        pushed: Image,
        lock_dir: Path,
    ) -> None:
        signer = CountingSigner()
        signing = service(secrets, registry, lock_dir, signer=signer)
        signature = signing.sign(pushed)

        assert not signing.verify(OTHER_DIGEST, signature)
        assert not signing.verify(OTHER_DIGEST, signature)
        assert signer.verify_calls == 2

    def test_public_key_from_path(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        lock_dir: Path,
        tmp_path: Path,
    ) -> None:
        path = tmp_path / "keel.pub"
        path.write_bytes(b"PEM")
        signing = service(secrets, registry, lock_dir, config=SigningConfig(public_key_path=path))

        assert signing.public_key() == b"PEM"

    def test_public_key_from_secret(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        key_pair: KeyPair,
        lock_dir: Path,
    ) -> None:
        assert service(secrets, registry, lock_dir).public_key() == key_pair.public_pem

    def test_no_public_key_configured(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        lock_dir: Path,
    ) -> None:
        signing = service(secrets, registry, lock_dir, config=SigningConfig(public_key_secret=None))

        with pytest.raises(KeyLoadError, match="no public key configured"):
            signing.public_key()

    def test_missing_public_key_secret(
        self,
        registry: InMemoryRegistry,
        lock_dir: Path,
    ) -> None:
        signing = service(MappingSecretStore(), registry, lock_dir)

        with pytest.raises(KeyLoadError):
            signing.public_key()

    def test_verify_or_raise(
        self,
        secrets: MappingSecretStore,
        registry: InMemoryRegistry,
        pushed: Image,
        lock_dir: Path,
    ) -> None:
        signing = service(secrets, registry, lock_dir)
        signature = signing.sign(pushed)

        signing.verify_or_raise(pushed, signature)

        with pytest.raises(SignatureError, match="no signature recorded"):
            signing.verify_or_raise(pushed, None)
        with pytest.raises(SignatureError, match="does not match"):
            signing.verify_or_raise(pushed.model_copy(update={"digest": OTHER_DIGEST}), signature)
