"""Build artifact, image and signature schemas.

All three are created once per pipeline run and never mutated; an image
gains its digest on push through ``Image.with_digest``, which returns a new
instance.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator

DIGEST_PATTERN = re.compile(r"^sha256:[0-9a-f]{64}$")


def _check_digest(value: str | None) -> str | None:
    if value is not None and not DIGEST_PATTERN.match(value):
        raise ValueError(f"Invalid digest (expected sha256:<64 hex>): {value}")
    return value


class BuildArtifact(BaseModel):
    """Content-addressed output of the build step.

    Examples:
        >>> artifact = BuildArtifact(
        ...     source_commit_id="3f2c1a9",
        ...     build_id="42",
        ...     artifact_digest="sha256:" + "a" * 64,
        ... )
        >>> artifact.build_id
        '42'
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    source_commit_id: str = Field(..., min_length=1, description="VCS commit the build ran on")
    build_id: str = Field(..., min_length=1, description="Pipeline build identifier")
    artifact_digest: str = Field(..., description="sha256 over the build outputs")
    artifact_path: str | None = Field(default=None, description="Primary output path")

    @field_validator("artifact_digest")
    @classmethod
    def _validate_digest(cls, value: str) -> str:
        _check_digest(value)
        return value


class Image(BaseModel):
    """Container image tagged by build id.

    ``digest`` is the registry manifest digest, assigned on push.
    ``local_id`` is the image id reported by the local builder.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    repository: str = Field(..., min_length=1, description="Registry repository")
    tag: str = Field(..., min_length=1, description="Tag (the build id)")
    digest: str | None = Field(default=None, description="Manifest digest, set on push")
    local_id: str | None = Field(default=None, description="Local image id")

    @field_validator("digest")
    @classmethod
    def _validate_digest(cls, value: str | None) -> str | None:
        return _check_digest(value)

    @property
    def reference(self) -> str:
        """``repository:tag`` reference."""
        return f"{self.repository}:{self.tag}"

    @property
    def pinned_reference(self) -> str:
        """``repository@digest`` reference, falling back to the tag reference."""
        if self.digest is None:
            return self.reference
        return f"{self.repository}@{self.digest}"

    def with_digest(self, digest: str) -> Image:
        """Return a copy bound to the registry digest."""
        if self.digest is not None and self.digest != digest:
            raise ValueError(
                f"Image {self.reference} already has digest {self.digest}; digests are immutable"
            )
        return Image(
            repository=self.repository,
            tag=self.tag,
            digest=digest,
            local_id=self.local_id,
        )


class Signature(BaseModel):
    """Signature over an image digest.

    Verifiable independently of the producer using the signer's public key.
    ``signature_bytes`` is serialized as base64 in JSON.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

    image_digest: str = Field(..., description="Signed manifest digest")
    signer_key_id: str = Field(..., min_length=1, description="Fingerprint of the signing key")
    signature_bytes: bytes = Field(..., min_length=1, description="Raw signature")
    algorithm: str = Field(default="ecdsa-p256-sha256", description="Signature algorithm")
    signed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the signature was produced (UTC)",
    )

    @field_validator("image_digest")
    @classmethod
    def _validate_digest(cls, value: str) -> str:
        _check_digest(value)
        return value


__all__ = ["DIGEST_PATTERN", "BuildArtifact", "Image", "Signature"]
