"""Secret retrieval for signing keys and tool credentials.

Secrets are fetched at stage start and never written to durable storage.
``scoped_secret`` hands out a mutable buffer and zeroes it when the block
exits, so key material lives only for the duration of one invocation.

Example:
    >>> store = EnvSecretStore()
    >>> with scoped_secret(store, "signing-private-key") as key:
    ...     signer.sign(digest, key)
"""

from __future__ import annotations

import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Protocol, runtime_checkable

import structlog

from keel_core.errors import SecretNotFoundError

logger = structlog.get_logger(__name__)

ENV_PREFIX = "KEEL_SECRET_"


@runtime_checkable
class SecretStore(Protocol):
    """Source of secrets by logical name."""

    def get(self, name: str) -> bytes:
        """Return the secret value.

        Raises:
            SecretNotFoundError: If the secret does not exist.
        """
        ...


def env_var_name(name: str, prefix: str = ENV_PREFIX) -> str:
    """Environment variable holding secret ``name``.

    Examples:
        >>> env_var_name("signing-private-key")
        'KEEL_SECRET_SIGNING_PRIVATE_KEY'
    """
    return prefix + name.upper().replace("-", "_").replace(".", "_")


class EnvSecretStore:
    """Secrets injected by the CI host as ``KEEL_SECRET_<NAME>`` variables."""

    def __init__(self, prefix: str = ENV_PREFIX, environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def get(self, name: str) -> bytes:
        var = env_var_name(name, self._prefix)
        value = self._environ.get(var)
        if not value:
            raise SecretNotFoundError(name, source=f"${var}")
        return value.encode("utf-8")


class MappingSecretStore:
    """In-memory secret store for local runs and tests."""

    def __init__(self, secrets: Mapping[str, bytes | str] | None = None) -> None:
        self._secrets: dict[str, bytes] = {}
        for name, value in (secrets or {}).items():
            self.put(name, value)

    def put(self, name: str, value: bytes | str) -> None:
        self._secrets[name] = value.encode("utf-8") if isinstance(value, str) else bytes(value)

    def get(self, name: str) -> bytes:
        try:
            return self._secrets[name]
        except KeyError:
            raise SecretNotFoundError(name, source="memory") from None


@contextmanager
def scoped_secret(store: SecretStore, name: str) -> Iterator[bytearray]:
    """Load a secret into a buffer that is zeroed when the block exits.

    Raises:
        SecretNotFoundError: If the secret does not exist.
    """
    buffer = bytearray(store.get(name))
    logger.debug("secret_loaded", secret=name, size=len(buffer))
    try:
        yield buffer
    finally:
        for i in range(len(buffer)):
            buffer[i] = 0
        logger.debug("secret_erased", secret=name)


__all__ = [
    "ENV_PREFIX",
    "EnvSecretStore",
    "MappingSecretStore",
    "SecretStore",
    "env_var_name",
    "scoped_secret",
]
