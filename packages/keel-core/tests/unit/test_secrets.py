"""Unit tests for secret stores and scoped secret buffers."""

from __future__ import annotations

import pytest

from keel_core.errors import SecretNotFoundError
from keel_core.secrets import EnvSecretStore, MappingSecretStore, SecretStore, env_var_name, scoped_secret


class TestEnvSecretStore:
    def test_reads_prefixed_variables(self) -> None:
        store = EnvSecretStore(environ={"KEEL_SECRET_SONARQUBE_TOKEN": "squ_123"})

        assert store.get("sonarqube-token") == b"squ_123"

    def test_missing_secret_names_the_variable(self) -> None:
        store = EnvSecretStore(environ={})

        with pytest.raises(SecretNotFoundError, match=r"\$KEEL_SECRET_SIGNING_PRIVATE_KEY"):
            store.get("signing-private-key")

    def test_empty_variable_counts_as_missing(self) -> None:
        store = EnvSecretStore(environ={"KEEL_SECRET_SIGNING_KEY_PASSWORD": ""})

        with pytest.raises(SecretNotFoundError):
            store.get("signing-key-password")

    def test_env_var_name(self) -> None:
        assert env_var_name("signing.public-key") == "KEEL_SECRET_SIGNING_PUBLIC_KEY"


class TestScopedSecret:
    def test_buffer_is_zeroed_on_exit(self) -> None:
        store = MappingSecretStore({"token": "s3cr3t"})

        with scoped_secret(store, "token") as buffer:
            assert bytes(buffer) == b"s3cr3t"
            held = buffer

        assert bytes(held) == b"\0" * 6

    def test_buffer_is_zeroed_when_the_block_raises(self) -> None:
        store = MappingSecretStore({"token": b"abc"})

        with pytest.raises(RuntimeError):
            with scoped_secret(store, "token") as buffer:
                held = buffer
                raise RuntimeError("boom")

        assert bytes(held) == b"\0\0\0"

    def test_mapping_store_satisfies_the_protocol(self) -> None:
        store = MappingSecretStore()

        assert isinstance(store, SecretStore)
        with pytest.raises(SecretNotFoundError):
            store.get("missing")
