"""Tests for docker config parsing and the Kubernetes keychain."""

from __future__ import annotations

import base64
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from image_exporter.errors import KeychainError
from image_exporter.registry.auth import (
    AuthContext,
    Credentials,
    Keychain,
    KubernetesKeychainFactory,
    normalize_registry,
    parse_docker_config,
)


def _b64(text: str) -> str:
    return base64.b64encode(text.encode()).decode()


def _secret(key: str, payload: dict[str, object]) -> SimpleNamespace:
    return SimpleNamespace(data={key: _b64(json.dumps(payload))})


def _core_v1(secrets: dict[str, SimpleNamespace], sa_secrets: list[str] | None = None) -> MagicMock:
    core = MagicMock()

    async def read_secret(name: str, namespace: str) -> SimpleNamespace:
        if name not in secrets:
            raise ApiException(status=404, reason="Not Found")
        return secrets[name]

    async def read_sa(name: str, namespace: str) -> SimpleNamespace:
        if sa_secrets is None:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(image_pull_secrets=[SimpleNamespace(name=n) for n in sa_secrets])

    core.read_namespaced_secret = AsyncMock(side_effect=read_secret)
    core.read_namespaced_service_account = AsyncMock(side_effect=read_sa)
    return core


# ---------------------------------------------------------------------------
# Docker config
# ---------------------------------------------------------------------------


class TestParseDockerConfig:
    def test_auths_with_encoded_auth(self) -> None:
        creds = parse_docker_config({"auths": {"ghcr.io": {"auth": _b64("bot:pa:ss")}}})
        assert creds == {"ghcr.io": Credentials("bot", "pa:ss")}

    def test_explicit_username_password(self) -> None:
        creds = parse_docker_config({"auths": {"quay.io": {"username": "u", "password": "p"}}})
        assert creds == {"quay.io": Credentials("u", "p")}

    def test_legacy_dockercfg_layout(self) -> None:
        creds = parse_docker_config({"https://index.docker.io/v1/": {"auth": _b64("u:p")}})
        assert creds == {"https://index.docker.io/v1/": Credentials("u", "p")}

    def test_unusable_entries_are_skipped(self) -> None:
        creds = parse_docker_config({"auths": {"a.io": {}, "b.io": {"auth": "!!!"}, "c.io": "nope"}})
        assert creds == {}


class TestKeychain:
    @pytest.mark.parametrize(
        ("key", "host"),
        [
            ("https://index.docker.io/v1/", "index.docker.io"),
            ("docker.io", "index.docker.io"),
            ("GHCR.io", "ghcr.io"),
            ("http://localhost:5000/v2", "localhost:5000"),
        ],
    )
    def test_normalize_registry(self, key: str, host: str) -> None:
        assert normalize_registry(key) == host

    def test_first_entry_wins(self) -> None:
        keychain = Keychain()
        keychain.add("ghcr.io", Credentials("first", "1"))
        keychain.add("https://ghcr.io", Credentials("second", "2"))
        assert keychain.resolve("ghcr.io") == Credentials("first", "1")
        assert len(keychain) == 1

    def test_auth_is_shared_per_registry_and_scope(self) -> None:
        keychain = Keychain({"docker.io": Credentials("bot", "s3cret")})
        scope = "repository:library/nginx:pull"

        auth = keychain.auth("index.docker.io", scope)

        assert keychain.auth("docker.io", scope) is auth
        assert keychain.auth("docker.io", "repository:library/redis:pull") is not auth
        assert Keychain().auth("docker.io", scope) is not auth

    def test_unknown_registry_is_anonymous(self) -> None:
        assert Keychain().resolve("quay.io") is None


# ---------------------------------------------------------------------------
# Kubernetes keychain factory
# ---------------------------------------------------------------------------


class TestKubernetesKeychainFactory:
    async def test_object_secrets_then_service_account_secrets(self) -> None:
        core = _core_v1(
            {
                "regcred": _secret(".dockerconfigjson", {"auths": {"ghcr.io": {"auth": _b64("obj:1")}}}),
                "sa-cred": _secret(
                    ".dockerconfigjson",
                    {"auths": {"ghcr.io": {"auth": _b64("sa:2")}, "quay.io": {"auth": _b64("q:3")}}},
                ),
            },
            sa_secrets=["sa-cred"],
        )
        factory = KubernetesKeychainFactory(core)

        keychain = await factory.build(AuthContext("shop", "web-sa", ("regcred",)))

        assert keychain.resolve("ghcr.io") == Credentials("obj", "1")
        assert keychain.resolve("quay.io") == Credentials("q", "3")
        core.read_namespaced_service_account.assert_awaited_once_with("web-sa", "shop")

    async def test_default_service_account_is_used(self) -> None:
        core = _core_v1({}, sa_secrets=[])
        await KubernetesKeychainFactory(core).build(AuthContext("shop"))
        core.read_namespaced_service_account.assert_awaited_once_with("default", "shop")

    async def test_missing_secret_and_service_account_are_skipped(self) -> None:
        core = _core_v1({}, sa_secrets=None)
        keychain = await KubernetesKeychainFactory(core).build(AuthContext("shop", "", ("gone",)))
        assert len(keychain) == 0

    async def test_legacy_dockercfg_secret(self) -> None:
        core = _core_v1({"old": _secret(".dockercfg", {"registry.example.com": {"auth": _b64("u:p")}})}, sa_secrets=[])
        keychain = await KubernetesKeychainFactory(core).build(AuthContext("shop", "", ("old",)))
        assert keychain.resolve("registry.example.com") == Credentials("u", "p")

    async def test_forbidden_is_a_keychain_error(self) -> None:
        core = _core_v1({}, sa_secrets=[])
        core.read_namespaced_secret = AsyncMock(side_effect=ApiException(status=403, reason="Forbidden"))
        with pytest.raises(KeychainError):
            await KubernetesKeychainFactory(core).build(AuthContext("shop", "", ("regcred",)))
