"""Registry credentials.

A Keychain maps registry hosts to credentials. The Kubernetes keychain is
assembled per object from the object's image pull secrets and the pull
secrets of its service account, the same sources the kubelet uses.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from collections.abc import Generator, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from kubernetes_asyncio.client.exceptions import ApiException  # type: ignore[import-untyped]

from image_exporter.errors import KeychainError, RegistryError
from image_exporter.registry.reference import DEFAULT_REGISTRY

_log = structlog.get_logger(component="registry.auth")

_DOCKER_HUB_ALIASES = frozenset({"docker.io", "index.docker.io", "registry-1.docker.io", "registry.hub.docker.com"})
_CHALLENGE_PARAM_RE = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class Credentials:
    """Username and password for one registry."""

    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class AuthContext:
    """Where to look for credentials for one Kubernetes object."""

    namespace: str
    service_account_name: str = ""
    image_pull_secrets: tuple[str, ...] = ()


class Keychain:
    """Credentials keyed by normalised registry host. Empty means anonymous."""

    def __init__(self, entries: dict[str, Credentials] | None = None) -> None:
        self._entries: dict[str, Credentials] = {}
        self._auths: dict[tuple[str, str], RegistryAuth] = {}
        for key, creds in (entries or {}).items():
            self.add(key, creds)

    def add(self, key: str, creds: Credentials) -> None:
        """Register credentials; the first entry for a registry wins."""
        self._entries.setdefault(normalize_registry(key), creds)

    def resolve(self, registry: str) -> Credentials | None:
        return self._entries.get(normalize_registry(registry))

    def auth(self, registry: str, scope: str) -> RegistryAuth:
        """Return the auth flow for *registry* and *scope*, reused so bearer tokens carry across requests."""
        key = (normalize_registry(registry), scope)
        if key not in self._auths:
            self._auths[key] = RegistryAuth(self.resolve(registry), scope=scope)
        return self._auths[key]

    def __len__(self) -> int:
        return len(self._entries)


def normalize_registry(key: str) -> str:
    """Reduce a docker config key like ``https://index.docker.io/v1/`` to a host."""
    host = key.strip()
    for prefix in ("https://", "http://"):
        if host.startswith(prefix):
            host = host[len(prefix) :]
    host = host.split("/", 1)[0].lower()
    if host in _DOCKER_HUB_ALIASES:
        return DEFAULT_REGISTRY
    return host


def parse_docker_config(payload: dict[str, Any]) -> dict[str, Credentials]:
    """Extract credentials from a ``.dockerconfigjson`` or legacy ``.dockercfg`` document.

    Entries without usable credentials are skipped.
    """
    auths = payload.get("auths", payload)
    result: dict[str, Credentials] = {}
    if not isinstance(auths, dict):
        return result
    for key, entry in auths.items():
        if not isinstance(entry, dict):
            continue
        username = entry.get("username")
        password = entry.get("password")
        if (not username or password is None) and entry.get("auth"):
            try:
                decoded = base64.b64decode(str(entry["auth"])).decode()
            except (binascii.Error, UnicodeDecodeError):
                continue
            username, _, password = decoded.partition(":")
        if isinstance(username, str) and username and isinstance(password, str):
            result[key] = Credentials(username=username, password=password)
    return result


class KubernetesKeychainFactory:
    """Builds a Keychain from Kubernetes secrets for one object.

    Args:
        core_v1: kubernetes-asyncio ``CoreV1Api`` used to read secrets and
                 service accounts.
    """

    _SECRET_KEYS = (".dockerconfigjson", ".dockercfg")

    def __init__(self, core_v1: Any) -> None:
        self._core_v1 = core_v1

    async def build(self, ctx: AuthContext) -> Keychain:
        """Collect credentials from the pull secrets named by *ctx*.

        Missing secrets and service accounts are skipped. Any other API
        failure raises KeychainError.
        """
        secret_names = list(ctx.image_pull_secrets)
        secret_names.extend(await self._service_account_secrets(ctx))

        keychain = Keychain()
        for name in _unique(secret_names):
            for key, creds in (await self._read_secret(ctx.namespace, name)).items():
                keychain.add(key, creds)
        return keychain

    async def _service_account_secrets(self, ctx: AuthContext) -> list[str]:
        sa_name = ctx.service_account_name or "default"
        try:
            sa = await self._core_v1.read_namespaced_service_account(sa_name, ctx.namespace)
        except ApiException as exc:
            if exc.status == 404:
                _log.warning("service account not found; ignoring", namespace=ctx.namespace, name=sa_name)
                return []
            raise KeychainError(f"reading service account {ctx.namespace}/{sa_name}: {exc.reason}") from exc
        return [ref.name for ref in (sa.image_pull_secrets or []) if getattr(ref, "name", None)]

    async def _read_secret(self, namespace: str, name: str) -> dict[str, Credentials]:
        try:
            secret = await self._core_v1.read_namespaced_secret(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                _log.warning("image pull secret not found; ignoring", namespace=namespace, name=name)
                return {}
            raise KeychainError(f"reading secret {namespace}/{name}: {exc.reason}") from exc

        data = secret.data or {}
        for key in self._SECRET_KEYS:
            if key not in data:
                continue
            try:
                payload = json.loads(base64.b64decode(data[key]))
            except (binascii.Error, ValueError):
                _log.warning("image pull secret is not valid docker config; ignoring", namespace=namespace, name=name)
                return {}
            if isinstance(payload, dict):
                return parse_docker_config(payload)
        return {}


class RegistryAuth(httpx.Auth):
    """httpx auth flow for the registry token protocol.

    The request is first sent as is. A ``401`` carrying a ``Bearer``
    challenge triggers a token request against the advertised realm (with
    basic credentials when the keychain has them) and one retry; a
    ``Basic`` challenge is retried with basic credentials.
    """

    requires_response_body = True

    def __init__(self, credentials: Credentials | None, scope: str) -> None:
        self._credentials = credentials
        self._scope = scope
        self._token: str | None = None

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if self._token:
            request.headers["Authorization"] = f"Bearer {self._token}"
        response = yield request
        if response.status_code != 401:
            return

        scheme, params = parse_challenge(response.headers.get("WWW-Authenticate", ""))
        if scheme == "basic" and self._credentials is not None:
            request.headers["Authorization"] = _basic_header(self._credentials)
            yield request
        elif scheme == "bearer" and params.get("realm"):
            token_request = httpx.Request(
                "GET",
                params["realm"],
                params={k: v for k, v in (("service", params.get("service")), ("scope", self._scope)) if v},
                headers={"Authorization": _basic_header(self._credentials)} if self._credentials else None,
            )
            token_response = yield token_request
            if token_response.status_code != 200:
                return
            self._token = _parse_token(token_response)
            request.headers["Authorization"] = f"Bearer {self._token}"
            yield request


def _parse_token(response: httpx.Response) -> str:
    """Return the bearer token from a token endpoint response."""
    try:
        body = json.loads(response.content)
    except ValueError as exc:
        raise RegistryError(f"token endpoint {response.url}: invalid JSON") from exc
    token = (body.get("token") or body.get("access_token")) if isinstance(body, dict) else None
    if not isinstance(token, str) or not token:
        raise RegistryError(f"token endpoint {response.url}: response carries no token")
    return token


def _basic_header(credentials: Credentials) -> str:
    raw = f"{credentials.username}:{credentials.password}".encode()
    return "Basic " + base64.b64encode(raw).decode()


def parse_challenge(header: str) -> tuple[str, dict[str, str]]:
    """Split a ``WWW-Authenticate`` header into a lower-case scheme and its parameters."""
    scheme, _, rest = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM_RE.findall(rest))


def _unique(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))
