"""Unit tests for access control policy resolution."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from clusterscope.acp.config import ACPConfig, AuthMethod, BasicAuthConfig, DigestAuthConfig, JWTConfig
from clusterscope.acp.oidc import AuthSession, AuthStateCookie, OIDCConfig, validate
from clusterscope.acp.registry import ACPRegistry
from clusterscope.acp.resolver import (
    ACPResolutionError,
    SecretFieldMissingError,
    config_from_policy,
    resolve_policies,
    usable_config,
)
from clusterscope.acp.secrets import SecretStoreError, decode_secret_data

_SECRET_FIELDS = {
    "clientSecret": "from-secret",
    "sessionKey": "k" * 32,
    "stateCookieKey": "c" * 16,
}


class FakeSecretStore:
    """In-memory SecretStore recording every lookup."""

    def __init__(self, secrets: dict[tuple[str, str], dict[str, str]] | None = None, fail: bool = False) -> None:
        self.secrets = secrets or {}
        self.fail = fail
        self.calls: list[tuple[str, str]] = []

    async def get(self, namespace: str, name: str) -> dict[str, str] | None:
        self.calls.append((namespace, name))
        if self.fail:
            raise SecretStoreError(namespace, name, RuntimeError("connection refused"))
        return self.secrets.get((namespace, name))


class HangingSecretStore:
    """SecretStore whose lookups never complete."""

    async def get(self, namespace: str, name: str) -> dict[str, str] | None:
        await asyncio.sleep(3600)
        return None


def _make_policy(spec: dict[str, Any], name: str = "my-acp", namespace: str = "") -> dict[str, Any]:
    metadata = {"name": name}
    if namespace:
        metadata["namespace"] = namespace
    return {"metadata": metadata, "spec": spec}


def _oidc_spec(**extra: Any) -> dict[str, Any]:
    spec = {
        "issuer": "https://idp.example.com",
        "clientId": "client",
        "clientSecret": "from-resource",
        "redirectUrl": "/cb",
        "scopes": ["openid", "email"],
        "authParams": {"hd": "example.com"},
        "forwardHeaders": {"X-User": "email"},
        "claims": "Equals(`grp`, `admin`)",
        "session": {"path": "/app", "refresh": False},
    }
    spec.update(extra)
    return spec


# ---------------------------------------------------------------------------
# Method dispatch
# ---------------------------------------------------------------------------


class TestMethodDispatch:
    async def test_jwt(self) -> None:
        cfg = await config_from_policy(
            _make_policy({"jwt": {"signingSecret": "s3cr3t", "forwardHeaders": {"X-Sub": "sub"}, "claims": "x"}})
        )
        assert cfg.method is AuthMethod.JWT
        assert cfg.auth == JWTConfig(signing_secret="s3cr3t", forward_headers={"X-Sub": "sub"}, claims="x")

    async def test_basic_auth(self) -> None:
        cfg = await config_from_policy(
            _make_policy({"basicAuth": {"users": ["alice:hash", "bob:hash"], "realm": "hub"}})
        )
        assert cfg.method is AuthMethod.BASIC_AUTH
        assert cfg.auth == BasicAuthConfig(users=("alice:hash", "bob:hash"), realm="hub")

    async def test_basic_auth_comma_separated_users(self) -> None:
        cfg = await config_from_policy(_make_policy({"basicAuth": {"users": "alice:h, bob:h"}}))
        assert cfg.auth.users == ("alice:h", "bob:h")

    async def test_digest_auth(self) -> None:
        cfg = await config_from_policy(_make_policy({"digestAuth": {"users": ["alice:hub:hash"]}}))
        assert cfg.method is AuthMethod.DIGEST_AUTH
        assert isinstance(cfg.auth, DigestAuthConfig)

    async def test_jwt_takes_precedence(self) -> None:
        cfg = await config_from_policy(_make_policy({"basicAuth": {"users": []}, "jwt": {"publicKey": "pk"}}))
        assert cfg.method is AuthMethod.JWT

    async def test_no_method_gives_empty_config(self) -> None:
        cfg = await config_from_policy(_make_policy({}))
        assert cfg == ACPConfig()
        assert cfg.is_empty()
        assert cfg.method is None


# ---------------------------------------------------------------------------
# OIDC
# ---------------------------------------------------------------------------


class TestOIDC:
    async def test_fields_copied_verbatim(self) -> None:
        cfg = await config_from_policy(_make_policy({"oidc": _oidc_spec()}), FakeSecretStore())
        oidc = cfg.auth
        assert isinstance(oidc, OIDCConfig)
        assert oidc.client_secret == "from-resource"
        assert oidc.scopes == ("openid", "email")
        assert oidc.auth_params == {"hd": "example.com"}
        assert oidc.forward_headers == {"X-User": "email"}
        assert oidc.session == AuthSession(path="/app", refresh=False)
        assert oidc.state_cookie is None

    async def test_secret_fills_credentials(self) -> None:
        store = FakeSecretStore({("hub", "oidc-creds"): _SECRET_FIELDS})
        policy = _make_policy({"oidc": _oidc_spec(secret={"name": "oidc-creds", "namespace": "hub"})})
        oidc = (await config_from_policy(policy, store)).auth
        assert oidc.client_secret == "from-secret"
        assert oidc.session.secret == "k" * 32
        assert oidc.session.path == "/app"
        assert oidc.state_cookie == AuthStateCookie(secret="c" * 16)
        validate(oidc)

    async def test_secret_default_namespace(self) -> None:
        store = FakeSecretStore({("traefik-hub", "creds"): _SECRET_FIELDS})
        policy = _make_policy({"oidc": _oidc_spec(secret={"name": "creds"})})
        oidc = (await config_from_policy(policy, store, default_namespace="traefik-hub")).auth
        assert store.calls == [("traefik-hub", "creds")]
        assert oidc.client_secret == "from-secret"

    async def test_secret_not_found_equals_no_reference(self) -> None:
        store = FakeSecretStore()
        with_ref = await config_from_policy(_make_policy({"oidc": _oidc_spec(secret={"name": "missing"})}), store)
        without_ref = await config_from_policy(_make_policy({"oidc": _oidc_spec()}), store)
        assert with_ref == without_ref
        assert store.calls == [("default", "missing")]

    async def test_reference_without_name_ignored(self) -> None:
        store = FakeSecretStore()
        await config_from_policy(_make_policy({"oidc": _oidc_spec(secret={"namespace": "hub"})}), store)
        assert store.calls == []

    @pytest.mark.parametrize("missing", ["clientSecret", "sessionKey", "stateCookieKey"])
    async def test_secret_field_missing(self, missing: str) -> None:
        fields = {k: v for k, v in _SECRET_FIELDS.items() if k != missing}
        store = FakeSecretStore({("default", "creds"): fields})
        policy = _make_policy({"oidc": _oidc_spec(secret={"name": "creds"})})
        with pytest.raises(SecretFieldMissingError) as exc_info:
            await config_from_policy(policy, store)
        assert exc_info.value.field == missing
        assert exc_info.value.policy == "my-acp"

    async def test_store_failure_wrapped(self) -> None:
        policy = _make_policy({"oidc": _oidc_spec(secret={"name": "creds"})}, namespace="apps")
        with pytest.raises(ACPResolutionError) as exc_info:
            await config_from_policy(policy, FakeSecretStore(fail=True))
        assert exc_info.value.policy == "my-acp@apps"
        assert isinstance(exc_info.value.__cause__, SecretStoreError)

    async def test_idempotent(self) -> None:
        store = FakeSecretStore({("default", "creds"): _SECRET_FIELDS})
        policy = _make_policy({"oidc": _oidc_spec(secret={"name": "creds"})})
        assert await config_from_policy(policy, store) == await config_from_policy(policy, store)


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------


class TestResolvePolicies:
    async def test_keyed_by_object_key(self) -> None:
        configs = await resolve_policies(
            [
                _make_policy({"jwt": {"publicKey": "pk"}}, name="a"),
                _make_policy({"basicAuth": {"users": ["u:h"]}}, name="b", namespace="apps"),
            ]
        )
        assert set(configs) == {"a", "b@apps"}
        assert configs["b@apps"].method is AuthMethod.BASIC_AUTH

    async def test_one_failure_fails_batch(self) -> None:
        policies = [
            _make_policy({"jwt": {"publicKey": "pk"}}, name="a"),
            _make_policy({"oidc": _oidc_spec(secret={"name": "creds"})}, name="broken"),
        ]
        with pytest.raises(ACPResolutionError) as exc_info:
            await resolve_policies(policies, FakeSecretStore(fail=True))
        assert exc_info.value.policy == "broken"


class TestACPRegistry:
    async def test_refresh_publishes(self) -> None:
        registry = ACPRegistry()
        assert await registry.refresh([_make_policy({"jwt": {"publicKey": "pk"}}, name="a"), _make_policy({}, name="b")])
        assert registry.methods() == {"a": "jwt", "b": ""}
        assert registry.last_error is None

    async def test_failed_refresh_keeps_previous_batch(self) -> None:
        registry = ACPRegistry(store=FakeSecretStore(fail=True))
        await registry.refresh([_make_policy({"jwt": {"publicKey": "pk"}}, name="a")])
        ok = await registry.refresh([_make_policy({"oidc": _oidc_spec(secret={"name": "creds"})}, name="broken")])
        assert not ok
        assert registry.methods() == {"a": "jwt"}
        assert "broken" in registry.last_error

    @pytest.mark.parametrize("length", [15, 33])
    async def test_invalid_session_key_rejected(self, length: int) -> None:
        store = FakeSecretStore({("default", "creds"): {**_SECRET_FIELDS, "sessionKey": "k" * length}})
        registry = ACPRegistry(store=store)
        await registry.refresh([_make_policy({"jwt": {"publicKey": "pk"}}, name="a")])
        ok = await registry.refresh([_make_policy({"oidc": _oidc_spec(secret={"name": "creds"})}, name="sso")])
        assert not ok
        assert registry.methods() == {"a": "jwt"}
        assert "session secret must be 16, 24 or 32 characters long" in registry.last_error

    @pytest.mark.parametrize("length", [16, 24, 32])
    async def test_valid_session_key_published_with_defaults(self, length: int) -> None:
        store = FakeSecretStore({("default", "creds"): {**_SECRET_FIELDS, "sessionKey": "k" * length}})
        registry = ACPRegistry(store=store)
        spec = _oidc_spec(secret={"name": "creds"}, scopes=[], session={"path": "/app"})
        assert await registry.refresh([_make_policy({"oidc": spec}, name="sso")])
        oidc = registry.configs["sso"].auth
        assert isinstance(oidc, OIDCConfig)
        assert oidc.scopes == ("openid",)
        assert oidc.session == AuthSession(secret="k" * length, path="/app", same_site="lax", refresh=True)
        assert oidc.state_cookie == AuthStateCookie(secret="c" * 16, path="/", same_site="lax")
        assert registry.methods() == {"sso": "oidc"}

    async def test_oidc_without_secrets_rejected(self) -> None:
        registry = ACPRegistry()
        ok = await registry.refresh([_make_policy({"oidc": _oidc_spec()}, name="sso")])
        assert not ok
        assert registry.configs == {}
        assert "sso" in registry.last_error

    async def test_hanging_secret_store_times_out(self) -> None:
        registry = ACPRegistry(store=HangingSecretStore(), timeout=0.05)
        await registry.refresh([_make_policy({"jwt": {"publicKey": "pk"}}, name="a")])
        async with asyncio.timeout(2):
            ok = await registry.refresh([_make_policy({"oidc": _oidc_spec(secret={"name": "creds"})}, name="sso")])
        assert not ok
        assert registry.methods() == {"a": "jwt"}
        assert "exceeded" in registry.last_error


class TestUsableConfig:
    def test_non_oidc_unchanged(self) -> None:
        cfg = ACPConfig(auth=JWTConfig(public_key="pk"))
        assert usable_config("a", cfg) is cfg

    def test_oidc_defaulted(self) -> None:
        oidc = OIDCConfig(
            issuer="https://idp",
            client_id="c",
            client_secret="s",
            session=AuthSession(secret="k" * 16),
            state_cookie=AuthStateCookie(secret="c" * 24),
        )
        cfg = usable_config("a", ACPConfig(auth=oidc))
        assert cfg.auth == validate(oidc)
        assert cfg.auth.redirect_url == "/callback"

    def test_oidc_invalid_raises_resolution_error(self) -> None:
        oidc = OIDCConfig(issuer="https://idp", client_id="c", client_secret="s")
        with pytest.raises(ACPResolutionError) as exc_info:
            usable_config("sso@apps", ACPConfig(auth=oidc))
        assert exc_info.value.policy == "sso@apps"
        assert exc_info.value.__cause__ is not None


# ---------------------------------------------------------------------------
# Secret decoding
# ---------------------------------------------------------------------------


class TestDecodeSecretData:
    def test_base64_and_string_data(self) -> None:
        fields = decode_secret_data(
            {
                "data": {"clientSecret": "Y2xpZW50", "sessionKey": "b2xk"},
                "stringData": {"sessionKey": "new"},
            }
        )
        assert fields == {"clientSecret": "client", "sessionKey": "new"}

    def test_invalid_base64(self) -> None:
        with pytest.raises(ValueError, match="clientSecret"):
            decode_secret_data({"data": {"clientSecret": "!!!"}})
