"""Access control policy resolution.

Turns an AccessControlPolicy custom resource into the ``ACPConfig`` used
by the authentication handlers.  OIDC policies may reference a Secret
holding the client secret and the cookie encryption keys; that Secret is
fetched here.

A referenced Secret that does not exist yet is not an error: the policy
resolves as if it had no reference, and a later refresh picks the Secret
up once it is created.  A Secret that exists but lacks one of its three
fields is an error.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from clusterscope.acp.config import ACPConfig, BasicAuthConfig, DigestAuthConfig, JWTConfig
from clusterscope.acp.oidc import (
    AuthSession,
    AuthStateCookie,
    OIDCConfig,
    OIDCConfigError,
    SecretReference,
    TLSConfig,
    validate,
)
from clusterscope.acp.secrets import SecretStore, SecretStoreError
from clusterscope.observability.logging import get_logger
from clusterscope.observability.metrics import acp_resolutions_total
from clusterscope.topology.selectors import object_key

_logger = get_logger("acp.resolver")

DEFAULT_SECRET_NAMESPACE = "default"

SECRET_CLIENT_SECRET = "clientSecret"
SECRET_SESSION_KEY = "sessionKey"
SECRET_STATE_COOKIE_KEY = "stateCookieKey"


class ACPResolutionError(Exception):
    """Raised when a policy cannot be turned into a usable configuration."""

    def __init__(self, policy: str, message: str) -> None:
        super().__init__(f"resolve access control policy {policy}: {message}")
        self.policy = policy


class SecretFieldMissingError(ACPResolutionError):
    """The referenced Secret exists but lacks a required field."""

    def __init__(self, policy: str, secret: str, field_name: str) -> None:
        super().__init__(policy, f"secret {secret} has no {field_name!r} field")
        self.secret = secret
        self.field = field_name


@dataclass(frozen=True)
class _OIDCSecret:
    client_secret: str
    session_key: str
    state_cookie_key: str


def _policy_name(policy: Mapping[str, Any]) -> str:
    meta = policy.get("metadata") or {}
    name = str(meta.get("name") or "<unnamed>")
    return object_key(name, str(meta.get("namespace") or ""))


def _str_map(value: Any) -> dict[str, str]:
    return {str(k): str(v) for k, v in (value or {}).items()}


# ---------------------------------------------------------------------------
# Per-method builders
# ---------------------------------------------------------------------------


def _jwt_config(raw: Mapping[str, Any]) -> JWTConfig:
    return JWTConfig(
        signing_secret=str(raw.get("signingSecret", "")),
        signing_secret_base64_encoded=bool(raw.get("signingSecretBase64Encoded", False)),
        public_key=str(raw.get("publicKey", "")),
        jwks_file=str(raw.get("jwksFile", "")),
        jwks_url=str(raw.get("jwksUrl", "")),
        strip_authorization_header=bool(raw.get("stripAuthorizationHeader", False)),
        forward_headers=_str_map(raw.get("forwardHeaders")),
        token_query_key=str(raw.get("tokenQueryKey", "")),
        claims=str(raw.get("claims", "")),
    )


def _users(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(u.strip() for u in value.split(",") if u.strip())
    return tuple(str(u) for u in value or ())


def _basic_auth_config(raw: Mapping[str, Any], cls: type[BasicAuthConfig] = BasicAuthConfig) -> BasicAuthConfig:
    return cls(
        users=_users(raw.get("users")),
        realm=str(raw.get("realm", "")),
        strip_authorization_header=bool(raw.get("stripAuthorizationHeader", False)),
        forward_username_header=str(raw.get("forwardUsernameHeader", "")),
    )


def _oidc_config(raw: Mapping[str, Any]) -> OIDCConfig:
    """Copy the declared OIDC fields; nothing is defaulted here."""
    state_cookie = raw.get("stateCookie")
    session = raw.get("session")
    tls = raw.get("tls")
    return OIDCConfig(
        issuer=str(raw.get("issuer", "")),
        client_id=str(raw.get("clientId", "")),
        client_secret=str(raw.get("clientSecret", "")),
        tls=(
            TLSConfig(
                ca_bundle=str(tls.get("caBundle", "")),
                insecure_skip_verify=bool(tls.get("insecureSkipVerify", False)),
            )
            if tls is not None
            else None
        ),
        redirect_url=str(raw.get("redirectUrl", "")),
        logout_url=str(raw.get("logoutUrl", "")),
        scopes=tuple(str(s) for s in raw.get("scopes") or ()),
        auth_params=_str_map(raw.get("authParams")),
        state_cookie=(
            AuthStateCookie(
                secret=str(state_cookie.get("secret", "")),
                path=str(state_cookie.get("path", "")),
                domain=str(state_cookie.get("domain", "")),
                same_site=str(state_cookie.get("sameSite", "")),
                secure=bool(state_cookie.get("secure", False)),
            )
            if state_cookie is not None
            else None
        ),
        session=(
            AuthSession(
                secret=str(session.get("secret", "")),
                path=str(session.get("path", "")),
                domain=str(session.get("domain", "")),
                same_site=str(session.get("sameSite", "")),
                secure=bool(session.get("secure", False)),
                refresh=None if session.get("refresh") is None else bool(session.get("refresh")),
            )
            if session is not None
            else None
        ),
        forward_headers=_str_map(raw.get("forwardHeaders")),
        claims=str(raw.get("claims", "")),
    )


def _secret_reference(raw: Mapping[str, Any], default_namespace: str) -> SecretReference | None:
    ref = raw.get("secret")
    if not ref or not ref.get("name"):
        return None
    return SecretReference(name=str(ref["name"]), namespace=str(ref.get("namespace") or default_namespace))


async def _fetch_oidc_secret(policy: str, ref: SecretReference, store: SecretStore) -> _OIDCSecret | None:
    secret_id = f"{ref.namespace}/{ref.name}"
    try:
        fields = await store.get(ref.namespace, ref.name)
    except SecretStoreError as exc:
        raise ACPResolutionError(policy, str(exc)) from exc
    if fields is None:
        _logger.info("oidc_secret_not_found", policy=policy, secret=secret_id)
        return None

    values = {}
    for field_name in (SECRET_CLIENT_SECRET, SECRET_SESSION_KEY, SECRET_STATE_COOKIE_KEY):
        if field_name not in fields:
            raise SecretFieldMissingError(policy, secret_id, field_name)
        values[field_name] = fields[field_name]

    return _OIDCSecret(
        client_secret=values[SECRET_CLIENT_SECRET],
        session_key=values[SECRET_SESSION_KEY],
        state_cookie_key=values[SECRET_STATE_COOKIE_KEY],
    )


def _apply_oidc_secret(cfg: OIDCConfig, secret: _OIDCSecret) -> OIDCConfig:
    # Session and state cookie each take their own key from the Secret.
    return replace(
        cfg,
        client_secret=secret.client_secret,
        state_cookie=replace(cfg.state_cookie or AuthStateCookie(), secret=secret.state_cookie_key),
        session=replace(cfg.session or AuthSession(), secret=secret.session_key),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def config_from_policy(
    policy: Mapping[str, Any],
    store: SecretStore | None = None,
    default_namespace: str = DEFAULT_SECRET_NAMESPACE,
) -> ACPConfig:
    """Resolve an AccessControlPolicy custom resource.

    Args:
        policy:            Raw custom resource (``metadata`` and ``spec``).
        store:             Secret lookup for OIDC secret references.  Without
                           a store, references are ignored.
        default_namespace: Namespace of secret references that omit one.

    Returns:
        The resolved configuration; empty when the policy carries no
        supported method.

    Raises:
        ACPResolutionError: the referenced Secret could not be read or is
            incomplete.
    """
    name = _policy_name(policy)
    spec = policy.get("spec") or {}

    if (raw := spec.get("jwt")) is not None:
        cfg = ACPConfig(auth=_jwt_config(raw))
    elif (raw := spec.get("basicAuth")) is not None:
        cfg = ACPConfig(auth=_basic_auth_config(raw))
    elif (raw := spec.get("digestAuth")) is not None:
        cfg = ACPConfig(auth=_basic_auth_config(raw, DigestAuthConfig))
    elif (raw := spec.get("oidc")) is not None:
        cfg = ACPConfig(auth=await _resolve_oidc(name, raw, store, default_namespace))
    else:
        _logger.debug("acp_method_unsupported", policy=name)
        acp_resolutions_total.labels(method="none", result="empty").inc()
        return ACPConfig()

    acp_resolutions_total.labels(method=str(cfg.method), result="success").inc()
    return cfg


async def _resolve_oidc(
    name: str,
    raw: Mapping[str, Any],
    store: SecretStore | None,
    default_namespace: str,
) -> OIDCConfig:
    cfg = _oidc_config(raw)
    ref = _secret_reference(raw, default_namespace)
    if ref is None or store is None:
        return cfg
    try:
        secret = await _fetch_oidc_secret(name, ref, store)
    except ACPResolutionError as exc:
        acp_resolutions_total.labels(method="oidc", result="error").inc()
        _logger.error("oidc_secret_resolution_failed", policy=name, error=str(exc))
        raise
    if secret is None:
        return cfg
    return _apply_oidc_secret(cfg, secret)


async def resolve_policies(
    policies: Iterable[Mapping[str, Any]],
    store: SecretStore | None = None,
    default_namespace: str = DEFAULT_SECRET_NAMESPACE,
) -> dict[str, ACPConfig]:
    """Resolve many policies concurrently, keyed by ``name@namespace``.

    Resolutions share no state; the first failure cancels the others and
    is raised.
    """
    policies = list(policies)
    try:
        async with asyncio.TaskGroup() as tg:
            tasks = {
                _policy_name(policy): tg.create_task(config_from_policy(policy, store, default_namespace))
                for policy in policies
            }
    except ExceptionGroup as group:
        failures = [exc for exc in group.exceptions if isinstance(exc, ACPResolutionError)]
        if failures:
            raise failures[0]
        raise
    return {key: task.result() for key, task in tasks.items()}


def usable_config(policy: str, cfg: ACPConfig) -> ACPConfig:
    """Return *cfg* as the enforcement handlers should see it.

    OIDC configurations get their defaults applied and are validated;
    other methods are returned unchanged.

    Raises:
        ACPResolutionError: the OIDC configuration is incomplete or has an
            unusable cookie secret.
    """
    if not isinstance(cfg.auth, OIDCConfig):
        return cfg
    try:
        return ACPConfig(auth=validate(cfg.auth))
    except OIDCConfigError as exc:
        acp_resolutions_total.labels(method="oidc", result="invalid").inc()
        raise ACPResolutionError(policy, f"invalid oidc configuration: {exc}") from exc
