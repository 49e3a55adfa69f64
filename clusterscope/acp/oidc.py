"""OIDC access control configuration.

Value types for a resolved OIDC policy, default application, validation
and provider discovery.  ``with_defaults`` and ``validate`` never mutate
their input; they return a new, fully populated ``OIDCConfig``.
"""

from __future__ import annotations

import ssl
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

from clusterscope.observability.logging import get_logger

_logger = get_logger("acp.oidc")

# AES-128/192/256 key sizes: the session and state cookies are encrypted.
VALID_SECRET_LENGTHS = (16, 24, 32)

DEFAULT_SCOPES = ("openid",)
DEFAULT_COOKIE_PATH = "/"
DEFAULT_SAME_SITE = "lax"
DEFAULT_REDIRECT_URL = "/callback"

_DISCOVERY_PATH = "/.well-known/openid-configuration"


@dataclass(frozen=True)
class SecretReference:
    """Kubernetes Secret holding the client secret and cookie keys."""

    name: str
    namespace: str = ""


@dataclass(frozen=True)
class TLSConfig:
    """TLS settings used to reach the provider."""

    ca_bundle: str = ""
    insecure_skip_verify: bool = False


@dataclass(frozen=True)
class AuthStateCookie:
    """State cookie configuration."""

    secret: str = ""
    path: str = ""
    domain: str = ""
    same_site: str = ""
    secure: bool = False


@dataclass(frozen=True)
class AuthSession:
    """Session and session cookie configuration."""

    secret: str = ""
    path: str = ""
    domain: str = ""
    same_site: str = ""
    secure: bool = False
    refresh: bool | None = None


@dataclass(frozen=True)
class OIDCConfig:
    """Configuration of the OIDC authentication handler."""

    issuer: str = ""
    client_id: str = ""
    client_secret: str = ""
    tls: TLSConfig | None = None
    redirect_url: str = ""
    logout_url: str = ""
    scopes: tuple[str, ...] = ()
    auth_params: dict[str, str] = field(default_factory=dict)
    state_cookie: AuthStateCookie | None = None
    session: AuthSession | None = None
    # Headers added to the forwarded request, valued from ID token claims.
    forward_headers: dict[str, str] = field(default_factory=dict)
    # Expression validating the ID token, e.g. Equals(`grp`, `admin`).
    claims: str = ""


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class OIDCConfigError(ValueError):
    """Raised when an OIDC configuration is incomplete or malformed.

    ``field`` names the offending configuration field.
    """

    def __init__(self, field_name: str, message: str) -> None:
        super().__init__(message)
        self.field = field_name


class MissingFieldError(OIDCConfigError):
    """A required field is empty."""


class InvalidSecretLengthError(OIDCConfigError):
    """A cookie encryption secret is not 16, 24 or 32 characters long."""

    def __init__(self, field_name: str, message: str, length: int) -> None:
        super().__init__(field_name, message)
        self.length = length


class ProviderDiscoveryError(Exception):
    """Raised when the provider's metadata cannot be discovered.

    Distinct from ``OIDCConfigError``: the local configuration may be fine
    while the remote provider is unreachable or misbehaving.
    """

    def __init__(self, issuer: str, cause: Exception | str) -> None:
        super().__init__(f"unable to create provider for {issuer}: {cause}")
        self.issuer = issuer
        self.cause = cause


# ---------------------------------------------------------------------------
# Defaults and validation
# ---------------------------------------------------------------------------


def with_defaults(cfg: OIDCConfig) -> OIDCConfig:
    """Return *cfg* with every unset defaultable field filled in.

    Applying it to its own output changes nothing.
    """
    state_cookie = cfg.state_cookie or AuthStateCookie()
    state_cookie = replace(
        state_cookie,
        path=state_cookie.path or DEFAULT_COOKIE_PATH,
        same_site=state_cookie.same_site or DEFAULT_SAME_SITE,
    )

    session = cfg.session or AuthSession()
    session = replace(
        session,
        path=session.path or DEFAULT_COOKIE_PATH,
        same_site=session.same_site or DEFAULT_SAME_SITE,
        refresh=True if session.refresh is None else session.refresh,
    )

    return replace(
        cfg,
        scopes=cfg.scopes or DEFAULT_SCOPES,
        redirect_url=cfg.redirect_url or DEFAULT_REDIRECT_URL,
        state_cookie=state_cookie,
        session=session,
    )


def _check_secret(value: str, field_name: str, label: str) -> None:
    if not value:
        raise MissingFieldError(field_name, f"missing {label}")
    if len(value) not in VALID_SECRET_LENGTHS:
        raise InvalidSecretLengthError(
            field_name,
            f"{label} must be 16, 24 or 32 characters long",
            len(value),
        )


def validate(cfg: OIDCConfig) -> OIDCConfig:
    """Apply defaults to *cfg*, validate it and return the defaulted config.

    Checks run in a fixed order and the first failure is raised.

    Raises:
        MissingFieldError: a required field is empty.
        InvalidSecretLengthError: a cookie secret has an unusable length.
    """
    cfg = with_defaults(cfg)
    session = cfg.session or AuthSession()
    state_cookie = cfg.state_cookie or AuthStateCookie()

    if not cfg.issuer:
        raise MissingFieldError("issuer", "missing issuer")
    if not cfg.client_id:
        raise MissingFieldError("client_id", "missing client ID")
    if not cfg.client_secret:
        raise MissingFieldError("client_secret", "missing client secret")
    _check_secret(session.secret, "session.secret", "session secret")
    _check_secret(state_cookie.secret, "state_cookie.secret", "state secret")
    if not cfg.redirect_url:
        raise MissingFieldError("redirect_url", "missing redirect URL")
    return cfg


# ---------------------------------------------------------------------------
# Provider discovery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderMetadata:
    """Subset of the provider's discovery document used by the handler."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str = ""
    userinfo_endpoint: str = ""
    end_session_endpoint: str = ""
    scopes_supported: tuple[str, ...] = ()
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


def _verify(tls: TLSConfig | None) -> ssl.SSLContext | bool:
    if tls is None:
        return True
    if tls.insecure_skip_verify:
        return False
    if tls.ca_bundle:
        return ssl.create_default_context(cadata=tls.ca_bundle)
    return True


async def discover_provider(
    cfg: OIDCConfig,
    client: httpx.AsyncClient | None = None,
    timeout: float = 10.0,
) -> ProviderMetadata:
    """Fetch and check the provider metadata for ``cfg.issuer``.

    Args:
        cfg:     Resolved OIDC configuration; only issuer and TLS are used.
        client:  Optional client to use instead of a private one.
        timeout: Request timeout in seconds for the private client.

    Raises:
        ProviderDiscoveryError: the document could not be fetched, parsed,
            or describes a different issuer.
    """
    issuer = cfg.issuer
    url = issuer.rstrip("/") + _DISCOVERY_PATH
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout, verify=_verify(cfg.tls))
    try:
        response = await http.get(url, headers={"Accept": "application/json"})
        response.raise_for_status()
        document = response.json()
    except httpx.HTTPError as exc:
        _logger.warning("oidc_discovery_http_error", issuer=issuer, error=str(exc))
        raise ProviderDiscoveryError(issuer, exc) from exc
    except ValueError as exc:
        _logger.warning("oidc_discovery_invalid_document", issuer=issuer, error=str(exc))
        raise ProviderDiscoveryError(issuer, exc) from exc
    finally:
        if owns_client:
            await http.aclose()

    if not isinstance(document, dict):
        raise ProviderDiscoveryError(issuer, "discovery document is not a JSON object")
    if document.get("issuer") != issuer:
        raise ProviderDiscoveryError(
            issuer,
            f"issuer did not match the issuer returned by provider, expected {issuer!r} got {document.get('issuer')!r}",
        )
    for required in ("authorization_endpoint", "token_endpoint"):
        if not document.get(required):
            raise ProviderDiscoveryError(issuer, f"discovery document has no {required}")

    return ProviderMetadata(
        issuer=issuer,
        authorization_endpoint=str(document["authorization_endpoint"]),
        token_endpoint=str(document["token_endpoint"]),
        jwks_uri=str(document.get("jwks_uri", "")),
        userinfo_endpoint=str(document.get("userinfo_endpoint", "")),
        end_session_endpoint=str(document.get("end_session_endpoint", "")),
        scopes_supported=tuple(str(s) for s in document.get("scopes_supported") or ()),
        raw=document,
    )
