"""Resolved access control policy configurations.

``ACPConfig`` carries at most one authentication payload.  The method is
derived from the payload's type, and an ``ACPConfig`` without payload
stands for a policy kind this agent does not handle.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from clusterscope.acp.oidc import OIDCConfig


class AuthMethod(StrEnum):
    JWT = "jwt"
    BASIC_AUTH = "basicAuth"
    DIGEST_AUTH = "digestAuth"
    OIDC = "oidc"


@dataclass(frozen=True)
class JWTConfig:
    """Configuration of the JWT authentication handler."""

    signing_secret: str = ""
    signing_secret_base64_encoded: bool = False
    public_key: str = ""
    # Path to a JWKS file, or the JWKS document itself.
    jwks_file: str = ""
    jwks_url: str = ""
    strip_authorization_header: bool = False
    forward_headers: dict[str, str] = field(default_factory=dict)
    token_query_key: str = ""
    claims: str = ""


@dataclass(frozen=True)
class BasicAuthConfig:
    """Configuration of the basic authentication handler."""

    users: tuple[str, ...] = ()
    realm: str = ""
    strip_authorization_header: bool = False
    forward_username_header: str = ""


@dataclass(frozen=True)
class DigestAuthConfig(BasicAuthConfig):
    """Configuration of the digest authentication handler."""


AuthConfig = JWTConfig | DigestAuthConfig | BasicAuthConfig | OIDCConfig


@dataclass(frozen=True)
class ACPConfig:
    """Runtime configuration of one access control policy."""

    auth: AuthConfig | None = None

    @property
    def method(self) -> AuthMethod | None:
        match self.auth:
            case JWTConfig():
                return AuthMethod.JWT
            case DigestAuthConfig():
                return AuthMethod.DIGEST_AUTH
            case BasicAuthConfig():
                return AuthMethod.BASIC_AUTH
            case OIDCConfig():
                return AuthMethod.OIDC
        return None

    def is_empty(self) -> bool:
        return self.auth is None
