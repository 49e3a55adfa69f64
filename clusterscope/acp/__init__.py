"""Access control policy resolution.

Submodules:
    oidc      -- OIDC value types, defaults, validation, provider discovery.
    config    -- resolved ACPConfig and per-method handler configs.
    secrets   -- SecretStore protocol and the Kubernetes-backed store.
    resolver  -- AccessControlPolicy resource -> ACPConfig.
    registry  -- latest resolved batch of policies.
"""

from clusterscope.acp.config import ACPConfig, AuthMethod, BasicAuthConfig, DigestAuthConfig, JWTConfig
from clusterscope.acp.oidc import (
    InvalidSecretLengthError,
    MissingFieldError,
    OIDCConfig,
    OIDCConfigError,
    ProviderDiscoveryError,
    discover_provider,
    validate,
    with_defaults,
)
from clusterscope.acp.resolver import (
    ACPResolutionError,
    SecretFieldMissingError,
    config_from_policy,
    resolve_policies,
    usable_config,
)
from clusterscope.acp.registry import ACPRegistry
from clusterscope.acp.secrets import SecretStore, SecretStoreError

__all__ = [
    "ACPConfig",
    "ACPRegistry",
    "ACPResolutionError",
    "AuthMethod",
    "BasicAuthConfig",
    "DigestAuthConfig",
    "InvalidSecretLengthError",
    "JWTConfig",
    "MissingFieldError",
    "OIDCConfig",
    "OIDCConfigError",
    "ProviderDiscoveryError",
    "SecretFieldMissingError",
    "SecretStore",
    "SecretStoreError",
    "config_from_policy",
    "discover_provider",
    "resolve_policies",
    "usable_config",
    "validate",
    "with_defaults",
]
